"""
auth/store.py -- SQLAlchemy Core persistence layer for users, invites, and assets.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route and orchestration code never touch SQL directly.

Two kinds of methods:
  Read methods (has_users, get_by_username, list_invites, get_picture_path)
      open their own connection through Database.read(). No locking.

  Transactional methods take a Connection as their first argument and do
      NOT commit. They are building blocks for closures passed to
      Database.write(), so several of them can share one transaction (see
      auth/registration.py). create_invite/delete_invite wrap a single
      building block in its own write for the common one-step cases.

Invite state is derived, never stored: an invite is open while no user's
claimed_invite references it. users.claimed_invite is UNIQUE, so the
database itself refuses a second claim of the same invite.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
import time

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, exists, func, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.errors import InviteClaimed, NoToken, NotFound, UsernameNotAvailable
from auth.models import InviteRow, Role, User
from auth.tokens import generate_invite_token
from core.database import Database

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("username", String(255), primary_key=True),
    Column("hashed_password", Text, nullable=False),
    Column("roles", Text, nullable=False),  # JSON array of role tags
    Column("claimed_invite", String(64), nullable=False, unique=True),
    Column("picture", Integer),  # assets.id
    Column("prefs", Text, nullable=False, server_default="{}"),  # JSON object
)

_invites = Table(
    "invites",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("date_added", Integer, nullable=False),  # unix seconds
)

_assets = Table(
    "assets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("local_path", Text, nullable=False),
    Column("file_ext", String(10), nullable=False),
    Column("date_added", Integer, nullable=False),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Invite and Asset records.

    Usage:
        store = UserStore(Database("sqlite:///data/dim.db"))
        token = store.create_invite()
        user = store.get_by_username("alice")
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        _metadata.create_all(db.engine)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.db.read() as conn:
            return self.any_users(conn)

    def get_by_username(self, username: str) -> User | None:
        with self.db.read() as conn:
            return self.fetch_user(conn, username)

    def list_invites(self) -> list[InviteRow]:
        """Return every invite with the username that claimed it, if any.

        Two queries concatenated: open invites first, then claimed invites
        joined to their user. Each group is ordered by creation time
        ascending; nothing is promised about ordering across the two groups.
        """
        claimed_ids = select(_users.c.claimed_invite)
        open_query = (
            select(_invites.c.id, _invites.c.date_added)
            .where(_invites.c.id.not_in(claimed_ids))
            .order_by(_invites.c.date_added.asc())
        )
        claimed_query = (
            select(_invites.c.id, _invites.c.date_added, _users.c.username)
            .join(_users, _users.c.claimed_invite == _invites.c.id)
            .order_by(_invites.c.date_added.asc())
        )
        with self.db.read() as conn:
            open_rows = conn.execute(open_query).fetchall()
            claimed_rows = conn.execute(claimed_query).fetchall()
        rows = [InviteRow(id=r.id, created=r.date_added) for r in open_rows]
        rows.extend(InviteRow(id=r.id, created=r.date_added, claimed_by=r.username) for r in claimed_rows)
        return rows

    def get_picture_path(self, username: str) -> str | None:
        """Return the stored file name of username's profile picture, or None."""
        query = (
            select(_assets.c.local_path)
            .join(_users, _users.c.picture == _assets.c.id)
            .where(_users.c.username == username)
        )
        with self.db.read() as conn:
            return conn.execute(query).scalar()

    # ------------------------------------------------------------------
    # User building blocks (caller owns the transaction)
    # ------------------------------------------------------------------

    def any_users(self, conn: Connection) -> bool:
        return conn.execute(select(func.count()).select_from(_users)).scalar() > 0

    def fetch_user(self, conn: Connection, username: str) -> User | None:
        row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def insert_user(self, conn: Connection, user: User) -> str:
        """Insert user and return its username.

        Unique violations are translated: a taken username raises
        UsernameNotAvailable, an invite that is already claimed raises NoToken.
        """
        try:
            conn.execute(
                _users.insert().values(
                    username=user.username,
                    hashed_password=user.hashed_password,
                    roles=json.dumps([r.value for r in user.roles]),
                    claimed_invite=user.claimed_invite,
                    picture=user.picture,
                    prefs=json.dumps(user.prefs),
                )
            )
        except IntegrityError as exc:
            if "claimed_invite" in str(exc.orig):
                raise NoToken() from exc
            raise UsernameNotAvailable() from exc
        return user.username

    def update_password(self, conn: Connection, username: str, hashed_password: str) -> None:
        result = conn.execute(
            _users.update().where(_users.c.username == username).values(hashed_password=hashed_password)
        )
        if result.rowcount == 0:
            raise NotFound("User not found.")

    def rename_user(self, conn: Connection, username: str, new_username: str) -> None:
        """Change username to new_username. Raises UsernameNotAvailable if taken."""
        if self.fetch_user(conn, new_username) is not None:
            raise UsernameNotAvailable()
        try:
            result = conn.execute(
                _users.update().where(_users.c.username == username).values(username=new_username)
            )
        except IntegrityError as exc:
            raise UsernameNotAvailable() from exc
        if result.rowcount == 0:
            raise NotFound("User not found.")

    def set_picture(self, conn: Connection, username: str, asset_id: int) -> None:
        result = conn.execute(_users.update().where(_users.c.username == username).values(picture=asset_id))
        if result.rowcount == 0:
            raise NotFound("User not found.")

    def remove_user(self, conn: Connection, username: str) -> str | None:
        """Delete username, the invite it claimed and its picture asset.

        Returns the picture's file name so the caller can remove the file once
        the transaction has committed, or None if the account had no picture.

        Dropping the invite row keeps "one invite, one account, ever": once
        the account is gone nothing would reference the invite and it would
        read as open again.
        """
        user = self.fetch_user(conn, username)
        if user is None:
            raise NotFound("User not found.")
        local_path = None
        if user.picture is not None:
            local_path = conn.execute(select(_assets.c.local_path).where(_assets.c.id == user.picture)).scalar()
        conn.execute(_users.delete().where(_users.c.username == username))
        conn.execute(_invites.delete().where(_invites.c.id == user.claimed_invite))
        if user.picture is not None:
            conn.execute(_assets.delete().where(_assets.c.id == user.picture))
        return local_path

    # ------------------------------------------------------------------
    # Invite building blocks (caller owns the transaction)
    # ------------------------------------------------------------------

    def new_invite(self, conn: Connection) -> str:
        """Insert a fresh invite stamped with the current time and return its id."""
        token = generate_invite_token()
        conn.execute(_invites.insert().values(id=token, date_added=int(time.time())))
        return token

    def invite_is_open(self, conn: Connection, token: str) -> bool:
        """True iff the invite exists and no user has claimed it.

        Unknown and already-claimed tokens are a plain False, not an error.
        """
        claimed = exists().where(_users.c.claimed_invite == token)
        query = select(_invites.c.id).where(_invites.c.id == token).where(~claimed)
        return conn.execute(query).first() is not None

    def remove_invite(self, conn: Connection, token: str) -> None:
        """Delete an open invite. NotFound if absent, InviteClaimed if in use."""
        found = conn.execute(select(_invites.c.id).where(_invites.c.id == token)).first()
        if found is None:
            raise NotFound("Invite not found.")
        if conn.execute(select(_users.c.username).where(_users.c.claimed_invite == token)).first() is not None:
            raise InviteClaimed()
        conn.execute(_invites.delete().where(_invites.c.id == token))

    def create_invite(self) -> str:
        return self.db.write(self.new_invite)

    def delete_invite(self, token: str) -> None:
        self.db.write(lambda conn: self.remove_invite(conn, token))

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def insert_asset(self, conn: Connection, local_path: str, file_ext: str) -> int:
        result = conn.execute(
            _assets.insert().values(local_path=local_path, file_ext=file_ext, date_added=int(time.time()))
        )
        return result.inserted_primary_key[0]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        username=row.username,
        hashed_password=row.hashed_password,
        roles=[Role.parse(tag) for tag in json.loads(row.roles)],
        claimed_invite=row.claimed_invite,
        picture=row.picture,
        prefs=json.loads(row.prefs) if row.prefs else {},
    )
