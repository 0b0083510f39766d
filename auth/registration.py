"""
auth/registration.py -- Account creation: invite-gated registration and forwarded-auth login.

register() is a two-branch state machine keyed on "does any user exist?":

  Bootstrap (no users yet): the submitted invite token, if any, is ignored.
      A fresh invite is synthesized and claimed by the new account, which
      gets the owner role.

  Gated (at least one user): the submitted token must name an open invite,
      otherwise NoToken. The account gets the user role and claims the token.

The users-exist check, the invite check and the insert all run in ONE write
transaction under the writer permit. Two concurrent first registrations can
therefore not both see an empty table and both become owner, and two
registrations cannot both claim the same invite (the loser sees the invite as
claimed and gets NoToken).

forwarded_login() serves deployments where a trusted reverse proxy has
already authenticated the user and passes the name in a header. It finds or
creates the account under the same write discipline, so repeated calls with
the same name land on the same row.

Layer rule: no imports from api/ or catalog/.
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import Connection

from auth.errors import ForwardAuthDisabled, NoToken
from auth.models import Role, User
from auth.store import UserStore
from auth.tokens import generate_random_password, hash_password
from core.config import AuthConfig

logger = logging.getLogger("dim.auth")


def register(store: UserStore, username: str, password: str, invite_token: str | None = None) -> str:
    """Create an account and return its username.

    Raises NoToken when registration is gated and the token is missing,
    unknown or already claimed. Raises UsernameNotAvailable when the name is
    taken. Nothing is written in either case.
    """
    # bcrypt is slow; hash before taking the writer permit.
    hashed = hash_password(password)

    def _register(conn: Connection) -> User:
        if store.any_users(conn):
            if not invite_token or not store.invite_is_open(conn, invite_token):
                raise NoToken()
            roles = [Role.USER]
            claimed_invite = invite_token
        else:
            roles = [Role.OWNER]
            claimed_invite = store.new_invite(conn)

        user = User(username=username, hashed_password=hashed, roles=roles, claimed_invite=claimed_invite)
        store.insert_user(conn, user)
        return user

    user = store.db.write(_register)
    logger.info("Registered account %r with roles %s", user.username, [r.value for r in user.roles])
    return user.username


def forwarded_login(store: UserStore, config: AuthConfig, username: str) -> User:
    """Return the account for a proxy-asserted username, creating it on first sight.

    No password check happens here: the proxy already authenticated the user.
    New accounts get an unguessable random password (this path never uses
    it), a synthesized invite, and the user role.

    Raises ForwardAuthDisabled unless the deployment opted in.
    """
    if not config.forwarded_auth_enabled:
        raise ForwardAuthDisabled()

    # Fast path for returning users; the write below re-checks under the permit.
    existing = store.get_by_username(username)
    if existing is not None:
        return existing

    hashed = hash_password(generate_random_password())

    def _find_or_create(conn: Connection) -> tuple[User, bool]:
        existing = store.fetch_user(conn, username)
        if existing is not None:
            return existing, False
        user = User(
            username=username,
            hashed_password=hashed,
            roles=[Role.USER],
            claimed_invite=store.new_invite(conn),
        )
        store.insert_user(conn, user)
        return user, True

    user, created = store.db.write(_find_or_create)
    if created:
        logger.info("Provisioned account %r from forwarded identity", username)
    return user
