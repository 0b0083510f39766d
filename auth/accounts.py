"""
auth/accounts.py -- Self-service changes to an existing account.

Every operation runs in one write transaction. Password change and account
deletion re-verify the current password against the row read inside that same
transaction, never against anything the caller fetched before.

Layer rule: no imports from api/ or catalog/.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.engine import Connection

from auth.avatars import discard_avatar, save_avatar
from auth.errors import InvalidCredentials
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_password

logger = logging.getLogger("dim.auth")


def change_password(store: UserStore, username: str, old_password: str, new_password: str) -> None:
    """Replace username's password. Raises InvalidCredentials if old_password is wrong."""
    new_hash = hash_password(new_password)

    def _change(conn: Connection) -> None:
        if authenticate_user(conn, store, username, old_password) is None:
            raise InvalidCredentials()
        store.update_password(conn, username, new_hash)

    store.db.write(_change)
    logger.info("Password changed for %r", username)


def change_username(store: UserStore, username: str, new_username: str) -> None:
    """Rename the account. Raises UsernameNotAvailable if new_username is taken."""
    store.db.write(lambda conn: store.rename_user(conn, username, new_username))
    logger.info("Account %r renamed to %r", username, new_username)


def delete_self(store: UserStore, metadata_path: Path, username: str, password: str) -> None:
    """Permanently delete the account after checking its password.

    A wrong password raises InvalidCredentials and leaves the account intact.
    The profile picture file goes only after the delete has committed.
    """

    def _delete(conn: Connection) -> str | None:
        if authenticate_user(conn, store, username, password) is None:
            raise InvalidCredentials()
        return store.remove_user(conn, username)

    picture = store.db.write(_delete)
    if picture:
        discard_avatar(metadata_path, picture)
    logger.info("Account %r deleted", username)


def set_avatar(store: UserStore, metadata_path: Path, username: str, content_type: str | None, data: bytes) -> int:
    """Store an uploaded picture and make it username's avatar. Returns the asset id.

    The file is written once, before the transaction, so retries of the
    closure never duplicate it. If the transaction fails the file is removed.
    """
    file_name, ext = save_avatar(metadata_path, content_type, data)

    def _attach(conn: Connection) -> int:
        asset_id = store.insert_asset(conn, file_name, ext)
        store.set_picture(conn, username, asset_id)
        return asset_id

    try:
        return store.db.write(_attach)
    except Exception:
        discard_avatar(metadata_path, file_name)
        raise
