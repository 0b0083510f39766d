"""
auth/tokens.py -- Password hashing, credential verification, and JWT issuance.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry the username (sub), the role set,
       the invite the account claimed (inv), issued-at and expiry. inv pins
       the token to one account: usernames can be freed and taken again,
       claimed invites never are. TokenIssuer.verify() raises InvalidToken on any
       failure -- the session gate turns that into a 401.

  Passwords: bcrypt directly (no passlib wrapper). Bcrypt is the right choice
       for low-entropy secrets because its cost factor makes brute-force
       expensive. _DUMMY_HASH enables timing equalization in
       authenticate_user() so response time does not reveal whether a
       username exists.

  Signing key: TokenIssuer receives it from the frozen AuthConfig built at
       startup. This module never reads settings on its own, so tests can
       build issuers with arbitrary keys and lifetimes.

  Random secrets: invite ids and the throwaway passwords of forwarded-auth
       accounts come from the secrets module.

Layer rule: no imports from api/ or catalog/.
"""

from __future__ import annotations

import logging
import secrets
import string
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import jwt
from jose.exceptions import JOSEError

from auth.errors import InvalidToken
from auth.models import Claims, Role

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

    from auth.models import User
    from auth.store import UserStore
    from core.config import AuthConfig

logger = logging.getLogger("dim.auth")

_ALGORITHM = "HS256"

# Session cookie name. The web client and the forwarded-auth redirect both use it.
SESSION_COOKIE = "token"

_ALPHANUMERIC = string.ascii_letters + string.digits
_RANDOM_PASSWORD_LENGTH = 20

# bcrypt only reads the first 72 bytes of a secret; bcrypt>=5 refuses longer input.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords longer than MAX_PASSWORD_BYTES once
    UTF-8 encoded. The API models reject those with a 422 before they get here.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password is longer than {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(username: str, hashed: str, plain: str) -> bool:
    """Return True if plain matches the stored bcrypt hash for username.

    A malformed stored hash is a failed check, not an error. So is a candidate
    longer than MAX_PASSWORD_BYTES: hash_password() never stores one, so it
    cannot match. The candidate password is never logged.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored credential for %r is not a valid bcrypt hash", username)
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("dim_timing_dummy")


def authenticate_user(conn: Connection, store: UserStore, username: str, password: str) -> User | None:
    """Check username/password against the persisted record, with timing equalization.

    The stored hash is always re-read through conn, so password change and
    self-delete see the credential as of their own transaction rather than
    whatever the caller fetched earlier.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.fetch_user(conn, username)
    if user is None:
        verify_password(username, _DUMMY_HASH, password)
        return None
    if not verify_password(user.username, user.hashed_password, password):
        return None
    return user


# ---------------------------------------------------------------------------
# Random secrets
# ---------------------------------------------------------------------------


def generate_invite_token() -> str:
    return str(uuid.uuid4())


def generate_random_password() -> str:
    """Return a 20-character alphanumeric password nobody will ever type."""
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(_RANDOM_PASSWORD_LENGTH))


# ---------------------------------------------------------------------------
# JWT issue / verify
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Signs and verifies session tokens with one process-wide key.

    Usage:
        issuer = TokenIssuer(config.secret_key, config.token_expire_seconds)
        token = issuer.issue("alice", [Role.USER], user.claimed_invite)
        claims = issuer.verify(token)   # raises InvalidToken
    """

    def __init__(self, secret_key: str, expire_seconds: int) -> None:
        if not secret_key:
            raise ValueError("A signing key is required to issue tokens.")
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds

    @classmethod
    def from_config(cls, config: AuthConfig) -> "TokenIssuer":
        return cls(config.secret_key, config.token_expire_seconds)

    def issue(
        self,
        username: str,
        roles: Iterable[Role],
        invite: str,
        expire_seconds: int | None = None,
    ) -> str:
        """Encode a signed JWT for username with the given roles.

        invite is the account's claimed_invite; the session gate compares it
        with the stored row so the token dies with a rename or deletion.

        expire_seconds overrides the configured lifetime for this token only.
        """
        duration = self.expire_seconds if expire_seconds is None else expire_seconds
        now = datetime.now(timezone.utc)
        payload = {
            "sub": username,
            "roles": sorted(Role(r).value for r in roles),
            "inv": invite,
            "iat": now,
            "exp": now + timedelta(seconds=duration),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> Claims:
        """Decode and verify a JWT. Raises InvalidToken on any failure.

        Bad signature, malformed payload (missing inv included), unknown role
        tags, and expiry in the past are all reported the same way.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except JOSEError as exc:
            raise InvalidToken(str(exc)) from exc

        username = payload.get("sub")
        raw_roles = payload.get("roles")
        invite = payload.get("inv")
        exp = payload.get("exp")
        if not isinstance(username, str) or not username:
            raise InvalidToken("Token has no subject.")
        if not isinstance(raw_roles, list) or not raw_roles:
            raise InvalidToken("Token has no roles.")
        if not isinstance(invite, str) or not invite:
            raise InvalidToken("Token is not bound to an account.")
        if not isinstance(exp, (int, float)):
            raise InvalidToken("Token has no expiry.")
        try:
            roles = frozenset(Role.parse(tag) for tag in raw_roles)
        except ValueError as exc:
            raise InvalidToken("Token carries an unknown role.") from exc

        return Claims(
            username=username,
            roles=roles,
            invite=invite,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, config: AuthConfig) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the token expiry so both expire together.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=config.secure_cookies,
        max_age=config.token_expire_seconds,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE)
