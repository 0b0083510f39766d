"""
auth/models.py -- Domain types for authentication entities.

Pattern: Data class (pure data container, minimal logic). Stores and routes
do the work; these types own the domain shape.

Roles are a closed enum rather than free-form strings so a typo such as
"onwer" fails loudly at parse time instead of silently granting nothing.

Layer rule: no imports from api/ or catalog/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    OWNER = "owner"
    USER = "user"

    @classmethod
    def parse(cls, tag: str) -> "Role":
        """Return the Role for tag. Raises ValueError for unknown tags."""
        return cls(tag)


@dataclass
class User:
    """An account on the media server.

    claimed_invite is the invite id this account consumed. The bootstrap
    owner and forwarded-auth accounts get a synthesized invite so the column
    is never empty and every invite maps to at most one account.

    picture is the asset id of the profile picture, None until uploaded.
    """

    username: str
    hashed_password: str
    roles: list[Role]
    claimed_invite: str
    picture: int | None = None
    prefs: dict = field(default_factory=dict)

    def has_role(self, role: Role) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class Claims:
    """Decoded payload of a verified token. Rebuilt on every verification.

    invite is the claimed_invite of the account the token was issued to.
    """

    username: str
    roles: frozenset[Role]
    invite: str
    expires_at: datetime

    def has_role(self, role: Role) -> bool:
        return role in self.roles


@dataclass
class InviteRow:
    """One line of the owner's invite listing.

    created is unix seconds. claimed_by is None while the invite is open.
    """

    id: str
    created: int
    claimed_by: str | None = None
