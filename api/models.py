"""
API request and response models for Dim's identity endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Older clients send camelCase keys (inviteToken, oldPassword, ...). Each such
field accepts both spellings through AliasChoices; responses always use the
snake_case names.

New passwords (register, password change) are capped at 72 UTF-8 bytes,
the most bcrypt will hash. Longer ones are a 422, not a silently truncated
secret.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from auth.tokens import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
    return value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=1024)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    invite_token is ignored while no account exists (the first account becomes
    the owner) and required afterwards.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=1024)
    invite_token: Optional[str] = Field(
        default=None,
        max_length=64,
        validation_alias=AliasChoices("invite_token", "inviteToken"),
    )

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class PasswordChangeRequest(BaseModel):
    """Request body for PATCH /api/v1/auth/password."""

    old_password: str = Field(min_length=1, validation_alias=AliasChoices("old_password", "oldPassword"))
    new_password: str = Field(
        min_length=1,
        max_length=1024,
        validation_alias=AliasChoices("new_password", "newPassword"),
    )

    @field_validator("new_password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class UsernameChangeRequest(BaseModel):
    """Request body for PATCH /api/v1/auth/username."""

    model_config = ConfigDict(str_strip_whitespace=True)

    new_username: str = Field(
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("new_username", "newUsername"),
    )


class DeleteAccountRequest(BaseModel):
    """Request body for DELETE /api/v1/user/delete."""

    password: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/login and POST /api/v1/auth/new_invite."""

    model_config = ConfigDict(frozen=True)

    token: str


class WhoAmIResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    roles: list[str]
    picture: Optional[str] = None


class AdminExistsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    exists: bool


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str


class InviteResponse(BaseModel):
    """One row of GET /api/v1/auth/invites. claimed_by is None for open invites."""

    model_config = ConfigDict(frozen=True)

    id: str
    created: int
    claimed_by: Optional[str] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class AvatarResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: int
    picture: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
