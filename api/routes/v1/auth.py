"""
api/routes/v1/auth.py -- Login, registration, invites and account edits.

Routes:
  POST   /api/v1/auth/login          -- password login; returns {token} and sets the cookie
  POST   /api/v1/auth/logout         -- clears the cookie
  GET    /api/v1/auth/whoami         -- identity from the token (+ picture if set)
  GET    /api/v1/auth/admin_exists   -- whether the bootstrap owner exists yet
  POST   /api/v1/auth/register       -- first account becomes owner, later ones need an invite
  GET    /api/v1/auth/invites        -- list invites (owner only)
  POST   /api/v1/auth/new_invite     -- mint an invite (owner only)
  DELETE /api/v1/auth/token/{id}     -- delete an unclaimed invite (owner only)
  PATCH  /api/v1/auth/password       -- change own password (old password required)
  PATCH  /api/v1/auth/username       -- rename own account; returns a fresh token

Security:
  POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every login response.
  Wrong username and wrong password produce the same error.

Handlers that write are plain def: FastAPI runs them on the thread pool, so
bcrypt and the writer permit never block the event loop.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api.errors import service_error_response
from api.limiter import limiter
from api.models import (
    AdminExistsResponse,
    InviteResponse,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    UsernameChangeRequest,
    WhoAmIResponse,
)
from auth.accounts import change_password, change_username
from auth.dependencies import get_claims, require_owner
from auth.errors import InvalidCredentials
from auth.models import Claims
from auth.registration import register
from auth.store import UserStore
from auth.tokens import TokenIssuer, authenticate_user, clear_auth_cookie, set_auth_cookie
from core.config import get_settings

logger = logging.getLogger("dim.api")

# Auth policy:
# - POST   /auth/login, /auth/logout, /auth/register:  public
# - GET    /auth/admin_exists:                          public -- the UI decides between setup and login
# - GET    /auth/whoami, PATCH /auth/password|username: requires auth (get_claims)
# - GET    /auth/invites, POST /auth/new_invite:        requires owner (require_owner)
# - DELETE /auth/token/{id}:                            requires owner (require_owner)
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return the token and set the cookie.

    The stored hash is read fresh from the database on every attempt.
    """
    user_store: UserStore = request.app.state.user_store
    with user_store.db.read() as conn:
        user = authenticate_user(conn, user_store, body.username, body.password)
    if user is None:
        resp = service_error_response(InvalidCredentials())
        resp.headers["Cache-Control"] = "no-store"
        return resp

    issuer: TokenIssuer = request.app.state.tokens
    token = issuer.issue(user.username, user.roles, user.claimed_invite)
    resp = JSONResponse(content=TokenResponse(token=token).model_dump())
    set_auth_cookie(resp, token, request.app.state.auth_config)
    resp.headers["Cache-Control"] = "no-store"
    logger.info("Login succeeded for %r", user.username)
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the session cookie. Tokens are stateless, so nothing is revoked server-side."""
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookie(resp)
    return resp


@router.get("/auth/admin_exists", response_model=AdminExistsResponse)
def admin_exists(request: Request) -> AdminExistsResponse:
    user_store: UserStore = request.app.state.user_store
    return AdminExistsResponse(exists=user_store.has_users())


@router.post("/auth/register", response_model=RegisterResponse)
def register_account(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an account.

    With no accounts yet, the new account becomes the owner and any invite
    token is ignored. Afterwards a valid, unclaimed invite token is required
    (NoToken, 403, otherwise).
    """
    user_store: UserStore = request.app.state.user_store
    username = register(user_store, body.username, body.password, body.invite_token)
    return RegisterResponse(username=username)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/whoami", response_model=WhoAmIResponse)
def whoami(request: Request, claims: Claims = Depends(get_claims)) -> WhoAmIResponse:
    """Return the caller's identity as carried by the token.

    The picture is a best-effort extra: if the lookup fails the response
    simply omits it.
    """
    user_store: UserStore = request.app.state.user_store
    picture = None
    try:
        local_path = user_store.get_picture_path(claims.username)
    except SQLAlchemyError:
        logger.warning("Picture lookup failed for %r", claims.username, exc_info=True)
        local_path = None
    if local_path:
        picture = f"/images/{local_path}"
    return WhoAmIResponse(
        username=claims.username,
        roles=sorted(r.value for r in claims.roles),
        picture=picture,
    )


@router.patch("/auth/password", response_model=MessageResponse)
def update_password(
    request: Request,
    body: PasswordChangeRequest,
    claims: Claims = Depends(get_claims),
) -> MessageResponse:
    """Change the caller's password. The current password must be supplied."""
    change_password(request.app.state.user_store, claims.username, body.old_password, body.new_password)
    return MessageResponse(message="Password updated.")


@router.patch("/auth/username", response_model=TokenResponse)
def update_username(
    request: Request,
    body: UsernameChangeRequest,
    claims: Claims = Depends(get_claims),
) -> JSONResponse:
    """Rename the caller's account.

    The old token names the old account and stops working, so a replacement
    token is returned and written to the cookie.
    """
    change_username(request.app.state.user_store, claims.username, body.new_username)
    issuer: TokenIssuer = request.app.state.tokens
    token = issuer.issue(body.new_username, claims.roles, claims.invite)
    resp = JSONResponse(content=TokenResponse(token=token).model_dump())
    set_auth_cookie(resp, token, request.app.state.auth_config)
    return resp


# ---------------------------------------------------------------------------
# Invite management (owner only)
# ---------------------------------------------------------------------------


@router.get("/auth/invites", response_model=list[InviteResponse])
def list_invites(request: Request, claims: Claims = Depends(require_owner)) -> list[InviteResponse]:
    """List open invites, then claimed ones with the account that used them."""
    user_store: UserStore = request.app.state.user_store
    return [InviteResponse(id=i.id, created=i.created, claimed_by=i.claimed_by) for i in user_store.list_invites()]


@router.post("/auth/new_invite", response_model=TokenResponse)
def new_invite(request: Request, claims: Claims = Depends(require_owner)) -> TokenResponse:
    user_store: UserStore = request.app.state.user_store
    token = user_store.create_invite()
    logger.info("Invite created by %r", claims.username)
    return TokenResponse(token=token)


@router.delete("/auth/token/{token}", response_model=MessageResponse)
def delete_invite(request: Request, token: str, claims: Claims = Depends(require_owner)) -> MessageResponse:
    """Delete an unclaimed invite. Claimed invites stay (InviteClaimed, 409)."""
    user_store: UserStore = request.app.state.user_store
    user_store.delete_invite(token)
    logger.info("Invite deleted by %r", claims.username)
    return MessageResponse(message="Invite deleted.")
