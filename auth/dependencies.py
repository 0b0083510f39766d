"""
auth/dependencies.py -- FastAPI Depends() helpers for the session gate.

Two token locations are checked in priority order:
  1. "token" cookie -- set by login and by the forwarded-auth redirect.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a Claims object after successful verification. One read
then ties the token to a live account: the username must still exist and
its claimed_invite must equal the token's inv claim. A token issued before
a rename or deletion therefore stops working, even if someone else later
registers the freed name. Roles still come from the token.

try_get_claims() is the soft variant (returns None on failure).
get_claims() wraps it and raises Unauthenticated (401).
require_owner() wraps get_claims() and raises Unauthorized (403) for non-owners.

Layer rule: no imports from catalog/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import InvalidToken, Unauthenticated, Unauthorized
from auth.models import Claims, Role
from auth.store import UserStore
from auth.tokens import SESSION_COOKIE, TokenIssuer


def _extract_token(request: Request) -> str | None:
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_claims(request: Request) -> Claims | None:
    """Verify the request's token and its account. Returns Claims or None.

    Never raises for a bad or stale token -- callers that need a hard 401 should use get_claims().
    """
    token = _extract_token(request)
    if token is None:
        return None
    issuer: TokenIssuer = request.app.state.tokens
    try:
        claims = issuer.verify(token)
    except InvalidToken:
        return None
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_username(claims.username)
    if user is None or user.claimed_invite != claims.invite:
        return None
    return claims


def get_claims(request: Request) -> Claims:
    """Require authentication. Raises Unauthenticated if the token is missing or invalid.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: Claims = Depends(get_claims)): ...
    """
    claims = try_get_claims(request)
    if claims is None:
        raise Unauthenticated()
    return claims


def require_owner(request: Request) -> Claims:
    """Require the owner role. Raises Unauthenticated (401) or Unauthorized (403)."""
    claims = get_claims(request)
    if not claims.has_role(Role.OWNER):
        raise Unauthorized()
    return claims
