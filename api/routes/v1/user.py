"""
api/routes/v1/user.py -- Endpoints that act on the caller's own account.

Routes:
  DELETE /api/v1/user/delete  -- delete own account (password required)
  POST   /api/v1/user/avatar  -- upload a profile picture (multipart field "file")

Both require a valid token. Account deletion is terminal: the username and
the invite it used are gone for good. The profile picture goes with them
and the session cookie is cleared.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import JSONResponse

from api.models import AvatarResponse, DeleteAccountRequest, MessageResponse
from auth.accounts import delete_self, set_avatar
from auth.avatars import MAX_AVATAR_BYTES
from auth.dependencies import get_claims
from auth.models import Claims
from auth.store import UserStore
from auth.tokens import clear_auth_cookie

logger = logging.getLogger("dim.api")

router = APIRouter()


@router.delete("/user/delete", response_model=MessageResponse)
def delete_account(
    request: Request,
    body: DeleteAccountRequest,
    claims: Claims = Depends(get_claims),
) -> JSONResponse:
    """Delete the caller's account after re-checking the password.

    A wrong password answers 401 and leaves the account untouched.
    """
    delete_self(request.app.state.user_store, request.app.state.metadata_path, claims.username, body.password)
    resp = JSONResponse(content=MessageResponse(message="Account deleted.").model_dump())
    clear_auth_cookie(resp)
    return resp


@router.post("/user/avatar", response_model=AvatarResponse)
def upload_avatar(
    request: Request,
    file: UploadFile = File(...),
    claims: Claims = Depends(get_claims),
) -> AvatarResponse:
    """Store a JPEG or PNG (at most 5 MB) and make it the caller's picture.

    Reads one byte past the limit so oversized uploads are detected without
    pulling the whole body into memory.
    """
    user_store: UserStore = request.app.state.user_store
    data = file.file.read(MAX_AVATAR_BYTES + 1)
    asset_id = set_avatar(user_store, request.app.state.metadata_path, claims.username, file.content_type, data)
    local_path = user_store.get_picture_path(claims.username)
    logger.info("Avatar updated for %r (asset %d)", claims.username, asset_id)
    return AvatarResponse(asset_id=asset_id, picture=f"/images/{local_path}" if local_path else None)
