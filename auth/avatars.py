"""
auth/avatars.py -- On-disk storage for profile pictures.

Only JPEG and PNG are accepted. Files are written under the configured
metadata directory as <uuid4>.<ext>; the database only records that file name
(see UserStore.insert_asset), and whoami serves it as /images/<file>.

Layer rule: no imports from api/ or catalog/.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path

from auth.errors import UnsupportedFile, UploadFailed

logger = logging.getLogger("dim.auth")

MAX_AVATAR_BYTES = 5_000_000

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
}


def extension_for(content_type: str | None) -> str:
    """Map an upload's content type to a file extension. Raises UnsupportedFile."""
    ext = _EXTENSIONS.get((content_type or "").split(";")[0].strip().lower())
    if ext is None:
        raise UnsupportedFile()
    return ext


def save_avatar(metadata_path: Path, content_type: str | None, data: bytes) -> tuple[str, str]:
    """Write data to a fresh file and return (file_name, extension).

    Raises UnsupportedFile for anything other than JPEG/PNG, UploadFailed for
    empty or oversized uploads and for filesystem errors.
    """
    ext = extension_for(content_type)
    if not data:
        raise UploadFailed("The uploaded file is empty.")
    if len(data) > MAX_AVATAR_BYTES:
        raise UploadFailed("The uploaded file is larger than 5 MB.")

    file_name = f"{uuid.uuid4()}.{ext}"
    try:
        metadata_path.mkdir(parents=True, exist_ok=True)
        (metadata_path / file_name).write_bytes(data)
    except OSError as exc:
        logger.error("Could not store avatar %s: %s", file_name, exc)
        raise UploadFailed() from exc
    return file_name, ext


def discard_avatar(metadata_path: Path, file_name: str) -> None:
    """Best-effort removal of a file written by save_avatar()."""
    try:
        (metadata_path / file_name).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove orphaned avatar %s: %s", file_name, exc)
