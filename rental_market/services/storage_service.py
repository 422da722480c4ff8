from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Iterable

from schemas.listings import UploadedFile
from services.errors import InternalError, ValidationError


IMAGE_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}
DOCUMENT_CONTENT_TYPES = {"image/jpeg", "image/png", "application/pdf"}
MAX_UPLOAD_BYTES = 5 * 1024 * 1024

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "application/pdf": ".pdf",
}

_BASE_DIR = Path(__file__).resolve().parent.parent
UPLOADS_DIR = Path(os.environ.get("RENTAL_MARKET_UPLOADS_DIR") or (_BASE_DIR / "static" / "uploads"))
LOGGER = logging.getLogger("rental_market.storage")


def validate_upload(upload: UploadedFile, allowed: set[str], label: str) -> None:
    content_type = (upload.content_type or "").split(";", 1)[0].strip().lower()
    if content_type not in allowed:
        allowed_display = ", ".join(sorted(allowed))
        raise ValidationError(f"{label} has unsupported file type. Allowed: {allowed_display}.")
    if not upload.content:
        raise ValidationError(f"{label} is empty.")
    if len(upload.content) > MAX_UPLOAD_BYTES:
        raise ValidationError(f"{label} exceeds the {MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit.")


class FileStore:
    """Stores uploads under a root directory and hands back `/uploads/...` paths."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def save(self, upload: UploadedFile, folder: str) -> str:
        content_type = (upload.content_type or "").split(";", 1)[0].strip().lower()
        ext = _EXTENSIONS.get(content_type) or os.path.splitext(upload.filename or "")[1]
        filename = f"{int(time.time() * 1000)}-{uuid.uuid4().hex}{ext}"
        destination_dir = self.root / folder
        try:
            destination_dir.mkdir(parents=True, exist_ok=True)
            with (destination_dir / filename).open("wb") as output:
                output.write(upload.content)
        except OSError as exc:
            raise InternalError("Could not store uploaded file.") from exc
        return f"/uploads/{folder}/{filename}"

    def resolve(self, relative_path: str) -> Path:
        prefix = "/uploads/"
        trimmed = relative_path[len(prefix):] if relative_path.startswith(prefix) else relative_path.lstrip("/")
        return self.root / trimmed

    def remove(self, relative_paths: Iterable[str]) -> None:
        for relative_path in relative_paths:
            target = self.resolve(relative_path)
            try:
                target.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("Could not remove stored file %s: %s", target, exc)


class UploadBatch:
    """Files written during one operation; `discard` removes them when the operation fails."""

    def __init__(self, store: FileStore):
        self.store = store
        self.paths: list[str] = []

    def save(self, upload: UploadedFile, folder: str) -> str:
        path = self.store.save(upload, folder)
        self.paths.append(path)
        return path

    def discard(self) -> None:
        if self.paths:
            self.store.remove(self.paths)
        self.paths = []


default_store = FileStore(UPLOADS_DIR)
