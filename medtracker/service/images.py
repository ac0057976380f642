from __future__ import annotations

import mimetypes
import uuid
from pathlib import Path
from typing import Optional, Protocol

from medtracker.logging import get_logger
from medtracker.service.errors import ImageUploadError, ValidationError
from medtracker.service.fs import PathTraversalError, safe_join

logger = get_logger(__name__)

MEDIA_PREFIX = "/media/images/"


class ImageStore(Protocol):
    def save(self, data: bytes, content_type: str) -> str:
        """Persist the bytes and return a public URL."""
        ...

    def remove(self, url: str) -> bool: ...


class LocalImageStore:
    """Stores images under ``<root>/images`` and serves them from ``/media/images``."""

    def __init__(self, root: str, base_url: str) -> None:
        self.root = Path(root) / "images"
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")

    def path_for(self, filename: str) -> Path:
        return safe_join(self.root, filename)

    def save(self, data: bytes, content_type: str) -> str:
        ext = mimetypes.guess_extension(content_type) or ".img"
        filename = f"{uuid.uuid4().hex}{ext}"
        self.path_for(filename).write_bytes(data)
        return f"{self.base_url}{MEDIA_PREFIX}{filename}"

    def remove(self, url: str) -> bool:
        filename = url.rsplit("/", 1)[-1]
        if not filename:
            return False
        try:
            target = self.path_for(filename)
        except PathTraversalError:
            return False
        if not target.is_file():
            return False
        target.unlink()
        return True


class ImageService:
    def __init__(self, store: ImageStore, *, max_bytes: int) -> None:
        self.store = store
        self.max_bytes = max_bytes

    def upload(self, data: bytes, content_type: Optional[str]) -> str:
        if not data:
            raise ValidationError("image file cannot be empty", detail={"field": "file"})
        if not content_type or not content_type.startswith("image/"):
            raise ValidationError("file must be an image", detail={"field": "file"})
        if len(data) > self.max_bytes:
            raise ValidationError(
                "image exceeds size limit",
                detail={"field": "file", "max_bytes": self.max_bytes},
            )
        try:
            url = self.store.save(data, content_type)
        except OSError as exc:
            logger.error("image_upload_failed", error=str(exc))
            raise ImageUploadError("failed to store image") from exc
        logger.info("image_uploaded", url=url, size=len(data))
        return url

    def delete(self, url: Optional[str]) -> bool:
        if not url:
            return False
        try:
            return self.store.remove(url)
        except OSError as exc:
            logger.warning("image_delete_failed", url=url, error=str(exc))
            return False
