import logging
import uuid
from pathlib import Path
from typing import Protocol

from toolcrib.config import settings
from toolcrib.error import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


class ImageStore(Protocol):
    def put(self, data: bytes, content_type: str) -> str: ...

    def delete(self, url: str) -> bool: ...


def validate_image(data: bytes, content_type: str) -> None:
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Please upload a JPEG, PNG, or WebP image")
    if not data:
        raise ValidationError("Image is empty")
    if len(data) > settings.image_max_bytes:
        limit_mb = settings.image_max_bytes // (1024 * 1024)
        raise ValidationError(f"Image size must be less than {limit_mb}MB")


class LocalImageStore:
    """Keeps uploaded images on local disk and serves them under ``base_url``."""

    def __init__(self, root: str | Path | None = None, base_url: str | None = None):
        self.root = Path(root or settings.image_dir)
        self.base_url = (base_url or settings.image_base_url).rstrip("/")

    def put(self, data: bytes, content_type: str) -> str:
        validate_image(data, content_type)
        self.root.mkdir(parents=True, exist_ok=True)
        name = f"{uuid.uuid4().hex}.{ALLOWED_IMAGE_TYPES[content_type]}"
        (self.root / name).write_bytes(data)
        return f"{self.base_url}/{name}"

    def delete(self, url: str) -> bool:
        name = url.rsplit("/", 1)[-1]
        path = self.root / name
        if not name or not path.is_file():
            return False
        path.unlink()
        return True


def put_image(store: ImageStore | None, data: bytes, content_type: str) -> str | None:
    # image failures never fail the owning operation
    if store is None:
        return None
    try:
        return store.put(data, content_type)
    except ValidationError:
        raise
    except Exception:
        logger.exception("image upload failed")
        return None


def release_image(store: ImageStore | None, url: str | None) -> bool:
    if store is None or not url:
        return False
    try:
        released = store.delete(url)
    except Exception:
        logger.exception("image delete failed: %s", url)
        return False
    if not released:
        logger.warning("image not found in store: %s", url)
    return released
