from __future__ import annotations

import base64
import binascii
import logging
import os
import uuid
from pathlib import Path

from services.errors import PlatformError, ValidationError


LOGGER = logging.getLogger("equipment_checkout.storage")

BUCKETS = {"items", "return-proofs"}
IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}

_BASE_DIR = Path(__file__).resolve().parent.parent
UPLOADS_DIR = Path(os.environ.get("UPLOADS_DIR") or (_BASE_DIR / "static" / "uploads"))
PUBLIC_BASE_URL = (os.environ.get("PUBLIC_BASE_URL") or "").strip().rstrip("/")


def public_url(bucket: str, filename: str) -> str:
    return f"{PUBLIC_BASE_URL}/uploads/{bucket}/{filename}"


def _bucket_dir(bucket: str) -> Path:
    if bucket not in BUCKETS:
        raise ValidationError(f"Unknown storage bucket '{bucket}'.")
    return UPLOADS_DIR / bucket


def save_image(bucket: str, content: bytes, content_type: str | None, prefix: str | None = None) -> str:
    """Store an image in a bucket and return its public URL."""
    destination_dir = _bucket_dir(bucket)
    ext = IMAGE_EXTENSIONS.get((content_type or "").lower())
    if not ext:
        raise ValidationError("Unsupported file type. Please upload an image (jpg, png, webp, gif).")
    if not content:
        raise ValidationError("Uploaded file is empty.")

    filename = f"{prefix}_{uuid.uuid4().hex}.{ext}" if prefix else f"{uuid.uuid4().hex}.{ext}"
    try:
        destination_dir.mkdir(parents=True, exist_ok=True)
        with (destination_dir / filename).open("wb") as output:
            output.write(content)
    except OSError as exc:
        LOGGER.exception("Upload failed bucket=%s", bucket)
        raise PlatformError("Could not store the uploaded file.") from exc
    LOGGER.info("Upload stored bucket=%s file=%s bytes=%s", bucket, filename, len(content))
    return public_url(bucket, filename)


def save_data_url_image(bucket: str, data_url: str, prefix: str | None = None) -> str:
    raw = (data_url or "").strip()
    if not raw.startswith("data:image/"):
        raise ValidationError("Invalid image payload format.")

    parts = raw.split(",", 1)
    if len(parts) != 2:
        raise ValidationError("Invalid data URL payload.")

    meta, b64_data = parts
    content_type = meta[len("data:"):].split(";", 1)[0]
    try:
        binary = base64.b64decode(b64_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Invalid base64 image data.") from exc
    return save_image(bucket, binary, content_type, prefix)


def discard_image(url: str | None) -> bool:
    """Delete a file previously stored by save_image; unknown URLs are ignored."""
    marker = "/uploads/"
    if not url or marker not in url:
        return False
    bucket, _, filename = url.split(marker, 1)[1].partition("/")
    if bucket not in BUCKETS or not filename or "/" in filename or filename.startswith("."):
        return False
    target = UPLOADS_DIR / bucket / filename
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    except OSError:
        LOGGER.exception("Could not remove stored file bucket=%s file=%s", bucket, filename)
        return False
    LOGGER.info("Upload discarded bucket=%s file=%s", bucket, filename)
    return True
