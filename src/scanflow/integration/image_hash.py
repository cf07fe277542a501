import base64
import binascii
import hashlib

from scanflow.logger import get_logger

logger = get_logger(__name__)


def _image_bytes(image: str | bytes) -> bytes:
    if isinstance(image, bytes):
        return image
    payload = image.strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        logger.debug("[HASH] Image payload is not base64, hashing the raw string.")
        return payload.encode("utf-8")


def get_image_hash(image: str | bytes | None) -> str | None:
    """Stable sha256 hex digest of the decoded image content."""
    if not image:
        return None
    return hashlib.sha256(_image_bytes(image)).hexdigest()
