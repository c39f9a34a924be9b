import logging
from datetime import datetime, timezone
from pathlib import Path

from plateyard.core.config import settings
from plateyard.core.errors import InvalidRequest

logger = logging.getLogger("plateyard.storage")

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}
MAX_IMAGE_BYTES = 5 * 1024 * 1024


def image_extension(content_type: str | None) -> str:
    ext = ALLOWED_IMAGE_TYPES.get((content_type or "").lower())
    if not ext:
        raise InvalidRequest("Invalid file type. Only JPEG, PNG, and WebP are allowed")
    return ext


def save_product_image(product_id: int, content_type: str | None, data: bytes) -> str:
    """Write the image under MEDIA_DIR and return its public URL."""
    ext = image_extension(content_type)
    if not data:
        raise InvalidRequest("No file provided")
    if len(data) > MAX_IMAGE_BYTES:
        raise InvalidRequest("File too large. Maximum size is 5MB")

    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    filename = f"product-{product_id}-{stamp}.{ext}"

    target_dir = Path(settings.MEDIA_DIR) / "products"
    target_dir.mkdir(parents=True, exist_ok=True)
    (target_dir / filename).write_bytes(data)

    logger.info("stored product image %s (%d bytes)", filename, len(data))
    return f"{settings.MEDIA_URL.rstrip('/')}/products/{filename}"
