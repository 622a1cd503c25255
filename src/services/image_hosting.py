import hashlib
import os
import re
import tempfile
from io import BytesIO
from pathlib import Path

import structlog
from PIL import Image

from src.config import settings
from src.core.exceptions import ImageStoreError
from src.schemas.images import StoredImage

logger = structlog.get_logger()

IMAGES_DIR = Path(settings.uploads_path) / "images"

FORMAT_TO_EXT = {
    "jpeg": "jpg",
    "png": "png",
    "gif": "gif",
    "webp": "webp",
}

FORMAT_TO_MEDIA_TYPE = {
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}

_PIL_FORMATS = {
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
}

_KEY_RE = re.compile(r"^([0-9a-f]{40})\.(jpg|png|gif|webp)$")


def detect_image_format(image_bytes: bytes) -> str | None:
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "png"
    if image_bytes[:3] == b"\xff\xd8\xff":
        return "jpeg"
    if image_bytes[:6] in (b"GIF87a", b"GIF89a"):
        return "gif"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "webp"
    return None


def detect_mime_type(image_bytes: bytes) -> str | None:
    fmt = detect_image_format(image_bytes)
    if fmt is None:
        return None
    return FORMAT_TO_MEDIA_TYPE[fmt]


def url_hash(url: str) -> str:
    return hashlib.sha1(url.encode("utf-8")).hexdigest()


def make_key(url: str, img_format: str) -> str:
    return f"{url_hash(url)}.{FORMAT_TO_EXT[img_format]}"


def is_valid_key(key: str) -> bool:
    return _KEY_RE.match(key) is not None


def _key_dir(key: str) -> Path:
    # two levels of sharding keep directory sizes bounded
    return IMAGES_DIR / key[:2] / key[2:4]


def _media_type_for_key(key: str) -> str:
    return FORMAT_TO_MEDIA_TYPE.get(key.rsplit(".", 1)[-1], "application/octet-stream")


def resize_image(image_bytes: bytes, img_format: str, max_size: int) -> bytes:
    """Downscale an image so that neither side exceeds ``max_size``.

    The original format is kept. GIFs are returned untouched so animations
    survive, as are images already within bounds.
    """
    pil_format = _PIL_FORMATS.get(img_format)
    if pil_format is None or max_size <= 0:
        return image_bytes
    img: Image.Image = Image.open(BytesIO(image_bytes))
    width, height = img.size
    if width <= max_size and height <= max_size:
        return image_bytes
    if width > height:
        new_width = max_size
        new_height = max(1, int(height * max_size / width))
    else:
        new_height = max_size
        new_width = max(1, int(width * max_size / height))
    if pil_format == "JPEG" and img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    img = img.resize((new_width, new_height), Image.Resampling.LANCZOS)
    buffer = BytesIO()
    if pil_format == "JPEG":
        img.save(buffer, format=pil_format, quality=85, optimize=True)
    else:
        img.save(buffer, format=pil_format)
    return buffer.getvalue()


def get_image_url(key: str, base_url: str) -> str:
    return f"{base_url.rstrip('/')}{settings.images_url_path.rstrip('/')}/{key}"


def exists(key: str) -> bool:
    return (_key_dir(key) / key).is_file()


def get_image_path(key: str) -> tuple[Path, str] | None:
    if not is_valid_key(key):
        return None
    image_path = _key_dir(key) / key
    if image_path.is_file():
        return image_path, _media_type_for_key(key)
    return None


def find(hash_hex: str, base_url: str = "") -> StoredImage | None:
    """Look up an already stored image by the hash of its source URL."""
    for ext in ("jpg", "png", "gif", "webp"):
        key = f"{hash_hex}.{ext}"
        if exists(key):
            return StoredImage(
                key=key,
                path=_key_dir(key) / key,
                media_type=_media_type_for_key(key),
                url=get_image_url(key, base_url),
            )
    return None


def put(key: str, data: bytes, base_url: str = "") -> StoredImage:
    """Write ``data`` under ``key``, replacing any previous copy atomically."""
    if not is_valid_key(key):
        raise ImageStoreError(key, "invalid key")
    target_dir = _key_dir(key)
    image_path = target_dir / key
    tmp_name = None
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=target_dir, prefix=".tmp-", delete=False) as tmp:
            tmp_name = tmp.name
            tmp.write(data)
        os.replace(tmp_name, image_path)
    except OSError as e:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        logger.error("image_save_failed", key=key, error=str(e))
        raise ImageStoreError(key, str(e)) from e

    logger.info("image_saved", key=key, size=len(data))
    return StoredImage(
        key=key,
        path=image_path,
        media_type=_media_type_for_key(key),
        url=get_image_url(key, base_url),
    )
