"""Preview derivation for uploaded images.

Produces a square cover-cropped thumbnail and a tiny blur placeholder as a
data URL. Decoding runs in a worker thread. Any codec failure is returned
to the caller as None so it can fall back to a generic icon.
"""
import asyncio
import base64
import logging
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

BLUR_SIZE = 10
FILE_ICON = "/file.svg"
VIDEO_ICON = "/video.svg"

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "bmp", "tiff", "avif"}
VIDEO_EXTENSIONS = {"mp4", "webm", "mov", "ogg", "mkv", "avi"}


@dataclass
class Thumbnail:
    data: bytes
    content_type: str
    blur_data_url: str


def is_image(content_type: str | None, name: str = "") -> bool:
    if content_type and content_type.startswith("image/"):
        return True
    return name.rsplit(".", 1)[-1].lower() in IMAGE_EXTENSIONS if "." in name else False


def is_video(content_type: str | None, name: str = "") -> bool:
    if content_type and content_type.startswith("video/"):
        return True
    return name.rsplit(".", 1)[-1].lower() in VIDEO_EXTENSIONS if "." in name else False


def _encode(image: Image.Image) -> tuple[bytes, str]:
    buf = BytesIO()
    if image.mode in ("RGBA", "LA", "P"):
        image.convert("RGBA").save(buf, format="PNG", optimize=True)
        return buf.getvalue(), "image/png"
    image.convert("RGB").save(buf, format="JPEG", quality=80)
    return buf.getvalue(), "image/jpeg"


def _derive(data: bytes, size: int) -> Thumbnail:
    with Image.open(BytesIO(data)) as source:
        source = ImageOps.exif_transpose(source)
        thumb = ImageOps.fit(source, (size, size), method=Image.Resampling.LANCZOS)
        thumb_bytes, content_type = _encode(thumb)

        blur = source.copy()
        blur.thumbnail((BLUR_SIZE, BLUR_SIZE))
        buf = BytesIO()
        blur.convert("RGBA").save(buf, format="PNG")
    blur_url = "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
    return Thumbnail(data=thumb_bytes, content_type=content_type, blur_data_url=blur_url)


async def derive_thumbnail(data: bytes, content_type: str | None, size: int = 200) -> Thumbnail | None:
    """Return a Thumbnail, or None when the bytes are not a decodable image."""
    if not is_image(content_type):
        return None
    try:
        return await asyncio.to_thread(_derive, data, size)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        logger.warning(f"Thumbnail derivation failed ({content_type}): {e}")
        return None


def fallback_icon(content_type: str | None, name: str = "") -> str:
    return VIDEO_ICON if is_video(content_type, name) else FILE_ICON
