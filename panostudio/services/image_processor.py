import io
from typing import Tuple
from PIL import Image, ImageOps
from panostudio.config import logger


class ImageProcessingError(Exception):
    """
    Raised when an uploaded file cannot be decoded or re-encoded as an image.
    """
    pass


PREVIEW_MAX_DIMENSION = 2048
THUMBNAIL_MAX_DIMENSION = 400


def _open_rgb(image_bytes: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(image_bytes))
    img = ImageOps.exif_transpose(img)
    if img.mode != 'RGB':
        img = img.convert('RGB')
    return img


def image_size(image_bytes: bytes) -> Tuple[int, int]:
    """
    Read the pixel dimensions of an image without re-encoding it.

    :raises ImageProcessingError: If the bytes are not a readable image.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            return img.size
    except OSError as e:
        raise ImageProcessingError("Invalid image format or corrupted data.") from e


def resize_to_jpeg(image_bytes: bytes, max_dimension: int, quality: int = 85) -> bytes:
    """
    Re-encode an image as JPEG, scaled down proportionally so that neither
    side exceeds ``max_dimension``. Smaller images keep their size.

    :param image_bytes: Raw bytes of the source image.
    :type image_bytes: bytes
    :param max_dimension: Longest allowed side in pixels.
    :type max_dimension: int
    :param quality: JPEG quality (1-95).
    :type quality: int
    :return: The JPEG bytes.
    :rtype: bytes
    :raises ImageProcessingError: If Pillow cannot read the source bytes.
    """
    try:
        img = _open_rgb(image_bytes)

        if img.width > max_dimension or img.height > max_dimension:
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
            logger.debug(f"Image resized to {img.width}x{img.height}")

        output = io.BytesIO()
        img.save(output, format='JPEG', quality=quality, optimize=True)
        logger.info(f"Encoded JPEG {img.width}x{img.height}: {output.tell() / 1024:.2f} KB (quality {quality})")
        return output.getvalue()

    except OSError as e:
        logger.error(f"Pillow could not read the image bytes: {e}", exc_info=True)
        raise ImageProcessingError("Invalid image format or corrupted data.") from e


def make_preview(image_bytes: bytes) -> bytes:
    """Web-optimized preview used by the gallery and as a publish fallback."""
    return resize_to_jpeg(image_bytes, PREVIEW_MAX_DIMENSION, quality=85)


def make_thumbnail(image_bytes: bytes) -> bytes:
    return resize_to_jpeg(image_bytes, THUMBNAIL_MAX_DIMENSION, quality=80)
