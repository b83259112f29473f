import io
import pytest
from PIL import Image

from panostudio.services.image_processor import (
    ImageProcessingError, image_size, make_preview, make_thumbnail, resize_to_jpeg,
)


def _size(data: bytes):
    with Image.open(io.BytesIO(data)) as img:
        return img.size, img.format


def test_resize_to_jpeg_corrupted():
    """Garbage bytes raise an explicit error instead of crashing."""
    corrupted_bytes = b"this is not an image, just plain text"
    with pytest.raises(ImageProcessingError) as exc_info:
        resize_to_jpeg(corrupted_bytes, 2048)
    assert "Invalid image format" in str(exc_info.value)


def test_image_size_corrupted():
    with pytest.raises(ImageProcessingError):
        image_size(b"bad image")


def test_preview_caps_longest_side(jpeg_bytes):
    """A wide panorama is scaled down proportionally to 2048 px."""
    preview = make_preview(jpeg_bytes(4096, 1024))
    (width, height), fmt = _size(preview)
    assert (width, height) == (2048, 512)
    assert fmt == "JPEG"


def test_thumbnail_caps_longest_side(jpeg_bytes):
    thumb = make_thumbnail(jpeg_bytes(1200, 600))
    (width, height), _ = _size(thumb)
    assert max(width, height) == 400
    assert width == 2 * height


def test_small_image_keeps_its_size(jpeg_bytes):
    """Images already under the limit are only re-encoded."""
    out = resize_to_jpeg(jpeg_bytes(300, 200), 2048)
    assert _size(out)[0] == (300, 200)


def test_png_is_converted_to_jpeg(jpeg_bytes):
    png = jpeg_bytes(500, 250, fmt="PNG")
    assert image_size(png) == (500, 250)
    assert _size(make_thumbnail(png))[1] == "JPEG"
