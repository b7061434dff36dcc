from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from domain.errors import ImageDataError
from domain.models import CropCoordinates
from services.image_snapshot import ImageSnapshot, crop_box


def _png(width: int, height: int, color=(200, 40, 40)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def test_from_bytes_decodes_to_rgba():
    snapshot = ImageSnapshot.from_bytes("img://red", _png(30, 20))
    assert (snapshot.width, snapshot.height) == (30, 20)
    assert snapshot.pixels.shape == (20, 30, 4)
    assert snapshot.pixels[0, 0].tolist() == [200, 40, 40, 255]


def test_pixels_are_read_only():
    snapshot = ImageSnapshot.from_array("img://gray", np.zeros((4, 4), dtype=np.uint8))
    with pytest.raises(ValueError):
        snapshot.pixels[0, 0, 0] = 1


@pytest.mark.parametrize("data", [b"", b"garbage"])
def test_undecodable_bytes_raise(data):
    with pytest.raises(ImageDataError):
        ImageSnapshot.from_bytes("img://bad", data)


def test_malformed_buffers_raise():
    with pytest.raises(ImageDataError):
        ImageSnapshot.from_array("img://bad", np.zeros((4, 4, 2), dtype=np.uint8))
    with pytest.raises(ImageDataError):
        ImageSnapshot(identity="img://bad", width=0, height=4, pixels=np.zeros((4, 4, 4), dtype=np.uint8))


def test_from_path(tmp_path):
    path = tmp_path / "photo.png"
    path.write_bytes(_png(12, 8))
    snapshot = ImageSnapshot.from_path(path)
    assert snapshot.identity == str(path.resolve())
    with pytest.raises(ImageDataError):
        ImageSnapshot.from_path(tmp_path / "missing.png")


def test_for_analysis_keeps_source_dimensions():
    snapshot = ImageSnapshot.from_array("img://big", np.zeros((600, 1000, 3), dtype=np.uint8))
    small = snapshot.for_analysis(100)
    assert small.buffer_size == (100, 60)
    assert (small.width, small.height) == (1000, 600)
    assert small.aspect_ratio == snapshot.aspect_ratio
    assert snapshot.for_analysis(2000) is snapshot


def test_luminance_weights():
    pixels = np.array([[[255, 0, 0], [0, 255, 0], [0, 0, 255]]], dtype=np.uint8)
    luma = ImageSnapshot.from_array("img://rgb", pixels).luminance()
    assert luma.tolist() == [[76, 150, 29]]


def test_crop_box_stays_inside_image():
    coords = CropCoordinates(x=0.9999, y=0.0, width=0.0001, height=1.0, confidence=0.1, strategy="fallback")
    left, top, right, bottom = crop_box(coords, 10, 10)
    assert 0 <= left < right <= 10
    assert 0 <= top < bottom <= 10
