"""
Immutable RGBA pixel snapshots handed to the crop analyzers.

A snapshot keeps the *source* dimensions (used for aspect-ratio geometry)
separately from the pixel buffer, which may be a downscaled copy made for
analysis. Normalized crop coordinates are the same in both spaces.
"""
from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple, Union
import logging

import numpy as np
from PIL import Image, ImageOps

from domain.errors import ImageDataError
from domain.models import CropCoordinates, TargetSize

logger = logging.getLogger(__name__)

# Downscale bound used for analysis copies (longest edge, in pixels)
DEFAULT_ANALYSIS_MAX_DIM = 512


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.ascontiguousarray(arr, dtype=np.uint8)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class ImageSnapshot:
    """Decoded image with a stable identity (usually its source URL)."""
    identity: str
    width: int
    height: int
    pixels: np.ndarray  # H x W x 4, uint8, read-only

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ImageDataError(f"image dimensions must be positive, got {self.width}x{self.height}")
        pixels = self.pixels
        if not isinstance(pixels, np.ndarray) or pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ImageDataError("pixel buffer must be an H x W x 4 RGBA array")
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise ImageDataError("pixel buffer is empty")
        if pixels.dtype != np.uint8 or pixels.flags.writeable:
            object.__setattr__(self, "pixels", _readonly(pixels))

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    @property
    def buffer_size(self) -> Tuple[int, int]:
        """(width, height) of the pixel buffer actually analyzed."""
        return int(self.pixels.shape[1]), int(self.pixels.shape[0])

    @classmethod
    def from_array(cls, identity: str, pixels: np.ndarray) -> "ImageSnapshot":
        arr = np.asarray(pixels)
        if arr.ndim == 2:
            arr = np.stack([arr, arr, arr, np.full_like(arr, 255)], axis=-1)
        elif arr.ndim == 3 and arr.shape[2] == 3:
            alpha = np.full(arr.shape[:2] + (1,), 255, dtype=arr.dtype)
            arr = np.concatenate([arr, alpha], axis=-1)
        if arr.ndim != 3 or arr.shape[2] != 4:
            raise ImageDataError(f"unsupported pixel buffer shape {arr.shape}")
        return cls(identity=identity, width=int(arr.shape[1]), height=int(arr.shape[0]), pixels=_readonly(arr))

    @classmethod
    def from_pil(cls, identity: str, image: Image.Image) -> "ImageSnapshot":
        try:
            rgba = ImageOps.exif_transpose(image).convert("RGBA")
        except Exception as exc:
            raise ImageDataError(f"could not decode image {identity}: {exc}") from exc
        return cls.from_array(identity, np.array(rgba))

    @classmethod
    def from_path(cls, path: Union[str, Path], identity: Optional[str] = None) -> "ImageSnapshot":
        path = Path(path)
        try:
            with Image.open(path) as img:
                return cls.from_pil(identity or str(path.resolve()), img)
        except ImageDataError:
            raise
        except (OSError, ValueError) as exc:
            raise ImageDataError(f"could not open image {path}: {exc}") from exc

    @classmethod
    def from_bytes(cls, identity: str, data: bytes) -> "ImageSnapshot":
        """Decode an encoded image (JPEG, PNG, HEIC when registered...)."""
        if not data:
            raise ImageDataError(f"no image data for {identity}")
        try:
            with Image.open(BytesIO(data)) as img:
                return cls.from_pil(identity, img)
        except ImageDataError:
            raise
        except (OSError, ValueError) as exc:
            raise ImageDataError(f"could not decode image {identity}: {exc}") from exc

    def for_analysis(self, max_dimension: int = DEFAULT_ANALYSIS_MAX_DIM) -> "ImageSnapshot":
        """Return a snapshot whose buffer fits in max_dimension, keeping source dimensions."""
        buf_w, buf_h = self.buffer_size
        if max_dimension <= 0 or max(buf_w, buf_h) <= max_dimension:
            return self
        img = Image.fromarray(np.asarray(self.pixels))
        img.thumbnail((max_dimension, max_dimension), Image.Resampling.BILINEAR)
        logger.debug("downscaled %s from %dx%d to %dx%d for analysis", self.identity, buf_w, buf_h, *img.size)
        return ImageSnapshot(identity=self.identity, width=self.width, height=self.height, pixels=_readonly(np.array(img)))

    def luminance(self) -> np.ndarray:
        """Rounded Rec.601 luma as an H x W uint8 array."""
        rgb = self.pixels[..., :3].astype(np.float64)
        gray = 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]
        return np.clip(np.rint(gray), 0, 255).astype(np.uint8)


def crop_box(coords: CropCoordinates, width: int, height: int) -> Tuple[int, int, int, int]:
    """Convert normalized coordinates to an integer (left, top, right, bottom) box inside width x height."""
    left = int(round(max(0.0, coords.x) * width))
    top = int(round(max(0.0, coords.y) * height))
    right = int(round(min(1.0, coords.x + coords.width) * width))
    bottom = int(round(min(1.0, coords.y + coords.height) * height))
    left = max(0, min(left, width - 1))
    top = max(0, min(top, height - 1))
    right = max(left + 1, min(right, width))
    bottom = max(top + 1, min(bottom, height))
    return left, top, right, bottom


def apply_crop(image: Image.Image, coords: CropCoordinates, target_size: Optional[TargetSize] = None) -> Image.Image:
    """Crop a Pillow image to the normalized rectangle, optionally resizing to target_size."""
    if not coords.is_valid:
        raise ValueError(f"invalid crop coordinates: {coords}")
    cropped = image.crop(crop_box(coords, image.width, image.height))
    if target_size is not None:
        target_size.validate()
        cropped = cropped.resize(
            (max(1, int(round(target_size.width))), max(1, int(round(target_size.height)))),
            resample=Image.Resampling.LANCZOS,
        )
    return cropped


def register_heif_opener() -> bool:
    """
    Register HEIF/HEIC opener with Pillow if pillow-heif is available.

    Call this at application startup to enable HEIC support.
    Safe to call multiple times or if pillow-heif is not installed.
    """
    try:
        from pillow_heif import register_heif_opener as _register
        _register()
        return True
    except ImportError:
        return False
