"""
Exceptions raised by the smart crop engine.
"""


class SmartCropError(Exception):
    """Base class for smart crop failures."""


class InvalidTargetSizeError(SmartCropError, ValueError):
    """Target width or height is not a positive, finite number."""


class ImageDataError(SmartCropError, ValueError):
    """Pixel buffer is empty, malformed or not RGBA."""


class CropCacheError(SmartCropError):
    """A persisted-store operation failed."""
