from .crop_cache import CropCacheRepository
from . import models

__all__ = ["CropCacheRepository", "models"]
