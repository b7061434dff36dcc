import os
from pathlib import Path

# Basic settings helper to read environment configuration.

BACKEND_DIR = Path(__file__).resolve().parent
DEFAULT_DB_URL = f"sqlite:///{BACKEND_DIR / 'data' / 'crop_cache.sqlite'}"


def _as_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return val.lower() in ("1", "true", "yes", "on")


def _as_int(val: str | None, default: int) -> int:
    if val is None or not val.strip():
        return default
    try:
        return int(val)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        self.SMART_CROP_DB_URL: str = os.getenv("SMART_CROP_DB_URL") or DEFAULT_DB_URL
        self.SMART_CROP_CACHE_TTL_DAYS: int = _as_int(os.getenv("SMART_CROP_CACHE_TTL_DAYS"), 7)
        self.SMART_CROP_CACHE_MAX_ENTRIES: int = _as_int(os.getenv("SMART_CROP_CACHE_MAX_ENTRIES"), 1000)
        self.SMART_CROP_MAX_TIMEOUT_MS: int = _as_int(os.getenv("SMART_CROP_MAX_TIMEOUT_MS"), 5000)
        self.SMART_CROP_ANALYSIS_MAX_DIM: int = _as_int(os.getenv("SMART_CROP_ANALYSIS_MAX_DIM"), 512)
        self.SMART_CROP_CACHE_ENABLED: bool = _as_bool(os.getenv("SMART_CROP_CACHE_ENABLED"), True)
        self.SMART_CROP_ANALYZER_WORKERS: int = _as_int(os.getenv("SMART_CROP_ANALYZER_WORKERS"), 4)


settings = Settings()
