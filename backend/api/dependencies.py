"""
Shared service instances for the API routes.
"""
import threading
from typing import Optional

from services.smart_cropper import SmartCropper

_cropper: Optional[SmartCropper] = None
_lock = threading.Lock()


def get_cropper() -> SmartCropper:
    """FastAPI dependency returning the process-wide SmartCropper."""
    global _cropper
    with _lock:
        if _cropper is None:
            _cropper = SmartCropper()
        return _cropper


def shutdown_cropper() -> None:
    global _cropper
    with _lock:
        cropper, _cropper = _cropper, None
    if cropper is not None:
        cropper.close()
