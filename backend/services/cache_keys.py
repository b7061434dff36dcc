"""
Deterministic cache keys for crop decisions.

Keys hash only canonical inputs (image identity, target size, settings
values), never object identity or time.
"""
import hashlib
import json

from domain.models import CropSettings, TargetSize

SETTINGS_HASH_LENGTH = 16


def _canonical(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def derive_key(image_identity: str, target_size: TargetSize, settings: CropSettings) -> str:
    payload = {
        "image": image_identity,
        "target_width": float(target_size.width),
        "target_height": float(target_size.height),
        "settings": settings.to_dict(),
    }
    return hashlib.sha256(_canonical(payload)).hexdigest()


def settings_hash(settings: CropSettings) -> str:
    """Short fingerprint of a settings profile, stored next to each cache row."""
    digest = hashlib.sha256(settings.canonical_json().encode("utf-8")).hexdigest()
    return digest[:SETTINGS_HASH_LENGTH]
