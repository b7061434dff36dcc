import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure the backend package root is on sys.path for direct pytest runs
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture
def session_factory(tmp_path):
    from db import make_session_factory

    return make_session_factory(f"sqlite:///{tmp_path / 'crop_cache.sqlite'}")


@pytest.fixture
def noise_image():
    from services.image_snapshot import ImageSnapshot

    rng = np.random.default_rng(42)
    pixels = rng.integers(0, 256, size=(48, 64, 3), dtype=np.uint8)
    return ImageSnapshot.from_array("test://noise.png", pixels)


@pytest.fixture
def unopenable_database(tmp_path, monkeypatch):
    """Points the default engine at a directory, which SQLite cannot open."""
    import db
    from sqlalchemy.orm import sessionmaker

    broken = db.make_engine(f"sqlite:///{tmp_path}")
    monkeypatch.setattr(db, "engine", broken)
    monkeypatch.setattr(db, "SessionLocal", sessionmaker(bind=broken, autoflush=False, autocommit=False))
    yield broken
    broken.dispose()
