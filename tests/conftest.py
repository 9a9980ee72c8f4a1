"""Shared fixtures: isolated SQLite database, clean limiter and presence state."""
from __future__ import annotations

import io
import os
import shutil
import sys
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./data/test.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("EMAIL_OUTBOX_DIR", "./data/test_outbox")
os.environ.setdefault("STORAGE_DIR", "./data/test_storage")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from PIL import Image  # noqa: E402

from vetconnect.config import get_settings  # noqa: E402
from vetconnect.database import Base, SessionLocal, engine  # noqa: E402
from vetconnect.dependencies import presence_channel  # noqa: E402
from vetconnect.rate_limiter import auth_rate_limiter  # noqa: E402

settings = get_settings()


@pytest.fixture(autouse=True)
def reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    auth_rate_limiter.store.clear()
    for payload in presence_channel.presence_state().get(presence_channel.key, []):
        presence_channel.untrack(payload["presence_ref"])
    outbox_dir = Path(settings.email_outbox_dir)
    if outbox_dir.exists():
        for file in outbox_dir.glob("*.eml"):
            file.unlink()
    storage_dir = Path(settings.storage_dir)
    if storage_dir.exists():
        shutil.rmtree(storage_dir)
        storage_dir.mkdir(parents=True, exist_ok=True)


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_image():
    def build(fmt: str = "PNG", size=(8, 8)) -> bytes:
        buffer = io.BytesIO()
        Image.new("RGB", size, color=(200, 30, 30)).save(buffer, format=fmt)
        return buffer.getvalue()

    return build
