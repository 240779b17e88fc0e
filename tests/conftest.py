"""Pytest fixtures for the avatar pipeline and the upload API."""

import io
from collections.abc import AsyncGenerator
from pathlib import Path

import numpy as np
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from PIL import Image

from avatar_studio.config import Settings
from avatar_studio.main import create_app
from avatar_studio.models import UploadSession
from avatar_studio.sessions import InMemorySessionStore

TEST_TOKEN = "3f2b8c1e-9d4a-4b7e-8a6f-1c2d3e4f5a6b"

FORMAT_BY_MIME = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


def gradient_pixels(width: int, height: int) -> np.ndarray:
    """Smooth RGB gradient; compresses very well."""
    xs = np.linspace(0, 255, width, dtype=np.float32)
    ys = np.linspace(0, 255, height, dtype=np.float32)
    r = np.tile(xs, (height, 1))
    g = np.tile(ys[:, None], (1, width))
    b = np.full((height, width), 128, dtype=np.float32)
    return np.stack([r, g, b], axis=-1).astype(np.uint8)


def noisy_pixels(width: int, height: int, amount: int = 60, seed: int = 7) -> np.ndarray:
    """Gradient plus noise, a rough stand-in for a real photo."""
    rng = np.random.default_rng(seed)
    base = gradient_pixels(width, height).astype(np.int16)
    noise = rng.integers(-amount, amount + 1, size=base.shape, dtype=np.int16)
    return np.clip(base + noise, 0, 255).astype(np.uint8)


def encode_pixels(pixels: np.ndarray, mimetype: str = "image/jpeg", quality: int = 90) -> bytes:
    buf = io.BytesIO()
    img = Image.fromarray(pixels, "RGB")
    fmt = FORMAT_BY_MIME[mimetype]
    if fmt == "PNG":
        img.save(buf, format=fmt)
    else:
        img.save(buf, format=fmt, quality=quality)
    return buf.getvalue()


@pytest.fixture
def make_image():
    """Factory: encoded image bytes of a given size and type."""

    def _make(width=640, height=480, mimetype="image/jpeg", noisy=False, quality=90):
        pixels = noisy_pixels(width, height) if noisy else gradient_pixels(width, height)
        return encode_pixels(pixels, mimetype, quality)

    return _make


@pytest.fixture
def upload_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def settings(upload_dir: Path) -> Settings:
    return Settings(upload_dir=upload_dir, session_backend="memory")


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def session_token(store: InMemorySessionStore) -> str:
    store.set(
        TEST_TOKEN,
        UploadSession(
            user_id="1",
            username="admin",
            avatar_path="/uploads/default-avatar.png",
            created_at=1_700_000_000_000,
        ),
    )
    return TEST_TOKEN


@pytest.fixture
def app(settings: Settings, store: InMemorySessionStore) -> FastAPI:
    return create_app(settings=settings, store=store)


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def stored_files(directory: Path) -> list:
    return sorted(p.name for p in directory.iterdir())
