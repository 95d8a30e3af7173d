import io
import threading
from typing import AsyncGenerator, Dict, Iterable, Optional, Tuple

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from src.main import app
from src.core.exceptions import ObjectNotFoundError, RemoteIOError
from src.core.storage import ProviderKind, StorageProvider


class InMemoryProvider(StorageProvider):
    """StorageProvider over a dict, keyed by (container, key)."""

    def __init__(
        self,
        kind: ProviderKind = ProviderKind.AZURE,
        objects: Optional[Dict[Tuple[str, str], bytes]] = None,
        fail_store: Iterable[str] = (),
        fail_fetch: Iterable[str] = (),
    ):
        self.kind = kind
        self.objects = dict(objects or {})
        self.fail_store = set(fail_store)
        self.fail_fetch = set(fail_fetch)
        self.store_calls = []
        self._lock = threading.Lock()

    def _fetch(self, container: str, key: str) -> bytes:
        if key in self.fail_fetch:
            raise RemoteIOError(f"Error downloading {container}/{key}: connection reset", provider=self.kind.value)
        try:
            return self.objects[(container, key)]
        except KeyError:
            raise ObjectNotFoundError(container, key, provider=self.kind.value)

    def _store(self, data: bytes, key: str, container: str) -> None:
        with self._lock:
            self.store_calls.append((container, key))
        if key in self.fail_store:
            raise RemoteIOError(f"Error uploading {container}/{key}: connection reset", provider=self.kind.value)
        with self._lock:
            self.objects[(container, key)] = data


def make_image(fmt: str = "PNG", size=(64, 48), color=(200, 30, 30)) -> bytes:
    mode = "RGBA" if fmt in ("PNG", "WEBP") else "RGB"
    fill = color + (255,) if mode == "RGBA" else color
    buf = io.BytesIO()
    Image.new(mode, size, fill).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def png_bytes() -> bytes:
    return make_image("PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image("JPEG")


@pytest.fixture
def memory_provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_provider():
    return InMemoryProvider


@pytest.fixture
def image_factory():
    return make_image
