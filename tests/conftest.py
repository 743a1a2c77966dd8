"""Shared fixtures: recorded sleeps and mock-transport HTTP clients."""

from collections.abc import Callable

import httpx
import pytest

from asset_tagger.models import AssetRef


Handler = Callable[[httpx.Request], httpx.Response]


class RecordingSleep:
    """Awaitable sleep stand-in that only remembers the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def mock_client() -> Callable[[Handler], httpx.AsyncClient]:
    """Build an AsyncClient whose requests are answered by ``handler``."""

    def factory(handler: Handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def asset() -> AssetRef:
    return AssetRef(path="/content/dam/shoes/red-sneaker.jpg", base_url="https://author.example.com/")
