"""Pytest configuration and fixtures for registry-edge tests."""

import asyncio
from contextlib import asynccontextmanager

import pytest
from aiohttp_retry import ExponentialRetry
from multidict import CIMultiDict, CIMultiDictProxy

from registry_edge import create_app
from registry_edge.config import ServerConfig
from registry_edge.metrics import MetricsCollector
from registry_edge.proxy import ProxyHandler, UpstreamClient


class FakeContent:
    """Stands in for aiohttp's StreamReader."""

    def __init__(self, chunks: list[bytes]):
        self._chunks = chunks

    async def iter_chunked(self, n: int):
        for chunk in self._chunks:
            yield chunk


class FakeResponse:
    """Minimal aiohttp.ClientResponse replacement."""

    def __init__(self, status: int = 200, headers: dict | None = None, chunks: list[bytes] | None = None):
        self.status = status
        self.headers = CIMultiDictProxy(CIMultiDict(headers or {}))
        self.content = FakeContent(chunks or [])
        self.released = 0

    def release(self):
        self.released += 1


async def hang():
    """Upstream that never answers."""
    await asyncio.sleep(60)


class FakeSession:
    """Scripted aiohttp.ClientSession.

    Each request consumes the next outcome; the last outcome repeats. An
    outcome is a FakeResponse, an exception instance to raise, or a coroutine
    function to await.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [FakeResponse()]
        self.calls: list[dict] = []
        self.closed = False

    async def request(self, method, url, **kwargs):
        data = kwargs.get("data")
        if data is not None and not isinstance(data, bytes):
            # Drain streamed bodies the way aiohttp would
            kwargs["data"] = b"".join([chunk async for chunk in data])
            kwargs["streamed"] = True
        self.calls.append({"method": method, "url": url, **kwargs})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome()
        return outcome

    @asynccontextmanager
    async def head(self, url, **kwargs):
        yield await self.request("HEAD", url, **kwargs)

    async def close(self):
        self.closed = True


@pytest.fixture
def proxy_env() -> dict:
    """Minimal valid proxy configuration."""
    return {
        "PROXY_HOSTNAME": "registry-1.docker.io",
        "REQUEST_TIMEOUT": "200",
        "MAX_RETRIES": "3",
    }


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def no_backoff() -> ExponentialRetry:
    """Retry schedule without delays."""
    return ExponentialRetry(attempts=3, start_timeout=0, max_timeout=0)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession(
        FakeResponse(200, {"Content-Type": "application/octet-stream", "Content-Length": "4"}, [b"data"])
    )


@pytest.fixture
def upstream_client(metrics, fake_session, no_backoff) -> UpstreamClient:
    return UpstreamClient(metrics, session=fake_session, retry_options=no_backoff)


@pytest.fixture
def handler(proxy_env, metrics, upstream_client) -> ProxyHandler:
    return ProxyHandler(proxy_env, metrics=metrics, upstream=upstream_client)


@pytest.fixture
def app(proxy_env, handler):
    """Create test application."""
    return create_app(ServerConfig(debug=True, proxy_env=proxy_env), handler=handler)


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()
