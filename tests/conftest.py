from collections.abc import AsyncGenerator, Callable

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from studio.core.config import settings

# Override settings for tests
settings.xai_api_key = ""
settings.credential_encryption_key = ""
settings.app_env = "development"
settings.sentry_dsn = ""

from studio.gateway.key_pool import KeyPool  # noqa: E402
from studio.gateway.types import ApiKeyEntry, VideoJob  # noqa: E402
from studio.gateway.xai_client import XaiClient  # noqa: E402
from studio.main import app  # noqa: E402
from studio.services.studio_service import StudioService  # noqa: E402
from studio.store.registry import JobRegistry  # noqa: E402


class ScriptedXai:
    """httpx MockTransport handler replaying canned xAI responses.

    Responses are queued per (method, path); the last queued response for a
    route repeats once the others are used up. Unscripted routes answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, status: int = 200, json=None, text: str | None = None) -> None:
        if text is not None:
            response = httpx.Response(status, text=text)
        elif json is not None:
            response = httpx.Response(status, json=json)
        else:
            response = httpx.Response(status)
        self.routes.setdefault((method, path), []).append(response)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": f"unscripted {request.method} {request.url.path}"})
        return queue.pop(0) if len(queue) > 1 else queue[0]


@pytest.fixture
def make_pool() -> Callable[..., KeyPool]:
    """Factory for a pool with one enabled key per label, in the given order."""

    def _make(*labels: str, **kwargs) -> KeyPool:
        entries = [ApiKeyEntry(key=f"xai-test-key-{label}-0000", label=label, id=label) for label in labels]
        return KeyPool(entries, **kwargs)

    return _make


@pytest.fixture
def make_video_job() -> Callable[..., VideoJob]:
    """Factory for a processing video job bound to key ``k1``."""

    def _make(request_id: str = "req-1", key_id: str | None = "k1", **kwargs) -> VideoJob:
        return VideoJob(request_id=request_id, prompt="a cat surfing", key_id=key_id, **kwargs)

    return _make


@pytest.fixture
def upstream() -> ScriptedXai:
    return ScriptedXai()


@pytest_asyncio.fixture
async def xai_client(upstream: ScriptedXai) -> AsyncGenerator[XaiClient, None]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    client = XaiClient(base_url="https://api.x.ai", default_api_key="", http_client=http)
    yield client
    await http.aclose()


@pytest_asyncio.fixture
async def studio(xai_client: XaiClient) -> AsyncGenerator[StudioService, None]:
    service = StudioService(
        pool=KeyPool(),
        registry=JobRegistry(),
        client=xai_client,
        poll_interval=0.01,
        check_spacing=0,
    )
    yield service
    await service.engine.shutdown()


@pytest_asyncio.fixture
async def client(studio: StudioService) -> AsyncGenerator[AsyncClient, None]:
    previous = getattr(app.state, "studio", None)
    app.state.studio = studio
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.state.studio = previous
