import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from httpx import ASGITransport, AsyncClient

from jimeng_api.main import app
from jimeng_api.core.config import Settings, UpstreamIdentity
from jimeng_api.core.http_client import UpstreamClient, get_upstream_client
from jimeng_api.core.rate_limiting import limiter
from jimeng_api.services.generation.orchestrator import (
    GenerationOrchestrator, get_generation_orchestrator
)


class UpstreamScript:
    """Scripted web API responses per URI for a mocked UpstreamClient.request.

    Responses for a URI are consumed in order; the last one repeats. Exceptions
    in the script are raised instead of returned.
    """

    def __init__(self):
        self.responses = {}
        self.calls = []

    def on(self, uri, *responses):
        self.responses.setdefault(uri, []).extend(responses)
        return self

    async def handle(self, method, uri, token, params=None, data=None, headers=None):
        self.calls.append({"uri": uri, "token": token, "params": params, "data": data})
        queue = self.responses.get(uri)
        if not queue:
            raise AssertionError(f"Unexpected upstream call: {uri}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        return response

    def uris(self):
        return [call["uri"] for call in self.calls]


@pytest.fixture
def test_settings():
    """Settings with every delay set to zero."""
    return Settings(
        IMAGE_POLL_MAX_ATTEMPTS=10,
        IMAGE_POLL_BASE_DELAY=0,
        IMAGE_POLL_PROCESSING_STEP=0,
        VIDEO_POLL_MAX_ATTEMPTS=10,
        VIDEO_POLL_INITIAL_DELAY=0,
        VIDEO_POLL_BASE_DELAY=0,
        VIDEO_POLL_PROCESSING_STEP=0,
        POLL_ALTERNATE_AFTER=4,
        FLOW_RETRY_ATTEMPTS=3,
        FLOW_RETRY_DELAY=0,
        STREAM_HEARTBEAT_INTERVAL=0.01,
        STREAM_DEADLINE=60,
        STREAM_JOB_LIFETIME=60,
    )


@pytest.fixture
def identity():
    return UpstreamIdentity(
        device_id="7000000000000000001",
        web_id="7000000000000000002",
        user_id="0123456789abcdef0123456789abcdef",
        assistant_id="513695",
        version_code="5.8.0",
        platform_code="7",
    )


@pytest.fixture
def upstream_script():
    return UpstreamScript()


@pytest.fixture
def mock_upstream_client(mocker, identity, test_settings, upstream_script):
    """UpstreamClient double driven by `upstream_script`."""
    client = mocker.Mock(spec=UpstreamClient)
    client.identity = identity
    client.config = test_settings
    client.request = AsyncMock(side_effect=upstream_script.handle)
    client.storage_request = AsyncMock()
    client.probe_file = AsyncMock(return_value=2048)
    client.download_file = AsyncMock(return_value=b"\x89PNG\r\n\x1a\nfake-image-bytes")
    client.fetch_file_base64 = AsyncMock(return_value="ZmFrZS1iYXNlNjQ=")
    return client


@pytest.fixture
def mock_sleep():
    return AsyncMock()


@pytest.fixture
def orchestrator(mock_upstream_client, test_settings, mock_sleep):
    return GenerationOrchestrator(mock_upstream_client, test_settings, sleep=mock_sleep)


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer session-token-1"}


@pytest_asyncio.fixture
async def async_client(orchestrator, mock_upstream_client):
    """Create an async HTTP client for testing."""
    app.dependency_overrides[get_generation_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_upstream_client] = lambda: mock_upstream_client
    limiter.enabled = False

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    limiter.enabled = True
    app.dependency_overrides.clear()
