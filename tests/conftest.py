"""
Pytest configuration and fixtures for tsdb-shipper tests.
"""

import json
from typing import Callable, List, Optional

import httpx
import pytest

from tsdb_shipper.config import ShipperConfig
from tsdb_shipper.storage.fifo_file import DurableFifoFile
from tsdb_shipper.storage.persistence import MetricPersistence

TEST_URL = "http://tsdb.test:4242"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEndpoint:
    """
    httpx.MockTransport handler simulating an OpenTSDB endpoint.

    Every request is recorded. Put requests answer with a details body
    counting all datapoints as successful unless `put_response` is set.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.version_status = 200
        self.put_response: Optional[Callable[[httpx.Request], httpx.Response]] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/version":
            return httpx.Response(self.version_status, json={"version": "2.4.0"})
        if path == "/api/annotation":
            return httpx.Response(204)
        if path == "/api/put":
            if self.put_response is not None:
                return self.put_response(request)
            return httpx.Response(200, json={"errors": [], "failed": 0, "success": 1})
        return httpx.Response(404)

    def puts(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/put"]

    def put_datapoints(self) -> List[dict]:
        points: List[dict] = []
        for request in self.puts():
            points.extend(json.loads(request.content))
        return points


@pytest.fixture(autouse=True)
def clear_fifo_cache():
    """Reset the process-wide offline file cache between tests."""
    DurableFifoFile.clear_cache()
    yield
    DurableFifoFile.clear_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def endpoint():
    return RecordingEndpoint()


@pytest.fixture
def mock_client(endpoint):
    """AsyncClient routed to the recording endpoint."""
    return httpx.AsyncClient(transport=httpx.MockTransport(endpoint))


@pytest.fixture
def storage_dir(tmp_path):
    path = tmp_path / "offline" / "test-app"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def persistence(storage_dir):
    """Opened persistence manager on a temp directory."""
    manager = MetricPersistence(storage_dir, max_file_size=64 * 1024)
    assert manager.open()
    yield manager
    manager.close()


@pytest.fixture
def config(tmp_path):
    """Shipper configuration suited to fast tests."""
    return ShipperConfig.model_validate(
        {
            "endpoint": {
                "url": TEST_URL,
                "check_period": 1,
                "connect_timeout": 200,
                "request_timeout": 500,
            },
            "http": {
                "compression": False,
                "retries": 2,
                "retry_delay": 0,
                "max_concurrent_flushes": 2,
            },
            "batching": {"size": 1, "time_trigger_ms": 50},
            "offline": {"directory": str(tmp_path / "offline"), "app_name": "test-app"},
            "logging": {"log_dir": str(tmp_path / "logs")},
        }
    )
