import dataclasses
import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure repo root on sys.path for imports from anywhere in tests tree.
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("HUB_METADATA_BACKEND", "memory")
os.environ.setdefault("HUB_OBJECT_BACKEND", "memory")
os.environ.setdefault("HUB_EVENTS_BACKEND", "memory")
os.environ.setdefault("HUB_BLOB_SWEEP_INTERVAL", "0")

from ephemeral.config.runtime_config import HubSettings  # noqa: E402
from ephemeral.hubs.service import HubService  # noqa: E402
from ephemeral.metadata_store.repository import InMemoryMetadataStore  # noqa: E402
from ephemeral.object_store.repository import InMemoryObjectStore  # noqa: E402
from ephemeral.realtime.broadcaster import HubBroadcaster  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return HubSettings(
        max_text_bytes=100_000,
        max_file_bytes=1024,
        blob_sweep_interval_seconds=0,
        ws_heartbeat_seconds=0.05,
        public_base_url="http://testserver",
    )


@pytest.fixture
def metadata(clock):
    return InMemoryMetadataStore(clock=clock)


@pytest.fixture
def objects():
    return InMemoryObjectStore()


@pytest.fixture
def broadcaster():
    return HubBroadcaster(queue_size=8)


@pytest.fixture
def service(metadata, objects, broadcaster, settings):
    return HubService(metadata, objects, broadcaster, settings=settings)


@pytest.fixture
def sweeping_service(metadata, objects, broadcaster, settings):
    """Service configured as if a blob sweeper were running, so hubs are indexed for cleanup."""
    swept = dataclasses.replace(settings, blob_sweep_interval_seconds=60)
    return HubService(metadata, objects, broadcaster, settings=swept)


@pytest.fixture
def client(service):
    from ephemeral.server import create_app

    with TestClient(create_app(service=service)) as test_client:
        yield test_client
