from unittest import mock

import pytest
from fastapi.testclient import TestClient

from ephemeral.metadata_store.repository import InMemoryMetadataStore, RedisMetadataStore
from ephemeral.object_store.repository import InMemoryObjectStore
from ephemeral.realtime.broadcaster import HubBroadcaster
from ephemeral.realtime.redis_relay import RedisEventRelay
from ephemeral.server import build_service, create_app


def test_build_service_memory_backends(monkeypatch):
    monkeypatch.setenv("HUB_METADATA_BACKEND", "memory")
    monkeypatch.setenv("HUB_OBJECT_BACKEND", "memory")
    monkeypatch.setenv("HUB_EVENTS_BACKEND", "memory")
    service = build_service()
    assert isinstance(service.metadata, InMemoryMetadataStore)
    assert isinstance(service.objects, InMemoryObjectStore)
    assert isinstance(service.events, HubBroadcaster)


def test_build_service_redis_relay_shares_client(monkeypatch):
    monkeypatch.setenv("HUB_METADATA_BACKEND", "redis")
    monkeypatch.setenv("HUB_OBJECT_BACKEND", "memory")
    monkeypatch.setenv("HUB_EVENTS_BACKEND", "redis")
    fake_client = mock.MagicMock()
    with mock.patch("ephemeral.metadata_store.repository.aioredis.Redis.from_url", return_value=fake_client):
        service = build_service()
    assert isinstance(service.metadata, RedisMetadataStore)
    assert isinstance(service.events, RedisEventRelay)
    assert service.metadata.client is fake_client


def test_unknown_backend_is_rejected(monkeypatch):
    monkeypatch.setenv("HUB_OBJECT_BACKEND", "ftp")
    monkeypatch.setenv("HUB_METADATA_BACKEND", "memory")
    with pytest.raises(RuntimeError):
        build_service()


def test_startup_survives_bucket_failure(service, objects):
    with mock.patch.object(objects, "ensure_bucket", side_effect=RuntimeError("no perms")):
        with TestClient(create_app(service=service)) as client:
            assert client.get("/health").status_code == 200


def test_cors_preflight(client):
    resp = client.options(
        "/api/hubs",
        headers={"Origin": "https://example.com", "Access-Control-Request-Method": "POST"},
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
