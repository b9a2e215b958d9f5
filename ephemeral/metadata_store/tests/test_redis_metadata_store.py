import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ephemeral.common.errors import HubAlreadyExists, HubNotFound, StoreUnavailable
from ephemeral.hubs.models import FileEntry, PathData
from ephemeral.metadata_store.repository import (
    EXPIRY_INDEX_KEY,
    RedisMetadataStore,
    files_key,
    meta_key,
    paths_key,
    text_key,
)


@pytest.fixture
def scripts():
    return {
        "create": AsyncMock(return_value=1),
        "set_text": AsyncMock(return_value=1),
        "append": AsyncMock(return_value=1),
        "claim": AsyncMock(return_value=[]),
    }


@pytest.fixture
def mock_redis(scripts):
    client = MagicMock()
    # Registration order in RedisMetadataStore.__init__.
    client.register_script.side_effect = [
        scripts["create"],
        scripts["set_text"],
        scripts["append"],
        scripts["claim"],
    ]
    client.ping = AsyncMock(return_value=True)
    client.zadd = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client


def _pipeline(client, results):
    pipe = MagicMock()
    pipe.__aenter__.return_value = pipe
    pipe.execute = AsyncMock(return_value=results)
    client.pipeline.return_value = pipe
    return pipe


def test_key_layout():
    assert meta_key("abc") == "hub:abc"
    assert text_key("abc") == "hub:abc:text"
    assert files_key("abc") == "hub:abc:files"
    assert paths_key("abc") == "hub:abc:paths"


@pytest.mark.asyncio
async def test_create_runs_script_with_ttl_in_ms(mock_redis, scripts):
    store = RedisMetadataStore(client=mock_redis)
    record = await store.create("abc", "welcome", 90)

    assert record.id == "abc"
    assert record.content == "welcome"
    kwargs = scripts["create"].call_args.kwargs
    assert kwargs["keys"] == ["hub:abc", "hub:abc:text", EXPIRY_INDEX_KEY]
    meta_json, text, ttl_ms, hub_id, index_flag = kwargs["args"]
    assert json.loads(meta_json)["id"] == "abc"
    assert text == "welcome"
    assert ttl_ms == 90_000
    assert hub_id == "abc"
    assert index_flag == "1"


@pytest.mark.asyncio
async def test_create_can_skip_expiry_index(mock_redis, scripts):
    store = RedisMetadataStore(client=mock_redis)
    await store.create("abc", "", 90, index_expiry=False)

    assert scripts["create"].call_args.kwargs["args"][-1] == "0"


@pytest.mark.asyncio
async def test_create_collision(mock_redis, scripts):
    scripts["create"].return_value = 0
    store = RedisMetadataStore(client=mock_redis)
    with pytest.raises(HubAlreadyExists):
        await store.create("abc", "", 60)


@pytest.mark.asyncio
async def test_connection_failure_becomes_store_unavailable(mock_redis, scripts):
    scripts["create"].side_effect = RedisConnectionError("redis.internal:6379 refused")
    store = RedisMetadataStore(client=mock_redis)
    with pytest.raises(StoreUnavailable) as exc_info:
        await store.create("abc", "", 60)
    assert "redis.internal" not in exc_info.value.public_message


@pytest.mark.asyncio
async def test_get_missing_meta_is_not_found(mock_redis):
    _pipeline(mock_redis, [None, None, [], []])
    store = RedisMetadataStore(client=mock_redis)
    with pytest.raises(HubNotFound):
        await store.get("abc")


@pytest.mark.asyncio
async def test_get_assembles_record(mock_redis):
    entry = FileEntry(filename="a.txt", size=3, stored_key="abc/a.txt")
    path = PathData(id="p1", points=[(1, 2)])
    meta = {"id": "abc", "created_at": "2026-01-01T00:00:00+00:00", "expires_at": "2026-01-02T00:00:00+00:00"}
    pipe = _pipeline(mock_redis, [json.dumps(meta), "hi", [entry.model_dump_json()], [path.model_dump_json()]])
    store = RedisMetadataStore(client=mock_redis)

    record = await store.get("abc")

    mock_redis.pipeline.assert_called_once_with(transaction=True)
    pipe.get.assert_any_call("hub:abc")
    pipe.lrange.assert_any_call("hub:abc:files", 0, -1)
    assert record.content == "hi"
    assert record.files[0].filename == "a.txt"
    assert record.paths[0].id == "p1"


@pytest.mark.asyncio
async def test_update_text_on_missing_hub(mock_redis, scripts):
    scripts["set_text"].return_value = 0
    store = RedisMetadataStore(client=mock_redis)
    with pytest.raises(HubNotFound):
        await store.update_text("abc", "x")
    assert scripts["set_text"].call_args.kwargs["keys"] == ["hub:abc", "hub:abc:text"]


@pytest.mark.asyncio
async def test_append_file_entry_targets_files_list(mock_redis, scripts):
    store = RedisMetadataStore(client=mock_redis)
    entry = FileEntry(filename="a.txt", size=3, stored_key="abc/a.txt")
    await store.append_file_entry("abc", entry)

    kwargs = scripts["append"].call_args.kwargs
    assert kwargs["keys"] == ["hub:abc", "hub:abc:files"]
    assert json.loads(kwargs["args"][0])["filename"] == "a.txt"


@pytest.mark.asyncio
async def test_append_path_on_missing_hub(mock_redis, scripts):
    scripts["append"].return_value = 0
    store = RedisMetadataStore(client=mock_redis)
    with pytest.raises(HubNotFound):
        await store.append_path("abc", PathData(id="p1"))


@pytest.mark.asyncio
async def test_claim_and_requeue(mock_redis, scripts):
    scripts["claim"].return_value = ["old1", "old2"]
    store = RedisMetadataStore(client=mock_redis)

    assert await store.claim_expired(limit=10) == ["old1", "old2"]
    assert scripts["claim"].call_args.kwargs["args"] == [10, "hub:"]

    await store.requeue_expired("old1")
    key, mapping = mock_redis.zadd.call_args.args
    assert key == EXPIRY_INDEX_KEY
    assert list(mapping) == ["old1"]


@pytest.mark.asyncio
async def test_ping_reports_failure(mock_redis):
    mock_redis.ping.side_effect = RedisConnectionError("down")
    store = RedisMetadataStore(client=mock_redis)
    assert await store.ping() is False
