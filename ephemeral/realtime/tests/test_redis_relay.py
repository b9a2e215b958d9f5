from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ephemeral.realtime.broadcaster import HubBroadcaster
from ephemeral.realtime.contracts import HubEvent, HubEventType
from ephemeral.realtime.redis_relay import CHANNEL_PATTERN, RedisEventRelay, channel_for


@pytest.fixture
def mock_redis():
    client = MagicMock()
    client.publish = AsyncMock(return_value=1)
    return client


def _event(hub_id="h1", content="hi"):
    return HubEvent(type=HubEventType.TEXT_UPDATED, hub_id=hub_id, payload={"content": content})


def test_channel_naming():
    assert channel_for("abc") == "hub:abc:events"
    assert CHANNEL_PATTERN == "hub:*:events"


@pytest.mark.asyncio
async def test_emit_publishes_to_hub_channel(mock_redis):
    relay = RedisEventRelay(mock_redis, HubBroadcaster())
    await relay.emit(_event())

    channel, raw = mock_redis.publish.call_args.args
    assert channel == "hub:h1:events"
    assert HubEvent.model_validate_json(raw).payload == {"content": "hi"}


@pytest.mark.asyncio
async def test_emit_failure_is_not_raised(mock_redis):
    mock_redis.publish.side_effect = RedisConnectionError("down")
    relay = RedisEventRelay(mock_redis, HubBroadcaster())
    await relay.emit(_event())


@pytest.mark.asyncio
async def test_dispatch_feeds_local_subscribers(mock_redis):
    bus = HubBroadcaster()
    relay = RedisEventRelay(mock_redis, bus)
    sub = relay.subscribe("h1")

    relay.dispatch(_event(content="from another instance").model_dump_json())

    event = await sub.get()
    assert event.payload == {"content": "from another instance"}


@pytest.mark.asyncio
async def test_dispatch_drops_malformed_messages(mock_redis):
    bus = HubBroadcaster()
    relay = RedisEventRelay(mock_redis, bus)
    sub = relay.subscribe("h1")

    relay.dispatch("not json")
    relay.dispatch('{"type": "unknown", "hub_id": "h1"}')
    assert sub.pending() == 0


@pytest.mark.asyncio
async def test_stop_without_start_closes_subscriptions(mock_redis):
    bus = HubBroadcaster()
    relay = RedisEventRelay(mock_redis, bus)
    sub = relay.subscribe("h1")
    await relay.stop()
    assert sub.closed
