import asyncio
import io
from unittest import mock

import pytest

from ephemeral.common.errors import StoreUnavailable
from ephemeral.hubs.sweeper import BlobSweeper


@pytest.mark.asyncio
async def test_run_once_drains_in_batches(sweeping_service, objects, clock):
    for _ in range(5):
        summary = await sweeping_service.create_hub(ttl_seconds=1)
        await sweeping_service.upload_file(summary.id, "a.txt", io.BytesIO(b"a"))
    clock.advance(5)

    sweeper = BlobSweeper(sweeping_service, interval=60, batch_size=2)
    assert await sweeper.run_once() == 5
    assert objects.objects == {}


@pytest.mark.asyncio
async def test_disabled_sweeper_never_starts(service):
    sweeper = BlobSweeper(service, interval=0)
    await sweeper.start()
    assert not sweeper.enabled
    assert sweeper._task is None
    await sweeper.stop()


def _flaky_sweep(error):
    calls = []

    async def sweep(limit):
        calls.append(limit)
        if len(calls) == 1:
            raise error
        return 0

    return sweep


@pytest.mark.asyncio
async def test_background_loop_survives_store_outage(service):
    sweeper = BlobSweeper(service, interval=0.01)
    with mock.patch.object(service, "sweep_expired", side_effect=_flaky_sweep(StoreUnavailable())) as sweep:
        await sweeper.start()
        for _ in range(50):
            if sweep.call_count >= 2:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()
    assert sweep.call_count >= 2


@pytest.mark.asyncio
async def test_background_loop_survives_unexpected_error(service):
    sweeper = BlobSweeper(service, interval=0.01)
    with mock.patch.object(service, "sweep_expired", side_effect=_flaky_sweep(RuntimeError("boom"))) as sweep:
        await sweeper.start()
        for _ in range(50):
            if sweep.call_count >= 2:
                break
            await asyncio.sleep(0.01)
        assert not sweeper._task.done()
        await sweeper.stop()
    assert sweep.call_count >= 2
