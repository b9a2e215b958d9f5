"""Background reclamation of blobs left behind by expired hubs."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ephemeral.common.errors import StoreUnavailable
from ephemeral.hubs.service import HubService

logger = logging.getLogger(__name__)


class BlobSweeper:
    def __init__(self, service: HubService, interval: float, batch_size: int = 100) -> None:
        self.service = service
        self.interval = interval
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    async def run_once(self) -> int:
        """Sweep until a batch comes back short; returns hubs reclaimed."""
        total = 0
        while True:
            reclaimed = await self.service.sweep_expired(self.batch_size)
            total += reclaimed
            if reclaimed < self.batch_size:
                return total

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                reclaimed = await self.run_once()
            except StoreUnavailable:
                logger.warning("Blob sweep skipped; metadata store unavailable")
                continue
            except Exception:
                logger.exception("Blob sweep failed")
                continue
            if reclaimed:
                logger.info("Blob sweep reclaimed %d expired hub(s)", reclaimed)

    async def start(self) -> None:
        if not self.enabled:
            logger.info("Blob sweeper disabled")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
