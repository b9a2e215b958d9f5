"""Hub lifecycle engine.

Coordinates the metadata store (existence, text, manifest) with the object
store (file bytes) and emits a realtime event after every successful
mutation. Expiry is never computed here: every read goes through the
metadata store, whose native TTL decides whether a hub still exists.
"""
from __future__ import annotations

import asyncio
import logging
import tempfile
from typing import BinaryIO, Callable, List, Optional, Tuple

from ephemeral.common.errors import (
    CreationExhausted,
    HubAlreadyExists,
    HubNotFound,
    InvalidTTL,
    StoreUnavailable,
    TooLarge,
    UploadNotFound,
)
from ephemeral.config.runtime_config import HubSettings
from ephemeral.hub_ids.generator import is_valid_id, new_id
from ephemeral.hubs import archive
from ephemeral.hubs.models import (
    FileEntry,
    HubRecord,
    HubSummary,
    HubView,
    PathData,
    UploadTicket,
    latest_entries,
)
from ephemeral.metadata_store.repository import MetadataStore
from ephemeral.object_store.repository import ObjectStore, object_key, sanitize_filename
from ephemeral.realtime.broadcaster import EventPublisher
from ephemeral.realtime.contracts import HubEvent, HubEventType

logger = logging.getLogger(__name__)

MAX_ID_CHARS = 64
MAX_PATH_POINTS = 10_000
ARCHIVE_SPOOL_BYTES = 8 * 1024 * 1024


class HubService:
    def __init__(
        self,
        metadata: MetadataStore,
        objects: ObjectStore,
        events: EventPublisher,
        settings: Optional[HubSettings] = None,
        id_factory: Callable[[int], str] = new_id,
    ) -> None:
        self.metadata = metadata
        self.objects = objects
        self.events = events
        self.settings = settings or HubSettings()
        self._id_factory = id_factory

    # --- helpers ---

    def _hub_urls(self, hub_id: str) -> Tuple[str, str]:
        base = f"{self.settings.public_base_url}/api/hubs/{hub_id}"
        return base, f"{base}/text"

    def _resolve_ttl(self, ttl_seconds: Optional[int]) -> int:
        ttl = self.settings.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl < 1 or ttl > self.settings.max_ttl_seconds:
            raise InvalidTTL(details={"min_seconds": 1, "max_seconds": self.settings.max_ttl_seconds})
        return ttl

    @staticmethod
    def _check_id(hub_id: str) -> None:
        # Malformed ids cannot exist; answer exactly like an expired hub.
        if len(hub_id) > MAX_ID_CHARS or not is_valid_id(hub_id):
            raise HubNotFound()

    async def _load(self, hub_id: str) -> HubRecord:
        self._check_id(hub_id)
        return await self.metadata.get(hub_id)

    async def _emit(self, hub_id: str, kind: HubEventType, payload: dict) -> None:
        await self.events.emit(HubEvent(type=kind, hub_id=hub_id, payload=payload))

    # --- lifecycle ---

    async def create_hub(self, ttl_seconds: Optional[int] = None) -> HubSummary:
        ttl = self._resolve_ttl(ttl_seconds)
        for attempt in range(1, self.settings.create_attempts + 1):
            hub_id = self._id_factory(self.settings.id_length)
            try:
                record = await self.metadata.create(
                    hub_id,
                    self.settings.initial_text,
                    ttl,
                    index_expiry=self.settings.blob_sweep_interval_seconds > 0,
                )
            except HubAlreadyExists:
                logger.warning("Hub id collision on attempt %d/%d", attempt, self.settings.create_attempts)
                continue
            logger.info("Created hub %s (ttl=%ss)", hub_id, ttl)
            url, text_url = self._hub_urls(hub_id)
            return HubSummary(id=hub_id, url=url, text_url=text_url, expires_at=record.expires_at)
        logger.error("Hub id allocation exhausted after %d attempts", self.settings.create_attempts)
        raise CreationExhausted()

    async def get_hub(self, hub_id: str) -> HubView:
        record = await self._load(hub_id)
        return HubView(
            id=record.id,
            content=record.content,
            created_at=record.created_at,
            expires_at=record.expires_at,
            files=latest_entries(record.files),
            paths=record.paths,
        )

    async def set_text(self, hub_id: str, content: str) -> None:
        if len(content.encode("utf-8")) > self.settings.max_text_bytes:
            raise TooLarge(self.settings.max_text_bytes)
        self._check_id(hub_id)
        await self.metadata.update_text(hub_id, content)
        logger.debug("Updated text for hub %s", hub_id)
        await self._emit(hub_id, HubEventType.TEXT_UPDATED, {"content": content})

    # --- files ---

    async def _record_file(self, hub_id: str, entry: FileEntry) -> FileEntry:
        try:
            await self.metadata.append_file_entry(hub_id, entry)
        except HubNotFound:
            # Hub expired mid-upload; the blob has no manifest to reach it.
            await self._discard_blob(entry.stored_key)
            raise
        await self._emit(hub_id, HubEventType.FILE_ADDED, entry.model_dump(mode="json"))
        return entry

    async def _discard_blob(self, key: str) -> None:
        try:
            await self.objects.delete(key)
        except Exception:
            logger.warning("Could not discard blob %s; the sweeper will reclaim it", key)

    async def upload_file(
        self,
        hub_id: str,
        filename: str,
        stream: BinaryIO,
        content_type: Optional[str] = None,
    ) -> FileEntry:
        """Stream a proxied upload into the object store and record it."""
        await self._load(hub_id)
        name = sanitize_filename(filename)
        key = object_key(hub_id, name)
        content_type = content_type or "application/octet-stream"
        size = await self.objects.put_stream(key, stream, content_type, max_bytes=self.settings.max_file_bytes)
        entry = FileEntry(filename=name, size=size, content_type=content_type, stored_key=key)
        return await self._record_file(hub_id, entry)

    async def request_upload(self, hub_id: str, filename: str, content_type: Optional[str] = None) -> UploadTicket:
        """Authorise a direct-to-store upload; no bytes pass through here."""
        await self._load(hub_id)
        name = sanitize_filename(filename)
        key = object_key(hub_id, name)
        content_type = content_type or "application/octet-stream"
        ttl = self.settings.presign_ttl_seconds
        url = self.objects.presigned_url(key, ttl, method="PUT", content_type=content_type)
        return UploadTicket(
            filename=name,
            stored_key=key,
            upload_url=url,
            method="PUT",
            expires_in=ttl,
            headers={"Content-Type": content_type},
        )

    async def confirm_upload(self, hub_id: str, filename: str) -> FileEntry:
        """Record a delegated upload once the client reports it finished."""
        await self._load(hub_id)
        name = sanitize_filename(filename)
        key = object_key(hub_id, name)
        info = await self.objects.head(key)
        if info is None:
            raise UploadNotFound(details={"filename": name})
        if info.size > self.settings.max_file_bytes:
            await self._discard_blob(key)
            raise TooLarge(self.settings.max_file_bytes)
        entry = FileEntry(filename=name, size=info.size, content_type=info.content_type, stored_key=key)
        return await self._record_file(hub_id, entry)

    async def list_files(self, hub_id: str) -> List[FileEntry]:
        record = await self._load(hub_id)
        return latest_entries(record.files)

    async def download_url(self, hub_id: str, filename: str) -> str:
        record = await self._load(hub_id)
        for entry in latest_entries(record.files):
            if entry.filename == filename:
                return self.objects.presigned_url(
                    entry.stored_key,
                    self.settings.presign_ttl_seconds,
                    method="GET",
                    download_name=entry.filename,
                )
        raise HubNotFound()

    # --- whiteboard ---

    async def add_path(self, hub_id: str, path: PathData) -> None:
        if len(path.points) > MAX_PATH_POINTS:
            raise TooLarge(MAX_PATH_POINTS, "Path has too many points")
        self._check_id(hub_id)
        await self.metadata.append_path(hub_id, path)
        await self._emit(hub_id, HubEventType.PATH_COMPLETED, path.model_dump(mode="json"))

    # --- export ---

    async def open_archive(self, hub_id: str) -> Tuple[str, BinaryIO]:
        """Build the hub's zip export in a spooled temp file, rewound for reading."""
        record = await self._load(hub_id)
        spool = tempfile.SpooledTemporaryFile(max_size=ARCHIVE_SPOOL_BYTES)
        try:
            await asyncio.to_thread(archive.write_archive, record, self.objects, spool)
        except BaseException:
            spool.close()
            raise
        spool.seek(0)
        return archive.archive_name(hub_id), spool

    # --- cleanup ---

    async def sweep_expired(self, limit: int = 100) -> int:
        """Delete blobs of hubs whose metadata already expired."""
        reclaimed = 0
        pending = await self.metadata.claim_expired(limit)
        try:
            while pending:
                hub_id = pending[0]
                try:
                    deleted = await self.objects.delete_prefix(hub_id)
                except StoreUnavailable:
                    await self.metadata.requeue_expired(hub_id)
                    pending.pop(0)
                    continue
                pending.pop(0)
                reclaimed += 1
                logger.info("Reclaimed %d blob(s) of expired hub %s", deleted, hub_id)
        finally:
            # Hand claims not yet processed back to the index.
            for hub_id in pending:
                try:
                    await self.metadata.requeue_expired(hub_id)
                except StoreUnavailable:
                    logger.error("Could not requeue expired hub %s; its blobs are orphaned", hub_id)
        return reclaimed

    async def hub_alive(self, hub_id: str) -> bool:
        try:
            await self._load(hub_id)
        except HubNotFound:
            return False
        return True
