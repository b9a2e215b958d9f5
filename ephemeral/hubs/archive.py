"""Zip export of a hub: the text bin plus every file in its manifest."""
from __future__ import annotations

import logging
import shutil
import zipfile
from contextlib import closing
from typing import BinaryIO, Iterator

from ephemeral.hubs.models import HubRecord, latest_entries
from ephemeral.object_store.repository import ObjectStore

logger = logging.getLogger(__name__)

TEXT_BIN_NAME = "ephemeral_text_bin.txt"
COPY_CHUNK = 1024 * 1024


def archive_name(hub_id: str) -> str:
    return f"ephemeral_hub_{hub_id}.zip"


def write_archive(record: HubRecord, objects: ObjectStore, target: BinaryIO) -> int:
    """Write the archive into `target`; blocking, run it in a worker thread.

    Blobs are copied chunk by chunk so no file is ever held in memory whole.
    Returns the number of files added besides the text bin.
    """
    added = 0
    with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(TEXT_BIN_NAME, record.content.encode("utf-8"))
        for entry in latest_entries(record.files):
            if entry.filename == TEXT_BIN_NAME:
                continue
            try:
                src = objects.open_object(entry.stored_key)
            except FileNotFoundError:
                logger.warning("Blob %s listed for hub %s is missing; skipping", entry.stored_key, record.id)
                continue
            with closing(src), zf.open(entry.filename, "w", force_zip64=True) as dst:
                shutil.copyfileobj(src, dst, COPY_CHUNK)
            added += 1
    return added


def iter_chunks(fileobj: BinaryIO, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    try:
        while True:
            chunk = fileobj.read(chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        fileobj.close()
