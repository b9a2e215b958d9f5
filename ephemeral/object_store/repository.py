"""Object store for hub file payloads: S3 (boto3) plus an in-memory backend.

Keys are deterministic: "{hub_id}/{filename}". Every blob of a hub therefore
lives under the "{hub_id}/" prefix, which is what cleanup deletes.
"""
from __future__ import annotations

import asyncio
import io
import logging
import unicodedata
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Optional, Protocol, Tuple

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ephemeral.common.errors import InvalidFilename, StoreUnavailable, TooLarge, UploadError
from ephemeral.config import runtime_config

logger = logging.getLogger(__name__)

MAX_FILENAME_BYTES = 255
_MISSING_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


def sanitize_filename(filename: str) -> str:
    """Reduce a client-supplied name to a safe single path segment."""
    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    if not name or name in {".", ".."}:
        raise InvalidFilename()
    if any(unicodedata.category(ch) == "Cc" for ch in name):
        raise InvalidFilename()
    if len(name.encode("utf-8")) > MAX_FILENAME_BYTES:
        raise InvalidFilename(details={"max_bytes": MAX_FILENAME_BYTES})
    return name


def object_key(hub_id: str, filename: str) -> str:
    return f"{hub_id}/{sanitize_filename(filename)}"


def hub_prefix(hub_id: str) -> str:
    return f"{hub_id}/"


@dataclass(frozen=True)
class ObjectInfo:
    size: int
    content_type: str = "application/octet-stream"


class _CountingReader:
    """File-like wrapper that counts bytes and refuses to read past a limit."""

    def __init__(self, stream: BinaryIO, max_bytes: Optional[int]) -> None:
        self._stream = stream
        self._max_bytes = max_bytes
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._stream.read(size)
        self.bytes_read += len(chunk)
        if self._max_bytes is not None and self.bytes_read > self._max_bytes:
            raise TooLarge(self._max_bytes)
        return chunk


class ObjectStore(Protocol):
    """Protocol for hub blob backends."""

    async def put_stream(
        self,
        key: str,
        stream: BinaryIO,
        content_type: str,
        max_bytes: Optional[int] = None,
    ) -> int:
        """Store the stream under key and return its size in bytes."""
        ...

    def presigned_url(
        self,
        key: str,
        ttl_seconds: int,
        method: str = "GET",
        content_type: Optional[str] = None,
        download_name: Optional[str] = None,
    ) -> str:
        ...

    async def head(self, key: str) -> Optional[ObjectInfo]:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def delete_prefix(self, hub_id: str) -> int:
        ...

    def open_object(self, key: str) -> BinaryIO:
        """Blocking read handle; call from a worker thread."""
        ...

    async def ensure_bucket(self) -> None:
        ...


class S3ObjectStore:
    """S3-compatible store (AWS, MinIO).

    Uploads go through boto3's managed transfer: above the multipart threshold
    the object only becomes visible on CompleteMultipartUpload, and a failed
    transfer aborts the multipart upload, so partial writes never show up.
    """

    def __init__(
        self,
        bucket: Optional[str] = None,
        client: Any = None,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        retry_attempts: int = 3,
        transfer_config: Optional[TransferConfig] = None,
    ) -> None:
        self.bucket = bucket or runtime_config.get_bucket()
        if not self.bucket:
            raise ValueError("S3_BUCKET config missing. Set S3_BUCKET to the hub file bucket.")
        self.region = region or runtime_config.get_region()
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or runtime_config.get_s3_endpoint_url(),
            region_name=self.region,
            config=Config(
                signature_version="s3v4",
                retries={"mode": "standard", "max_attempts": retry_attempts},
            ),
        )
        self._transfer_config = transfer_config or TransferConfig(
            multipart_threshold=8 * 1024 * 1024,
            multipart_chunksize=8 * 1024 * 1024,
            max_concurrency=4,
        )

    def _put_sync(self, key: str, stream: BinaryIO, content_type: str, max_bytes: Optional[int]) -> int:
        reader = _CountingReader(stream, max_bytes)
        try:
            self._client.upload_fileobj(
                reader,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
                Config=self._transfer_config,
            )
        except TooLarge:
            raise
        except (S3UploadFailedError, ClientError, BotoCoreError) as exc:
            logger.warning("S3 upload failed for %s: %s", key, exc.__class__.__name__)
            raise UploadError() from exc
        return reader.bytes_read

    async def put_stream(
        self,
        key: str,
        stream: BinaryIO,
        content_type: str,
        max_bytes: Optional[int] = None,
    ) -> int:
        return await asyncio.to_thread(self._put_sync, key, stream, content_type, max_bytes)

    def presigned_url(
        self,
        key: str,
        ttl_seconds: int,
        method: str = "GET",
        content_type: Optional[str] = None,
        download_name: Optional[str] = None,
    ) -> str:
        params: Dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        if method.upper() == "PUT":
            operation = "put_object"
            if content_type:
                params["ContentType"] = content_type
        else:
            operation = "get_object"
            if download_name:
                params["ResponseContentDisposition"] = f'attachment; filename="{download_name}"'
        try:
            return self._client.generate_presigned_url(operation, Params=params, ExpiresIn=ttl_seconds)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("S3 presign failed for %s: %s", key, exc.__class__.__name__)
            raise UploadError("Could not sign storage URL") from exc

    def _head_sync(self, key: str) -> Optional[ObjectInfo]:
        try:
            resp = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise UploadError() from exc
        return ObjectInfo(
            size=int(resp.get("ContentLength", 0)),
            content_type=resp.get("ContentType") or "application/octet-stream",
        )

    async def head(self, key: str) -> Optional[ObjectInfo]:
        return await asyncio.to_thread(self._head_sync, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=key)

    def _delete_prefix_sync(self, hub_id: str) -> int:
        deleted = 0
        paginator = self._client.get_paginator("list_objects_v2")
        # list_objects_v2 pages hold at most 1000 keys, the delete_objects batch limit.
        for page in paginator.paginate(Bucket=self.bucket, Prefix=hub_prefix(hub_id)):
            objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
            if not objects:
                continue
            self._client.delete_objects(Bucket=self.bucket, Delete={"Objects": objects, "Quiet": True})
            deleted += len(objects)
        return deleted

    async def delete_prefix(self, hub_id: str) -> int:
        try:
            return await asyncio.to_thread(self._delete_prefix_sync, hub_id)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("S3 prefix delete failed for %s: %s", hub_id, exc.__class__.__name__)
            raise StoreUnavailable() from exc

    def open_object(self, key: str) -> BinaryIO:
        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise FileNotFoundError(key) from exc
            raise
        return resp["Body"]

    def _ensure_bucket_sync(self) -> None:
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") not in _MISSING_CODES:
                raise
        kwargs: Dict[str, Any] = {"Bucket": self.bucket}
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self._client.create_bucket(**kwargs)
        logger.info("Created bucket %s", self.bucket)

    async def ensure_bucket(self) -> None:
        await asyncio.to_thread(self._ensure_bucket_sync)


class InMemoryObjectStore:
    """Dict-backed store for tests and local development."""

    chunk_size = 64 * 1024

    def __init__(self, bucket: str = "test-mem-bucket") -> None:
        self.bucket = bucket
        self.objects: Dict[str, Tuple[bytes, str]] = {}

    async def put_stream(
        self,
        key: str,
        stream: BinaryIO,
        content_type: str,
        max_bytes: Optional[int] = None,
    ) -> int:
        reader = _CountingReader(stream, max_bytes)
        buf = io.BytesIO()
        while True:
            chunk = reader.read(self.chunk_size)
            if not chunk:
                break
            buf.write(chunk)
        # Nothing becomes visible until the whole stream was accepted.
        self.objects[key] = (buf.getvalue(), content_type)
        return reader.bytes_read

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self.objects[key] = (data, content_type)

    def presigned_url(
        self,
        key: str,
        ttl_seconds: int,
        method: str = "GET",
        content_type: Optional[str] = None,
        download_name: Optional[str] = None,
    ) -> str:
        return f"memory://{self.bucket}/{key}?method={method.upper()}&expires={ttl_seconds}"

    async def head(self, key: str) -> Optional[ObjectInfo]:
        if key not in self.objects:
            return None
        data, content_type = self.objects[key]
        return ObjectInfo(size=len(data), content_type=content_type)

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    async def delete_prefix(self, hub_id: str) -> int:
        prefix = hub_prefix(hub_id)
        doomed = [key for key in self.objects if key.startswith(prefix)]
        for key in doomed:
            del self.objects[key]
        return len(doomed)

    def open_object(self, key: str) -> BinaryIO:
        if key not in self.objects:
            raise FileNotFoundError(key)
        return io.BytesIO(self.objects[key][0])

    async def ensure_bucket(self) -> None:
        return None
