"""Runtime configuration helpers for the hub service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(name, default)


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _get_float(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


def get_redis_url() -> str:
    return _get_env("REDIS_URL") or "redis://127.0.0.1:6379/0"


def get_metadata_backend() -> str:
    return (_get_env("HUB_METADATA_BACKEND") or "redis").lower()


def get_object_backend() -> str:
    return (_get_env("HUB_OBJECT_BACKEND") or "s3").lower()


def get_events_backend() -> str:
    return (_get_env("HUB_EVENTS_BACKEND") or "memory").lower()


def get_bucket() -> str:
    return _get_env("S3_BUCKET") or "ephemeral"


def get_s3_endpoint_url() -> Optional[str]:
    return _get_env("S3_ENDPOINT_URL") or None


def get_region() -> str:
    return _get_env("AWS_REGION") or _get_env("AWS_DEFAULT_REGION") or "us-east-1"


def get_public_base_url() -> str:
    return (_get_env("PUBLIC_BASE_URL") or "http://127.0.0.1:3000").rstrip("/")


def get_log_level() -> str:
    return (_get_env("LOG_LEVEL") or "INFO").upper()


@dataclass(frozen=True)
class HubSettings:
    default_ttl_seconds: int = 24 * 60 * 60
    max_ttl_seconds: int = 7 * 24 * 60 * 60
    max_text_bytes: int = 100_000
    max_file_bytes: int = 104_857_600
    presign_ttl_seconds: int = 300
    create_attempts: int = 5
    id_length: int = 10
    initial_text: str = ""
    subscriber_queue_size: int = 100
    ws_heartbeat_seconds: float = 30.0
    blob_sweep_interval_seconds: int = 300
    store_retry_attempts: int = 3
    public_base_url: str = "http://127.0.0.1:3000"


def load_settings() -> HubSettings:
    """Snapshot the HUB_* environment into an immutable settings object."""
    return HubSettings(
        default_ttl_seconds=_get_int("HUB_DEFAULT_TTL_SECONDS", 24 * 60 * 60),
        max_ttl_seconds=_get_int("HUB_MAX_TTL_SECONDS", 7 * 24 * 60 * 60),
        max_text_bytes=_get_int("HUB_MAX_TEXT_BYTES", 100_000),
        max_file_bytes=_get_int("HUB_MAX_FILE_BYTES", 104_857_600),
        presign_ttl_seconds=_get_int("HUB_PRESIGN_TTL_SECONDS", 300),
        create_attempts=_get_int("HUB_CREATE_ATTEMPTS", 5),
        id_length=_get_int("HUB_ID_LENGTH", 10),
        initial_text=_get_env("HUB_INITIAL_TEXT") or "",
        subscriber_queue_size=_get_int("HUB_SUBSCRIBER_QUEUE_SIZE", 100),
        ws_heartbeat_seconds=_get_float("HUB_WS_HEARTBEAT_SECONDS", 30.0),
        blob_sweep_interval_seconds=_get_int("HUB_BLOB_SWEEP_INTERVAL", 300),
        store_retry_attempts=_get_int("STORE_RETRY_ATTEMPTS", 3),
        public_base_url=get_public_base_url(),
    )


def config_snapshot() -> dict:
    """Backend selection for startup logs; omits anything carrying credentials."""
    return {
        "metadata_backend": get_metadata_backend(),
        "object_backend": get_object_backend(),
        "events_backend": get_events_backend(),
        "bucket": get_bucket(),
        "s3_endpoint_url": get_s3_endpoint_url(),
        "region": get_region(),
        "public_base_url": get_public_base_url(),
    }
