"""Hub error taxonomy shared by the stores, the lifecycle engine and the routes.

Each error carries the machine-readable code and HTTP status used when it is
rendered through the error envelope. Messages are safe to show to clients.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class HubError(Exception):
    code = "hub.error"
    http_status = 500
    message = "Hub operation failed"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.message)
        self.details = details or {}

    @property
    def public_message(self) -> str:
        return str(self)


class HubNotFound(HubError):
    # Absent and expired hubs share this error, message and details.
    code = "hub.not_found"
    http_status = 404
    message = "Hub not found"


class HubAlreadyExists(HubError):
    code = "hub.already_exists"
    http_status = 409
    message = "Hub id already taken"


class TooLarge(HubError):
    code = "hub.too_large"
    http_status = 413
    message = "Payload exceeds the configured limit"

    def __init__(self, limit: int, message: Optional[str] = None) -> None:
        super().__init__(message, {"limit_bytes": limit})
        self.limit = limit


class InvalidFilename(HubError):
    code = "hub.invalid_filename"
    http_status = 400
    message = "Invalid filename"


class InvalidTTL(HubError):
    code = "hub.invalid_ttl"
    http_status = 400
    message = "Invalid ttl"


class UploadError(HubError):
    code = "hub.upload_failed"
    http_status = 502
    message = "File upload failed"


class UploadNotFound(HubError):
    code = "hub.upload_missing"
    http_status = 409
    message = "No uploaded object found for this filename"


class CreationExhausted(HubError):
    code = "hub.creation_exhausted"
    http_status = 500
    message = "Could not allocate a hub id"


class StoreUnavailable(HubError):
    code = "hub.store_unavailable"
    http_status = 503
    message = "Storage temporarily unavailable"
