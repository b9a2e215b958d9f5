"""Hub data models (Pydantic)."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FileEntry(BaseModel):
    """One manifest entry; the blob lives at `stored_key` in the object store."""
    filename: str
    size: int = Field(..., ge=0)
    content_type: str = "application/octet-stream"
    stored_key: str
    uploaded_at: datetime = Field(default_factory=utc_now)


class PathData(BaseModel):
    """A completed whiteboard stroke."""
    id: str
    points: List[Tuple[float, float]] = Field(default_factory=list)
    color: str = "#000000"
    stroke_width: float = 2.0


class HubRecord(BaseModel):
    """Everything the metadata store holds for a live hub."""
    id: str
    content: str = ""
    created_at: datetime
    expires_at: datetime
    files: List[FileEntry] = Field(default_factory=list)
    paths: List[PathData] = Field(default_factory=list)


class HubSummary(BaseModel):
    id: str
    url: str
    text_url: str
    expires_at: datetime


class HubView(BaseModel):
    id: str
    content: str
    created_at: datetime
    expires_at: datetime
    files: List[FileEntry] = Field(default_factory=list)
    paths: List[PathData] = Field(default_factory=list)


class CreateHubRequest(BaseModel):
    ttl_seconds: Optional[int] = None


class UploadRequest(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"


class ConfirmUploadRequest(BaseModel):
    filename: str


class UploadTicket(BaseModel):
    filename: str
    stored_key: str
    upload_url: str
    method: str = "PUT"
    expires_in: int
    headers: Dict[str, Any] = Field(default_factory=dict)


def latest_entries(entries: List[FileEntry]) -> List[FileEntry]:
    """Collapse the append-only manifest to the newest entry per filename."""
    latest: Dict[str, FileEntry] = {}
    for entry in entries:
        latest[entry.filename] = entry
    return list(latest.values())
