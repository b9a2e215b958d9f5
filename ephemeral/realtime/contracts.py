"""Realtime event contract for hub viewers."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class HubEventType(str, Enum):
    TEXT_UPDATED = "text_updated"
    FILE_ADDED = "file_added"
    PATH_COMPLETED = "path_completed"


class HubEvent(BaseModel):
    """Envelope fanned out to every viewer of a hub.

    Viewers only see `type` and `payload`; the rest is routing metadata.
    """
    type: HubEventType
    hub_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def wire(self) -> Dict[str, Any]:
        return {"type": self.type.value, "payload": self.payload}
