"""Change-notification models for the realtime sync layer."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ChangeKind(str, Enum):
    """Postgres change event kinds."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"

    def matches(self, kind: "ChangeKind") -> bool:
        return self is ChangeKind.ALL or self is kind


class ConnectionState(str, Enum):
    """Subscription connection lifecycle."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ChangeEvent(BaseModel):
    """A (possibly coalesced) row change delivered to subscribers."""
    table: str = Field(..., description="Source table")
    kind: ChangeKind = Field(..., description="INSERT, UPDATE or DELETE")
    new: dict[str, Any] = Field(default_factory=dict, description="Row after the change")
    old: dict[str, Any] = Field(default_factory=dict, description="Row before the change")
    commit_timestamp: Optional[str] = Field(None, description="Store commit time, when provided")
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    coalesced: int = Field(default=1, ge=1, description="Raw events folded into this notification")

    @property
    def record(self) -> dict[str, Any]:
        """The most relevant row image (old image for deletes)."""
        return self.old if self.kind is ChangeKind.DELETE else self.new
