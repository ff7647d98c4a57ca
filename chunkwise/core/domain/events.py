"""
Event domain models for upload notifications.

Upload sessions publish these events so that progress displays, loggers and
other observers stay decoupled from the transfer loop.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional


class EventPriority(IntEnum):
    """Event priority levels for processing order."""
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


@dataclass(frozen=True)
class Event:
    """
    Immutable event representing something that happened to an upload.
    """

    name: str
    """Event name/type identifier."""

    data: Any = None
    """Event payload data."""

    priority: EventPriority = EventPriority.NORMAL
    """Event processing priority."""

    timestamp: float = field(default_factory=time.time)
    """Unix timestamp when event was created."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    """Unique event identifier."""

    source: Optional[str] = None
    """Component that generated the event."""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Event name cannot be empty")

        if not isinstance(self.priority, EventPriority):
            raise ValueError("Priority must be an EventPriority enum value")

    def __lt__(self, other: 'Event') -> bool:
        """
        Compare events for priority queue ordering.

        Higher priority events come first, then by timestamp (FIFO).
        """
        if not isinstance(other, Event):
            return NotImplemented

        if self.priority.value != other.priority.value:
            return self.priority.value > other.priority.value

        return self.timestamp < other.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'data': self.data,
            'priority': self.priority.name,
            'timestamp': self.timestamp,
            'event_id': self.event_id,
            'source': self.source,
        }


class UploadEvents:
    """Names of the events published by upload sessions."""

    STATUS_CHANGED = "upload.status_changed"
    PROGRESS = "upload.progress"
    CHUNK_RETRY = "upload.chunk_retry"
    CHUNK_COMPLETED = "upload.chunk_completed"
    RESUME_MISMATCH = "upload.resume_mismatch"
    COMPLETED = "upload.completed"
    FAILED = "upload.failed"
    CANCELED = "upload.canceled"
