"""
Event models published by the broker managers.

Events carry lifecycle notifications (connection closed, tunnel failed,
session recovered, ...) between managers without direct references.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional


class EventPriority(IntEnum):
    """Handler ordering; higher priorities run first."""
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class EventNames:
    """Names of the events published by the managers."""
    CONNECTION_OPENED = "connection.opened"
    CONNECTION_CLOSED = "connection.closed"
    CONNECTION_DEGRADED = "connection.degraded"
    TUNNEL_CREATED = "tunnel.created"
    TUNNEL_CLOSED = "tunnel.closed"
    TUNNEL_FAILED = "tunnel.failed"
    TUNNEL_RESTARTED = "tunnel.restarted"
    JUMP_CHAIN_CONNECTED = "jump_chain.connected"
    JUMP_CHAIN_FAILED = "jump_chain.failed"
    JUMP_CHAIN_CLOSED = "jump_chain.closed"
    SESSION_PERSISTED = "session.persisted"
    SESSION_RECOVERING = "session.recovering"
    SESSION_RECOVERED = "session.recovered"
    SESSION_FAILED = "session.failed"
    SESSION_DELETED = "session.deleted"


@dataclass(frozen=True)
class Event:
    """
    Immutable notification that something happened inside the broker.
    """

    name: str
    """Event name, e.g. ``connection.closed``."""

    data: Any = None
    """Event payload."""

    priority: EventPriority = EventPriority.NORMAL
    """Dispatch priority."""

    timestamp: float = field(default_factory=time.time)
    """Unix timestamp when the event was created."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    """Unique event identifier."""

    source: Optional[str] = None
    """Component that generated the event."""

    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate event after creation."""
        if not self.name:
            raise ValueError("Event name cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return {
            'event_id': self.event_id,
            'name': self.name,
            'data': self.data,
            'priority': self.priority.value,
            'timestamp': self.timestamp,
            'source': self.source,
            'metadata': self.metadata,
        }
