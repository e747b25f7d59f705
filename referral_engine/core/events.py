"""
Event taxonomy for referral state transitions.

The engine emits these events for an external notifier/accounting system.
It never formats user-facing messages.

IMPORTANT:
- Events are emitted after the new state is persisted
- Events are PII-safe (ids and amounts only)
- Events support correlation via correlation_id
"""

from dataclasses import dataclass, asdict, field
from typing import Dict, Any, List, Optional, Protocol
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal
import asyncio
import json
import logging
import uuid

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted by the engine"""
    # Usage lifecycle
    USAGE_CLAIMED = "usage_claimed"
    USAGE_COMPLETED = "usage_completed"
    USAGE_EXPIRED = "usage_expired"
    REWARD_SETTLEMENT_FAILED = "reward_settlement_failed"

    # Link lifecycle
    LINK_CANCELLED = "link_cancelled"
    LINK_LIMIT_REACHED = "link_limit_reached"
    LINK_EXPIRED = "link_expired"

    # Program lifecycle
    PROGRAM_LIMIT_REACHED = "program_limit_reached"
    PROGRAM_EXPIRED = "program_expired"
    PROGRAM_UNCOMPLETABLE = "program_uncompletable"
    PROGRAM_REACTIVATED = "program_reactivated"

    # Referrer blocking
    REFERRER_BLOCKED = "referrer_blocked"
    REFERRER_UNBLOCKED = "referrer_unblocked"


@dataclass
class EngineEvent:
    """
    Standard event format.

    All events follow this structure for consistency.
    """
    event_type: EventType
    entity_id: str
    timestamp: datetime
    correlation_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["event_type"] = self.event_type.value
        result["timestamp"] = self.timestamp.isoformat()
        result["metadata"] = {key: _jsonable(value) for key, value in self.metadata.items()}
        return result


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def create_event(
    event_type: EventType,
    entity_id: Any,
    correlation_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> EngineEvent:
    """
    Create a standard event.

    Args:
        event_type: Type of event
        entity_id: ID of the entity (usage, link, program or user id)
        correlation_id: Optional correlation ID (auto-generated if not provided)
        metadata: Optional metadata (ids and amounts only)
        timestamp: Event time (defaults to now, UTC)
    """
    return EngineEvent(
        event_type=event_type,
        entity_id=str(entity_id),
        timestamp=timestamp or datetime.now(timezone.utc),
        correlation_id=correlation_id or str(uuid.uuid4()),
        metadata=dict(metadata or {}),
    )


class EventPublisher(Protocol):
    """Sink for engine events (notifier, accounting, analytics)."""

    async def publish(self, event: EngineEvent) -> None:
        ...


class LoggingEventPublisher:
    """Default publisher: one JSON log line per event."""

    def __init__(self, event_logger: Optional[logging.Logger] = None):
        self._logger = event_logger or logger

    async def publish(self, event: EngineEvent) -> None:
        self._logger.info(json.dumps({"event": "REFERRAL_EVENT", **event.to_dict()}))


class InMemoryEventPublisher:
    """Collects events in memory (tests and embedding services that poll)."""

    def __init__(self):
        self.events: List[EngineEvent] = []
        self._lock = asyncio.Lock()

    async def publish(self, event: EngineEvent) -> None:
        async with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EventType) -> List[EngineEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


async def publish_all(publisher: EventPublisher, events: List[EngineEvent]) -> None:
    """
    Publish events in order. A publisher failure is logged and does not
    undo the already-persisted transition.
    """
    for event in events:
        try:
            await publisher.publish(event)
        except Exception as e:
            logger.error(
                f"EVENT_PUBLISH_FAILED [type={event.event_type.value}, entity={event.entity_id}, "
                f"correlation_id={event.correlation_id}]: {e}"
            )
