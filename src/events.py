"""
Event recording - human-readable notifications about Infrastructure objects.

Events are persisted to the store, where the CLI lists them. Recording is
best-effort: a failing store never affects reconciliation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from models import Infrastructure, utcnow

logger = logging.getLogger(__name__)

EVENT_INFRASTRUCTURE_RECONCILIATION = "InfrastructureReconciliation"
EVENT_INFRASTRUCTURE_DELETION = "InfrastructureDeletion"
EVENT_INFRASTRUCTURE_MIGRATION = "InfrastructureMigration"
EVENT_INFRASTRUCTURE_RESTORATION = "InfrastructureRestoration"


class EventType(Enum):
    """Severity of an event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class Event:
    """A notification about an Infrastructure object."""

    namespace: str
    name: str
    event_type: EventType
    reason: str
    message: str
    kind: str = "Infrastructure"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "kind": self.kind,
            "type": self.event_type.value,
            "reason": self.reason,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def for_infrastructure(
        cls,
        infra: Infrastructure,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> "Event":
        return cls(
            namespace=infra.namespace,
            name=infra.name,
            event_type=event_type,
            reason=reason,
            message=message,
        )


class EventRecorder:
    """
    Records events for Infrastructure objects.

    Events go to the store when a database manager is given. Failures are
    logged and never raised.
    """

    def __init__(self, db: Optional[Any] = None):
        self.db = db

    async def event(
        self,
        infra: Infrastructure,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        event = Event.for_infrastructure(infra, event_type, reason, message)

        if self.db is not None:
            try:
                await self.db.record_event(event)
            except Exception as e:
                logger.warning(
                    f"Could not record {event_type.value} event {reason} "
                    f"for {infra.key}: {e}"
                )

    async def normal(self, infra: Infrastructure, reason: str, message: str) -> None:
        await self.event(infra, EventType.NORMAL, reason, message)

    async def warning(self, infra: Infrastructure, reason: str, message: str) -> None:
        await self.event(infra, EventType.WARNING, reason, message)
