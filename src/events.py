"""
Service Log Events - Audit records of instance status transitions.

Every time the resolved status of a Redis instance changes, exactly one
ServiceLogEvent is appended to the service log. The status cache holds the
last recorded status per instance and is what transitions are compared
against.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _json_default(obj: Any) -> str:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceLogEventType(Enum):
    """Types of service log events."""

    STATUS_CHANGE = "status_change"
    FAILURE = "failure"


@dataclass(frozen=True)
class ServiceLogEvent:
    """An immutable record of one status transition of one instance."""

    instance_name: str
    namespace: str
    event_type: ServiceLogEventType
    from_status: str
    to_status: str
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    details: str = ""

    @classmethod
    def first_seen(cls, instance_name: str, namespace: str, status: str) -> "ServiceLogEvent":
        """Event for an instance observed for the first time."""
        return cls(
            instance_name=instance_name,
            namespace=namespace,
            event_type=ServiceLogEventType.STATUS_CHANGE,
            from_status="",
            to_status=status,
            message=f"Instance first seen: {status}",
        )

    @classmethod
    def transition(
        cls,
        instance_name: str,
        namespace: str,
        from_status: str,
        to_status: str,
        failure_status: str = "Failed",
    ) -> "ServiceLogEvent":
        """
        Event for a change between two known statuses.

        Args:
            instance_name: Name of the instance.
            namespace: Namespace of the instance.
            from_status: Previously recorded status.
            to_status: Newly resolved status.
            failure_status: Status value that is recorded as a failure.

        Returns:
            A new ServiceLogEvent instance.
        """
        event_type = (
            ServiceLogEventType.FAILURE
            if to_status == failure_status
            else ServiceLogEventType.STATUS_CHANGE
        )
        return cls(
            instance_name=instance_name,
            namespace=namespace,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            message=f"Status changed from {from_status} to {to_status}",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_name": self.instance_name,
            "namespace": self.namespace,
            "event_type": self.event_type.value,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=_json_default)

    @classmethod
    def from_row(cls, row: Any) -> "ServiceLogEvent":
        """Build an event from a service_logs database row."""
        return cls(
            instance_name=row["instance_name"],
            namespace=row["namespace"],
            event_type=ServiceLogEventType(row["event_type"]),
            from_status=row["from_status"] or "",
            to_status=row["to_status"],
            message=row["message"],
            timestamp=row["timestamp"],
            details=row.get("details") or "",
        )


@dataclass(frozen=True)
class StatusCacheEntry:
    """Last recorded status of one instance."""

    instance_name: str
    namespace: str
    status: str
    updated_at: Optional[datetime] = None
