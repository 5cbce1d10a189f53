"""
Infrastructure resource model.

Defines the Infrastructure object, its status sub-object and the read-only
Cluster context that owns it. The reconciler only ever writes status,
annotations and finalizers; the spec belongs to the caller.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Annotation requesting a one-shot special operation on the next pass
OPERATION_ANNOTATION = "infra-operator.io/operation"
OPERATION_MIGRATE = "migrate"
OPERATION_RESTORE = "restore"

FINALIZER_NAME = "infra-operator.io/infrastructure"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class LastOperationType(Enum):
    """Type of the last operation recorded on an object."""

    CREATE = "Create"
    RECONCILE = "Reconcile"
    DELETE = "Delete"
    MIGRATE = "Migrate"
    RESTORE = "Restore"


class LastOperationState(Enum):
    """State of the last operation recorded on an object."""

    PROCESSING = "Processing"
    SUCCEEDED = "Succeeded"
    ERROR = "Error"
    FAILED = "Failed"


@dataclass
class LastOperation:
    """The most recent lifecycle operation and its outcome."""

    type: LastOperationType
    state: LastOperationState
    progress: int = 0
    description: str = ""
    last_update_time: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "state": self.state.value,
            "progress": self.progress,
            "description": self.description,
            "last_update_time": _format_time(self.last_update_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastOperation":
        return cls(
            type=LastOperationType(data["type"]),
            state=LastOperationState(data["state"]),
            progress=data.get("progress", 0),
            description=data.get("description", ""),
            last_update_time=_parse_time(data.get("last_update_time")) or utcnow(),
        )


@dataclass
class LastError:
    """Details of the last error, with machine-readable error codes."""

    description: str
    codes: List[str] = field(default_factory=list)
    last_update_time: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "codes": list(self.codes),
            "last_update_time": _format_time(self.last_update_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastError":
        return cls(
            description=data.get("description", ""),
            codes=list(data.get("codes") or []),
            last_update_time=_parse_time(data.get("last_update_time")) or utcnow(),
        )


@dataclass
class InfrastructureStatus:
    """Observed state of an Infrastructure, written only by the reconciler."""

    last_operation: Optional[LastOperation] = None
    last_error: Optional[LastError] = None
    observed_generation: int = 0
    # Opaque provider state owned by the actuator
    provider_status: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_operation": (
                self.last_operation.to_dict() if self.last_operation else None
            ),
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "observed_generation": self.observed_generation,
            "provider_status": self.provider_status,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "InfrastructureStatus":
        if not data:
            return cls()
        last_operation = data.get("last_operation")
        last_error = data.get("last_error")
        return cls(
            last_operation=(
                LastOperation.from_dict(last_operation) if last_operation else None
            ),
            last_error=LastError.from_dict(last_error) if last_error else None,
            observed_generation=data.get("observed_generation", 0),
            provider_status=data.get("provider_status") or {},
        )


@dataclass
class Infrastructure:
    """Desired-state Infrastructure resource, identified by (namespace, name)."""

    namespace: str
    name: str
    spec: Dict[str, Any] = field(default_factory=dict)
    generation: int = 1
    resource_version: int = 0
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    status: InfrastructureStatus = field(default_factory=InfrastructureStatus)
    created_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def deepcopy(self) -> "Infrastructure":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "spec": self.spec,
            "generation": self.generation,
            "resource_version": self.resource_version,
            "annotations": self.annotations,
            "finalizers": self.finalizers,
            "deletion_timestamp": _format_time(self.deletion_timestamp),
            "status": self.status.to_dict(),
            "created_at": _format_time(self.created_at),
        }


@dataclass
class Cluster:
    """
    Read-only context of the environment owning the Infrastructure objects
    of one namespace.
    """

    namespace: str
    shoot: Dict[str, Any] = field(default_factory=dict)
    seed: Dict[str, Any] = field(default_factory=dict)
    cloud_profile: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_failed(self) -> bool:
        """True if the owning shoot's last operation has failed terminally."""
        last_operation = (self.shoot.get("status") or {}).get("last_operation") or {}
        return last_operation.get("state") == LastOperationState.FAILED.value
