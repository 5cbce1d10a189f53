"""Pytest configuration and fixtures."""

import copy
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import (
    AlreadyExistsError,
    ConflictError,
    DeletionPendingError,
    NotFoundError,
)
from events import Event, EventRecorder
from models import (
    OPERATION_ANNOTATION,
    Cluster,
    Infrastructure,
    LastOperationState,
    utcnow,
)
from plugins.actuators.base import Actuator
from updates import Backoff

KIND = "Infrastructure"


class FakeStore:
    """
    In-memory stand-in for DatabaseManager with compare-and-swap writes.

    ``conflicts[method] = n`` makes the next ``n`` calls of a write method
    fail with ConflictError; ``failures[method] = exc`` makes every call raise
    ``exc``. ``writes`` logs each successful write as ``(method, snapshot)``.
    """

    def __init__(self):
        self.infrastructures: Dict[Tuple[str, str], Infrastructure] = {}
        self.clusters: Dict[str, Cluster] = {}
        self.events: List[Event] = []
        self.conflicts: Dict[str, int] = {}
        self.failures: Dict[str, Exception] = {}
        self.writes: List[Tuple[str, Infrastructure]] = []
        self.initialize_schema = AsyncMock()

    # Test helpers

    def add(self, infra: Infrastructure) -> Infrastructure:
        stored = copy.deepcopy(infra)
        stored.resource_version = stored.resource_version or 1
        self.infrastructures[(infra.namespace, infra.name)] = stored
        return copy.deepcopy(stored)

    def current(self, namespace: str, name: str) -> Optional[Infrastructure]:
        return self.infrastructures.get((namespace, name))

    def _inject(self, method: str, key: str) -> None:
        if method in self.failures:
            raise self.failures[method]
        if self.conflicts.get(method, 0) > 0:
            self.conflicts[method] -= 1
            raise ConflictError(KIND, key, None)

    def _check_version(self, infra: Infrastructure) -> Infrastructure:
        stored = self.current(infra.namespace, infra.name)
        if stored is None:
            raise NotFoundError(KIND, infra.key)
        if stored.resource_version != infra.resource_version:
            raise ConflictError(KIND, infra.key, infra.resource_version)
        return stored

    # DatabaseManager interface

    async def create_infrastructure(self, namespace, name, spec=None, annotations=None):
        if (namespace, name) in self.infrastructures:
            raise AlreadyExistsError(KIND, f"{namespace}/{name}")
        return self.add(
            Infrastructure(
                namespace=namespace,
                name=name,
                spec=dict(spec or {}),
                annotations=dict(annotations or {}),
                created_at=utcnow(),
            )
        )

    async def get_infrastructure(self, namespace, name):
        self._inject("get_infrastructure", f"{namespace}/{name}")
        stored = self.current(namespace, name)
        if stored is None:
            raise NotFoundError(KIND, f"{namespace}/{name}")
        return copy.deepcopy(stored)

    async def list_infrastructures(self, namespace=None, limit=100):
        items = sorted(self.infrastructures.values(), key=lambda i: i.key)
        if namespace:
            items = [i for i in items if i.namespace == namespace]
        return [copy.deepcopy(i) for i in items[:limit]]

    async def get_infrastructures_needing_reconciliation(
        self, limit=10, resync_period=300.0
    ):
        due = []
        for infra in sorted(self.infrastructures.values(), key=lambda i: i.key):
            cluster = self.clusters.get(infra.namespace)
            if cluster is not None and cluster.is_failed:
                continue
            last_operation = infra.status.last_operation
            if (
                infra.deletion_timestamp is not None
                or infra.generation > infra.status.observed_generation
                or OPERATION_ANNOTATION in infra.annotations
                or last_operation is None
                or last_operation.state != LastOperationState.SUCCEEDED
            ):
                due.append(copy.deepcopy(infra))
        return due[:limit]

    async def update_infrastructure(self, infra):
        self._inject("update_infrastructure", infra.key)
        stored = self._check_version(infra)
        stored.annotations = dict(infra.annotations)
        stored.finalizers = list(infra.finalizers)
        stored.resource_version += 1
        self.writes.append(("update_infrastructure", copy.deepcopy(stored)))
        if stored.deletion_timestamp is not None and not stored.finalizers:
            del self.infrastructures[(infra.namespace, infra.name)]
        return copy.deepcopy(stored)

    async def update_infrastructure_status(self, infra):
        self._inject("update_infrastructure_status", infra.key)
        stored = self._check_version(infra)
        stored.status = copy.deepcopy(infra.status)
        stored.resource_version += 1
        self.writes.append(("update_infrastructure_status", copy.deepcopy(stored)))
        return copy.deepcopy(stored)

    async def update_infrastructure_spec(self, namespace, name, spec):
        stored = self.current(namespace, name)
        if stored is None:
            raise NotFoundError(KIND, f"{namespace}/{name}")
        if stored.deletion_timestamp is not None:
            raise DeletionPendingError(KIND, f"{namespace}/{name}")
        if stored.spec != spec:
            stored.generation += 1
        stored.spec = dict(spec)
        stored.resource_version += 1
        return copy.deepcopy(stored)

    async def set_annotation(self, namespace, name, key, value):
        stored = self.current(namespace, name)
        if stored is None:
            raise NotFoundError(KIND, f"{namespace}/{name}")
        stored.annotations[key] = value
        stored.resource_version += 1
        return copy.deepcopy(stored)

    async def request_deletion(self, namespace, name):
        stored = self.current(namespace, name)
        if stored is None:
            raise NotFoundError(KIND, f"{namespace}/{name}")
        if not stored.finalizers:
            del self.infrastructures[(namespace, name)]
            return True
        stored.deletion_timestamp = stored.deletion_timestamp or utcnow()
        stored.resource_version += 1
        return False

    async def get_cluster(self, namespace):
        self._inject("get_cluster", namespace)
        if namespace not in self.clusters:
            raise NotFoundError("Cluster", namespace)
        return copy.deepcopy(self.clusters[namespace])

    async def put_cluster(self, cluster):
        self.clusters[cluster.namespace] = copy.deepcopy(cluster)

    async def record_event(self, event):
        self._inject("record_event", f"{event.namespace}/{event.name}")
        self.events.append(event)

    async def list_events(self, namespace=None, name=None, limit=50):
        rows = [
            {
                "namespace": e.namespace,
                "name": e.name,
                "kind": e.kind,
                "type": e.event_type.value,
                "reason": e.reason,
                "message": e.message,
                "created_at": e.timestamp,
            }
            for e in reversed(self.events)
            if (namespace is None or e.namespace == namespace)
            and (name is None or e.name == name)
        ]
        return rows[:limit]

    async def close(self):
        pass


class FakeActuator(Actuator):
    """
    Actuator recording its calls.

    ``errors[operation]`` is raised by that operation; ``on_call`` is invoked
    with ``(operation, infra)`` before returning or raising.
    """

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.errors: Dict[str, Exception] = {}
        self.on_call: Optional[Callable[[str, Infrastructure], Any]] = None
        self.config: Dict[str, Any] = {}
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    @property
    def version(self) -> str:
        return "0.0.1"

    async def initialize(self, config):
        self.config = config

    async def _call(self, operation, infra, cluster):
        self.calls.append((operation, infra.key))
        if self.on_call is not None:
            await self.on_call(operation, infra)
        if operation in self.errors:
            raise self.errors[operation]

    async def reconcile(self, infra, cluster):
        await self._call("reconcile", infra, cluster)

    async def delete(self, infra, cluster):
        await self._call("delete", infra, cluster)

    async def migrate(self, infra, cluster):
        await self._call("migrate", infra, cluster)

    async def restore(self, infra, cluster):
        await self._call("restore", infra, cluster)

    async def close(self):
        self.closed = True


@pytest.fixture
def store():
    """In-memory store with a healthy cluster in namespace ``garden-dev``."""
    fake = FakeStore()
    fake.clusters["garden-dev"] = Cluster(
        namespace="garden-dev",
        shoot={"status": {"last_operation": {"state": "Succeeded"}}},
        seed={"name": "aws-eu1"},
    )
    return fake


@pytest.fixture
def actuator():
    return FakeActuator()


@pytest.fixture
def recorder(store):
    return EventRecorder(db=store)


@pytest.fixture
def fast_backoff():
    """Conflict retry budget without real sleeps."""
    return Backoff(steps=4, duration=0, factor=5.0, jitter=0)


@pytest.fixture
def sample_infra():
    return Infrastructure(
        namespace="garden-dev",
        name="infra",
        spec={"region": "eu-west-1", "networks": {"vpc": {"cidr": "10.0.0.0/16"}}},
        generation=1,
        resource_version=1,
        created_at=datetime(2024, 1, 1),
    )


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn
