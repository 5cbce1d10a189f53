"""
Infrastructure Reconciler - lifecycle state machine for Infrastructure objects.

One pass loads the object and its cluster context, classifies the operation
from persisted state only, and runs exactly one lifecycle handler. Handlers
are fixed step sequences around a single actuator call; a failing step
aborts the pass and is reported to the caller for retry.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from db import DatabaseManager
from errors import NotFoundError, ReconcileError, RequeueAfterError, cause_or_err
from events import (
    EVENT_INFRASTRUCTURE_DELETION,
    EVENT_INFRASTRUCTURE_MIGRATION,
    EVENT_INFRASTRUCTURE_RECONCILIATION,
    EVENT_INFRASTRUCTURE_RESTORATION,
    EventRecorder,
)
from finalizers import FinalizerManager
from models import (
    FINALIZER_NAME,
    OPERATION_ANNOTATION,
    Cluster,
    Infrastructure,
    LastOperationType,
)
from operation import Operation, classify_operation, compute_operation_type
from plugins.actuators.base import Actuator
from status import StatusUpdater
from updates import DEFAULT_BACKOFF, Backoff, remove_annotation

logger = logging.getLogger(__name__)

ActuatorCall = Callable[[Infrastructure, Cluster], Awaitable[None]]


@dataclass
class ReconcileResult:
    """Outcome of a reconciliation pass that did not raise."""

    success: bool = True
    message: str = ""
    requeue_after: Optional[float] = None
    operation: Optional[Operation] = None


class InfrastructureReconciler:
    """
    Reconciles Infrastructure objects through an injected actuator.

    Holds no state between passes: every decision is derived from the
    object as currently persisted in the store.
    """

    def __init__(
        self,
        db: DatabaseManager,
        actuator: Actuator,
        recorder: Optional[EventRecorder] = None,
        finalizer: str = FINALIZER_NAME,
        backoff: Backoff = DEFAULT_BACKOFF,
    ):
        self.db = db
        self.actuator = actuator
        self.recorder = recorder or EventRecorder()
        self.backoff = backoff
        self.finalizers = FinalizerManager(db, finalizer, backoff)
        self.status = StatusUpdater(db, self.recorder, backoff)

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Run one reconciliation pass for the object ``namespace/name``.

        Returns normally on success, on no-ops and when the actuator asked
        to be polled again later (``requeue_after``). Raises on every other
        failure so that the caller retries the pass.
        """
        try:
            infra = await self.db.get_infrastructure(namespace, name)
        except NotFoundError:
            logger.debug(f"Infrastructure {namespace}/{name} not found, ignoring")
            return ReconcileResult(message="not found")

        cluster = await self.db.get_cluster(namespace)
        if cluster.is_failed:
            logger.info(f"Stop reconciling Infrastructure {infra.key} of failed cluster")
            return ReconcileResult(message="cluster failed")

        operation = classify_operation(infra)
        logger.debug(f"Infrastructure {infra.key}: operation {operation.value}")

        if operation == Operation.SKIP_MIGRATED:
            result = ReconcileResult(message="already migrated")
        elif operation == Operation.MIGRATE:
            result = await self._migrate(infra, cluster)
        elif operation == Operation.DELETE:
            result = await self._delete(infra, cluster)
        elif operation == Operation.RESTORE:
            result = await self._restore(infra, cluster)
        else:
            result = await self._reconcile(infra, cluster, compute_operation_type(infra))

        result.operation = operation
        return result

    # Lifecycle handlers

    async def _reconcile(
        self,
        infra: Infrastructure,
        cluster: Cluster,
        operation_type: LastOperationType,
    ) -> ReconcileResult:
        reason = EVENT_INFRASTRUCTURE_RECONCILIATION
        infra = await self.finalizers.ensure(infra)
        infra = await self.status.set_processing(
            infra, operation_type, "Reconciling the infrastructure"
        )

        await self._log_info(infra, reason, "Reconciling the infrastructure")
        failed = await self._call_actuator(
            self.actuator.reconcile,
            infra,
            cluster,
            operation_type,
            reason,
            "Error reconciling infrastructure",
        )
        if failed:
            return failed

        await self.status.set_succeeded(
            infra, operation_type, reason, "Successfully reconciled infrastructure"
        )
        return ReconcileResult()

    async def _delete(self, infra: Infrastructure, cluster: Cluster) -> ReconcileResult:
        reason = EVENT_INFRASTRUCTURE_DELETION
        if not self.finalizers.has(infra):
            logger.info(
                f"Deleting infrastructure {infra.key} causes a no-op "
                f"as there is no finalizer"
            )
            return ReconcileResult(message="no finalizer")

        operation_type = LastOperationType.DELETE
        infra = await self.status.set_processing(
            infra, operation_type, "Deleting the infrastructure"
        )

        await self._log_info(infra, reason, "Deleting the infrastructure")
        failed = await self._call_actuator(
            self.actuator.delete,
            infra,
            cluster,
            operation_type,
            reason,
            "Error deleting infrastructure",
        )
        if failed:
            return failed

        infra = await self.status.set_succeeded(
            infra, operation_type, reason, "Successfully deleted infrastructure"
        )
        await self._remove_finalizer(infra, reason)
        return ReconcileResult()

    async def _migrate(self, infra: Infrastructure, cluster: Cluster) -> ReconcileResult:
        reason = EVENT_INFRASTRUCTURE_MIGRATION
        operation_type = LastOperationType.MIGRATE
        infra = await self.status.set_processing(
            infra, operation_type, "Starting Migration of the Infrastructure"
        )

        await self._log_info(infra, reason, "Migrating the infrastructure")
        failed = await self._call_actuator(
            self.actuator.migrate,
            infra,
            cluster,
            operation_type,
            reason,
            "Error migrating infrastructure",
        )
        if failed:
            return failed

        infra = await self.status.set_succeeded(
            infra, operation_type, reason, "Successfully migrated Infrastructure"
        )
        infra = await self._remove_finalizer(infra, reason)
        # Cleared last: a migration cut short keeps classifying as migrate
        await self._remove_operation_annotation(infra, reason)
        return ReconcileResult()

    async def _restore(self, infra: Infrastructure, cluster: Cluster) -> ReconcileResult:
        reason = EVENT_INFRASTRUCTURE_RESTORATION
        operation_type = LastOperationType.RESTORE
        infra = await self.finalizers.ensure(infra)
        infra = await self.status.set_processing(
            infra, operation_type, "Restoring the infrastructure"
        )

        await self._log_info(infra, reason, "Restoring the infrastructure")
        failed = await self._call_actuator(
            self.actuator.restore,
            infra,
            cluster,
            operation_type,
            reason,
            "Error restoring infrastructure",
        )
        if failed:
            return failed

        infra = await self._remove_operation_annotation(infra, reason)
        await self.status.set_succeeded(
            infra, operation_type, reason, "Successfully restored infrastructure"
        )
        return ReconcileResult()

    # Steps shared by the handlers

    async def _call_actuator(
        self,
        call: ActuatorCall,
        infra: Infrastructure,
        cluster: Cluster,
        operation_type: LastOperationType,
        reason: str,
        description: str,
    ) -> Optional[ReconcileResult]:
        """
        Invoke an actuator operation.

        On failure the error status is recorded, then the failure is raised
        again, or returned as a delayed requeue for RequeueAfterError. Returns
        None on success.
        """
        try:
            await call(infra, cluster)
        except Exception as e:
            try:
                await self.status.set_error(
                    infra, cause_or_err(e), operation_type, reason, description
                )
            except Exception as status_err:
                logger.error(
                    f"Could not record error status for {infra.key}: {status_err}"
                )

            if isinstance(e, RequeueAfterError):
                logger.info(f"{description} {infra.key}, requeue in {e.requeue_after}s")
                return ReconcileResult(
                    success=False, message=str(e), requeue_after=e.requeue_after
                )
            logger.error(f"{description} {infra.key}: {e}")
            raise
        return None

    async def _remove_finalizer(
        self, infra: Infrastructure, reason: str
    ) -> Infrastructure:
        logger.info(f"Removing finalizer from {infra.key}")
        try:
            return await self.finalizers.remove(infra)
        except Exception as e:
            msg = "Error removing finalizer from Infrastructure"
            await self.recorder.warning(infra, reason, f"{msg}: {e}")
            raise ReconcileError(f"{msg}: {e}") from e

    async def _remove_operation_annotation(
        self, infra: Infrastructure, reason: str
    ) -> Infrastructure:
        try:
            return await remove_annotation(
                self.db, infra, OPERATION_ANNOTATION, self.backoff
            )
        except Exception as e:
            msg = "Error removing annotation from Infrastructure"
            await self.recorder.warning(infra, reason, f"{msg}: {e}")
            raise ReconcileError(f"{msg}: {e}") from e

    async def _log_info(self, infra: Infrastructure, reason: str, message: str) -> None:
        await self.recorder.normal(infra, reason, message)
        logger.info(f"{message}: {infra.key}")
