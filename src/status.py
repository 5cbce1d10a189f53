"""
Status updates for Infrastructure objects.

Each update is a read-modify-write of ``status`` retried on conflicts. The
updater also emits the matching events and log lines.
"""

import logging

from db import DatabaseManager
from errors import determine_error_codes, format_last_error_description
from events import EventRecorder
from models import (
    Infrastructure,
    LastError,
    LastOperation,
    LastOperationState,
    LastOperationType,
    utcnow,
)
from updates import DEFAULT_BACKOFF, Backoff, try_update_status

logger = logging.getLogger(__name__)

PROGRESS_PROCESSING = 1
PROGRESS_ERROR = 50
PROGRESS_SUCCEEDED = 100


class StatusUpdater:
    """Writes Processing, Succeeded and Error states onto Infrastructure status."""

    def __init__(
        self,
        db: DatabaseManager,
        recorder: EventRecorder,
        backoff: Backoff = DEFAULT_BACKOFF,
    ):
        self.db = db
        self.recorder = recorder
        self.backoff = backoff

    async def set_processing(
        self,
        infra: Infrastructure,
        operation_type: LastOperationType,
        description: str,
    ) -> Infrastructure:
        """Mark ``operation_type`` as in progress."""

        def mutate(obj: Infrastructure) -> None:
            obj.status.last_operation = LastOperation(
                type=operation_type,
                state=LastOperationState.PROCESSING,
                progress=PROGRESS_PROCESSING,
                description=description,
            )

        return await try_update_status(self.db, infra, mutate, self.backoff)

    async def set_error(
        self,
        infra: Infrastructure,
        err: BaseException,
        operation_type: LastOperationType,
        reason: str,
        description: str,
    ) -> Infrastructure:
        """
        Record a failed ``operation_type``.

        A warning event is emitted first. The error is classified into error
        codes, and the observed generation advances to the current generation.
        """
        await self.recorder.warning(infra, reason, f"{description}: {err}")

        now = utcnow()
        last_error = LastError(
            description=format_last_error_description(
                Exception(f"{description}: {err}")
            ),
            codes=determine_error_codes(err),
            last_update_time=now,
        )

        def mutate(obj: Infrastructure) -> None:
            obj.status.observed_generation = obj.generation
            obj.status.last_operation = LastOperation(
                type=operation_type,
                state=LastOperationState.ERROR,
                progress=PROGRESS_ERROR,
                description=last_error.description,
                last_update_time=now,
            )
            obj.status.last_error = last_error

        return await try_update_status(self.db, infra, mutate, self.backoff)

    async def set_succeeded(
        self,
        infra: Infrastructure,
        operation_type: LastOperationType,
        reason: str,
        description: str,
    ) -> Infrastructure:
        """Record a successful ``operation_type`` and clear the last error."""
        await self.recorder.normal(infra, reason, description)
        logger.info(f"{description}: {infra.key}")

        def mutate(obj: Infrastructure) -> None:
            obj.status.observed_generation = obj.generation
            obj.status.last_operation = LastOperation(
                type=operation_type,
                state=LastOperationState.SUCCEEDED,
                progress=PROGRESS_SUCCEEDED,
                description=description,
            )
            obj.status.last_error = None

        return await try_update_status(self.db, infra, mutate, self.backoff)
