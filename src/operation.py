"""
Operation classification.

Pure functions deriving the next lifecycle operation from the persisted
state of an Infrastructure object. Nothing here is cached between passes.
"""

from enum import Enum

from models import (
    OPERATION_ANNOTATION,
    OPERATION_MIGRATE,
    OPERATION_RESTORE,
    Infrastructure,
    LastOperationState,
    LastOperationType,
)

# Operation types that are re-entered until they succeed
_RESUMABLE_TYPES = (
    LastOperationType.CREATE,
    LastOperationType.MIGRATE,
    LastOperationType.RESTORE,
)


class Operation(Enum):
    """Handler selected for a reconciliation pass."""

    SKIP_MIGRATED = "skip-migrated"
    MIGRATE = "migrate"
    DELETE = "delete"
    RESTORE = "restore"
    RECONCILE = "reconcile"


def compute_operation_type(infra: Infrastructure) -> LastOperationType:
    """Compute the operation type to record for the next pass."""
    last_operation = infra.status.last_operation

    if infra.annotations.get(OPERATION_ANNOTATION) == OPERATION_MIGRATE:
        return LastOperationType.MIGRATE
    if infra.deletion_timestamp is not None:
        return LastOperationType.DELETE
    if last_operation is None:
        return LastOperationType.CREATE
    if (
        last_operation.type in _RESUMABLE_TYPES
        and last_operation.state != LastOperationState.SUCCEEDED
    ):
        return last_operation.type
    return LastOperationType.RECONCILE


def is_migrated(infra: Infrastructure) -> bool:
    """True once a migration has completed; the object must not be touched again."""
    last_operation = infra.status.last_operation
    return (
        last_operation is not None
        and last_operation.type == LastOperationType.MIGRATE
        and last_operation.state == LastOperationState.SUCCEEDED
    )


def classify_operation(infra: Infrastructure) -> Operation:
    """
    Select the handler for an Infrastructure object. First match wins.

    A migration that has started finishes before anything else, and deletion
    pre-empts a stale restore annotation.
    """
    if is_migrated(infra):
        return Operation.SKIP_MIGRATED
    if compute_operation_type(infra) == LastOperationType.MIGRATE:
        return Operation.MIGRATE
    if infra.deletion_timestamp is not None:
        return Operation.DELETE
    if infra.annotations.get(OPERATION_ANNOTATION) == OPERATION_RESTORE:
        return Operation.RESTORE
    return Operation.RECONCILE
