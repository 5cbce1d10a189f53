"""
Error taxonomy for the Infrastructure reconciler.

Store errors (not found, write conflicts), actuator failures and terminal
reconcile errors, plus classification of failure causes into stable error
codes that are written into ``status.last_error``.
"""

import re
from typing import List, Optional, Tuple

ERR_INFRA_UNAUTHORIZED = "ERR_INFRA_UNAUTHORIZED"
ERR_INFRA_INSUFFICIENT_PRIVILEGES = "ERR_INFRA_INSUFFICIENT_PRIVILEGES"
ERR_INFRA_QUOTA_EXCEEDED = "ERR_INFRA_QUOTA_EXCEEDED"
ERR_INFRA_DEPENDENCIES = "ERR_INFRA_DEPENDENCIES"
ERR_RETRYABLE_INFRA_DEPENDENCIES = "ERR_RETRYABLE_INFRA_DEPENDENCIES"
ERR_INFRA_RESOURCES_DEPLETED = "ERR_INFRA_RESOURCES_DEPLETED"
ERR_CONFIGURATION_PROBLEM = "ERR_CONFIGURATION_PROBLEM"

# Order matters: the first matching pattern of each code contributes it once
_ERROR_CODE_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    (
        ERR_INFRA_UNAUTHORIZED,
        re.compile(
            r"(Unauthorized|InvalidClientTokenId|SignatureDoesNotMatch|"
            r"Authentication failed|AuthFailure|AuthorizationFailed|invalid_grant|"
            r"invalid_client|cannot fetch token|InvalidAccessKeyId|"
            r"InvalidSecretAccessKey|UnauthorizedOperation|not authorized|"
            r"Bad credentials)",
            re.IGNORECASE,
        ),
    ),
    (
        ERR_INFRA_INSUFFICIENT_PRIVILEGES,
        re.compile(r"(AccessDenied|Forbidden|deny|denied)", re.IGNORECASE),
    ),
    (
        ERR_INFRA_QUOTA_EXCEEDED,
        re.compile(
            r"(LimitExceeded|Quota|Throttling|Too many requests|rate limit)",
            re.IGNORECASE,
        ),
    ),
    (
        ERR_RETRYABLE_INFRA_DEPENDENCIES,
        re.compile(
            r"(RetryableError|timeout while waiting for state to become|"
            r"internal server error|InternalServerError)",
            re.IGNORECASE,
        ),
    ),
    (
        ERR_INFRA_DEPENDENCIES,
        re.compile(
            r"(PendingVerification|Access Not Configured|accessNotConfigured|"
            r"DependencyViolation|OptInRequired|DeleteConflict|Conflict|"
            r"inactive billing state|ReadOnlyDisabledSubscription|"
            r"is already being used|InUseSubnetCannotBeDeleted|VnetInUse|"
            r"InUseRouteTableCannotBeDeleted|InvalidCidrBlock|already busy for|"
            r"InsufficientFreeAddressesInSubnet)",
            re.IGNORECASE,
        ),
    ),
    (
        ERR_INFRA_RESOURCES_DEPLETED,
        re.compile(
            r"(not available in the current hardware cluster|"
            r"InsufficientInstanceCapacity|SkuNotAvailable|ZonalAllocationFailed|"
            r"out of stock)",
            re.IGNORECASE,
        ),
    ),
    (
        ERR_CONFIGURATION_PROBLEM,
        re.compile(
            r"(InvalidParameter|InvalidParameterValue|not supported in your "
            r"requested Availability Zone|No such host|InvalidConfiguration|"
            r"unknown workflow|Not Found)",
            re.IGNORECASE,
        ),
    ),
)


class StoreError(Exception):
    """Base class for resource store errors."""


class NotFoundError(StoreError):
    """The requested object does not exist (any more)."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class AlreadyExistsError(StoreError):
    """An object with the same key already exists."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} already exists")


class DeletionPendingError(StoreError):
    """The object is being deleted and its spec can no longer change."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} is being deleted, its spec cannot be changed")


class ConflictError(StoreError):
    """An optimistic write lost against a concurrent writer."""

    def __init__(self, kind: str, key: str, resource_version: Optional[int] = None):
        self.kind = kind
        self.key = key
        self.resource_version = resource_version
        super().__init__(
            f"Operation cannot be fulfilled on {kind} {key}: "
            f"the object has been modified (resource version {resource_version})"
        )


class ActuatorError(Exception):
    """
    Failure reported by an actuator.

    Args:
        message: Human-readable failure description
        cause: Underlying exception used for error code classification
        codes: Explicit error codes, overriding message-based classification
        retryable: Whether retrying the same operation may succeed
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        codes: Optional[List[str]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.cause = cause
        self.codes = list(codes or [])
        self.retryable = retryable


class RequeueAfterError(ActuatorError):
    """The operation is in progress; check again after ``requeue_after`` seconds."""

    def __init__(self, cause: BaseException, requeue_after: float):
        super().__init__(f"requeue in {requeue_after}s: {cause}", cause=cause)
        self.requeue_after = requeue_after


class ReconcileError(Exception):
    """Terminal failure of a reconciliation pass outside the actuator."""


def cause_or_err(err: BaseException) -> BaseException:
    """Return the cause of a requeue error, or the error itself."""
    if isinstance(err, RequeueAfterError) and err.cause is not None:
        return err.cause
    return err


def determine_error_codes(err: BaseException) -> List[str]:
    """
    Classify an error into stable error codes.

    Explicit codes carried anywhere on the error's cause chain win; otherwise
    the error message is matched against the known failure patterns.
    """
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        codes = getattr(current, "codes", None)
        if codes:
            return list(codes)
        current = getattr(current, "cause", None) or current.__cause__

    message = str(err)
    return [code for code, pattern in _ERROR_CODE_PATTERNS if pattern.search(message)]


def format_last_error_description(err: BaseException) -> str:
    """Format an error for ``last_error.description``."""
    text = str(err)
    if text:
        text = text[0].upper() + text[1:]
    return text
