"""Unit tests for errors.py - error taxonomy and error code classification."""

import pytest

from errors import (
    ERR_CONFIGURATION_PROBLEM,
    ERR_INFRA_DEPENDENCIES,
    ERR_INFRA_INSUFFICIENT_PRIVILEGES,
    ERR_INFRA_QUOTA_EXCEEDED,
    ERR_INFRA_RESOURCES_DEPLETED,
    ERR_INFRA_UNAUTHORIZED,
    ERR_RETRYABLE_INFRA_DEPENDENCIES,
    ActuatorError,
    ConflictError,
    DeletionPendingError,
    NotFoundError,
    RequeueAfterError,
    StoreError,
    cause_or_err,
    determine_error_codes,
    format_last_error_description,
)


class TestStoreErrors:
    """Tests for store error types."""

    def test_not_found_message(self):
        err = NotFoundError("Infrastructure", "garden-dev/infra")
        assert str(err) == "Infrastructure garden-dev/infra not found"
        assert isinstance(err, StoreError)

    def test_conflict_carries_version(self):
        err = ConflictError("Infrastructure", "garden-dev/infra", 7)
        assert err.resource_version == 7
        assert "has been modified" in str(err)

    def test_deletion_pending_message(self):
        err = DeletionPendingError("Infrastructure", "garden-dev/infra")
        assert "is being deleted" in str(err)
        assert isinstance(err, StoreError)


class TestActuatorError:
    """Tests for actuator errors."""

    def test_defaults(self):
        err = ActuatorError("boom")
        assert str(err) == "boom"
        assert err.cause is None
        assert err.codes == []
        assert err.retryable is True

    def test_requeue_after(self):
        cause = RuntimeError("still provisioning")
        err = RequeueAfterError(cause, 15)
        assert err.requeue_after == 15
        assert err.cause is cause
        assert isinstance(err, ActuatorError)

    def test_cause_or_err_unwraps_requeue(self):
        cause = RuntimeError("still provisioning")
        assert cause_or_err(RequeueAfterError(cause, 15)) is cause

    def test_cause_or_err_keeps_other_errors(self):
        err = ActuatorError("boom", cause=RuntimeError("root"))
        assert cause_or_err(err) is err


class TestDetermineErrorCodes:
    """Tests for error code classification."""

    @pytest.mark.parametrize(
        "message, code",
        [
            ("Bad credentials", ERR_INFRA_UNAUTHORIZED),
            ("AuthFailure: AWS was not able to validate", ERR_INFRA_UNAUTHORIZED),
            ("403 Forbidden", ERR_INFRA_INSUFFICIENT_PRIVILEGES),
            ("VcpuLimitExceeded: you have requested more vCPU", ERR_INFRA_QUOTA_EXCEEDED),
            ("DependencyViolation: sg has a dependent object", ERR_INFRA_DEPENDENCIES),
            ("InternalServerError from provider", ERR_RETRYABLE_INFRA_DEPENDENCIES),
            ("InsufficientInstanceCapacity", ERR_INFRA_RESOURCES_DEPLETED),
            ("InvalidParameterValue: cidr", ERR_CONFIGURATION_PROBLEM),
        ],
    )
    def test_message_patterns(self, message, code):
        assert determine_error_codes(RuntimeError(message)) == [code]

    def test_unknown_message(self):
        assert determine_error_codes(RuntimeError("something odd happened")) == []

    def test_multiple_codes(self):
        codes = determine_error_codes(
            RuntimeError("Unauthorized: access denied for this project")
        )
        assert codes == [ERR_INFRA_UNAUTHORIZED, ERR_INFRA_INSUFFICIENT_PRIVILEGES]

    def test_explicit_codes_win(self):
        err = ActuatorError("Forbidden", codes=[ERR_CONFIGURATION_PROBLEM])
        assert determine_error_codes(err) == [ERR_CONFIGURATION_PROBLEM]

    def test_explicit_codes_on_cause(self):
        root = ActuatorError("root", codes=[ERR_INFRA_QUOTA_EXCEEDED])
        err = ActuatorError("wrapper", cause=root)
        assert determine_error_codes(err) == [ERR_INFRA_QUOTA_EXCEEDED]

    def test_explicit_codes_on_chained_exception(self):
        try:
            try:
                raise ActuatorError("root", codes=[ERR_INFRA_DEPENDENCIES])
            except ActuatorError as e:
                raise RuntimeError("wrapped") from e
        except RuntimeError as err:
            assert determine_error_codes(err) == [ERR_INFRA_DEPENDENCIES]


class TestFormatLastErrorDescription:
    """Tests for the last error description."""

    def test_capitalizes(self):
        assert format_last_error_description(RuntimeError("failed to create vpc")) == (
            "Failed to create vpc"
        )

    def test_empty(self):
        assert format_last_error_description(RuntimeError()) == ""
