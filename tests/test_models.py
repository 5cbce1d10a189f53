"""Unit tests for models.py - Infrastructure resource model."""

from datetime import datetime, timezone

from models import (
    Cluster,
    Infrastructure,
    InfrastructureStatus,
    LastError,
    LastOperation,
    LastOperationState,
    LastOperationType,
)

NOW = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


class TestInfrastructureStatus:
    """Tests for status serialization."""

    def test_empty_status(self):
        status = InfrastructureStatus.from_dict({})
        assert status.last_operation is None
        assert status.last_error is None
        assert status.observed_generation == 0
        assert status.provider_status == {}

    def test_none_status(self):
        assert InfrastructureStatus.from_dict(None) == InfrastructureStatus()

    def test_from_stored_dict(self):
        status = InfrastructureStatus.from_dict(
            {
                "last_operation": {
                    "type": "Delete",
                    "state": "Error",
                    "progress": 50,
                    "description": "Error deleting infrastructure: boom",
                    "last_update_time": "2024-01-15T10:30:00+00:00",
                },
                "last_error": {
                    "description": "Error deleting infrastructure: boom",
                    "codes": ["ERR_INFRA_DEPENDENCIES"],
                    "last_update_time": "2024-01-15T10:30:00+00:00",
                },
                "observed_generation": 3,
                "provider_status": {"vpc_id": "vpc-123"},
            }
        )

        assert status.last_operation.type == LastOperationType.DELETE
        assert status.last_operation.state == LastOperationState.ERROR
        assert status.last_operation.last_update_time == NOW
        assert status.last_error.codes == ["ERR_INFRA_DEPENDENCIES"]
        assert status.observed_generation == 3
        assert status.provider_status == {"vpc_id": "vpc-123"}

    def test_to_dict(self):
        status = InfrastructureStatus(
            last_operation=LastOperation(
                type=LastOperationType.CREATE,
                state=LastOperationState.SUCCEEDED,
                progress=100,
                description="Successfully reconciled infrastructure",
                last_update_time=NOW,
            ),
            last_error=LastError(description="x", codes=["A"], last_update_time=NOW),
            observed_generation=2,
        )

        data = status.to_dict()

        assert data["last_operation"] == {
            "type": "Create",
            "state": "Succeeded",
            "progress": 100,
            "description": "Successfully reconciled infrastructure",
            "last_update_time": "2024-01-15T10:30:00+00:00",
        }
        assert data["last_error"]["codes"] == ["A"]
        assert data["observed_generation"] == 2

    def test_to_dict_without_operation(self):
        data = InfrastructureStatus().to_dict()
        assert data["last_operation"] is None
        assert data["last_error"] is None


class TestInfrastructure:
    """Tests for the Infrastructure object."""

    def test_key(self):
        assert Infrastructure(namespace="garden-dev", name="infra").key == (
            "garden-dev/infra"
        )

    def test_defaults(self):
        infra = Infrastructure(namespace="ns", name="n")
        assert infra.generation == 1
        assert infra.annotations == {}
        assert infra.finalizers == []
        assert infra.deletion_timestamp is None

    def test_deepcopy_is_independent(self):
        infra = Infrastructure(namespace="ns", name="n", finalizers=["a"])
        clone = infra.deepcopy()
        clone.finalizers.append("b")
        clone.annotations["k"] = "v"

        assert infra.finalizers == ["a"]
        assert infra.annotations == {}

    def test_to_dict(self):
        infra = Infrastructure(
            namespace="ns",
            name="n",
            spec={"region": "eu"},
            deletion_timestamp=NOW,
        )
        data = infra.to_dict()
        assert data["spec"] == {"region": "eu"}
        assert data["deletion_timestamp"] == "2024-01-15T10:30:00+00:00"
        assert data["status"]["observed_generation"] == 0


class TestCluster:
    """Tests for the failed-cluster flag."""

    def test_failed(self):
        cluster = Cluster(
            namespace="ns",
            shoot={"status": {"last_operation": {"state": "Failed"}}},
        )
        assert cluster.is_failed is True

    def test_healthy(self):
        cluster = Cluster(
            namespace="ns",
            shoot={"status": {"last_operation": {"state": "Error"}}},
        )
        assert cluster.is_failed is False

    def test_without_status(self):
        assert Cluster(namespace="ns").is_failed is False
        assert Cluster(namespace="ns", shoot={"status": None}).is_failed is False
