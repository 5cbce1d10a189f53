"""
Actuator Base - Abstract interface for infrastructure providers.

An actuator performs the real-world work behind an Infrastructure object
for one provider. The reconciler only looks at whether an operation
returned or raised; everything else is the actuator's own concern.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from models import Cluster, Infrastructure


class Actuator(ABC):
    """
    Abstract base class for actuators.

    Each lifecycle operation takes the Infrastructure object and the Cluster
    context of its namespace. Operations return on success and raise on
    failure, preferably an ``errors.ActuatorError`` carrying the root cause.
    Raise ``errors.RequeueAfterError`` when the operation is still in
    progress and should be checked again later.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this actuator (e.g., 'github_actions')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Actuator version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the actuator with configuration.

        Called once when the actuator is loaded.

        Args:
            config: Actuator-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def reconcile(self, infra: Infrastructure, cluster: Cluster) -> None:
        """Create or update the infrastructure to match ``infra.spec``."""
        pass

    @abstractmethod
    async def delete(self, infra: Infrastructure, cluster: Cluster) -> None:
        """Tear down everything provisioned for ``infra``."""
        pass

    @abstractmethod
    async def migrate(self, infra: Infrastructure, cluster: Cluster) -> None:
        """
        Release control of the infrastructure to another control plane.

        Provider resources must be left intact.
        """
        pass

    @abstractmethod
    async def restore(self, infra: Infrastructure, cluster: Cluster) -> None:
        """Take over infrastructure previously released by ``migrate``."""
        pass

    async def close(self) -> None:
        """Release provider connections. Optional."""
        return None

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load actuator-specific configuration from environment variables.

        Override in subclasses to define how the actuator loads its
        configuration from the environment.
        """
        return {}
