"""
Actuator Registry - Discovery and registration of actuators.

Provides the central registry for actuator classes, handling discovery,
registration and instantiation.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, Optional, Type

from plugins.actuators.base import Actuator

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "infra_operator.actuators"


class ActuatorRegistry:
    """
    Central registry for actuators.

    Actuator classes are registered by name; instances are created and
    initialized once, on first use.
    """

    def __init__(self):
        # Registered actuator classes (not instantiated)
        self._actuators: Dict[str, Type[Actuator]] = {}

        # Cached metadata (name, version) to avoid repeated instantiation
        self._actuator_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized actuators
        self._instances: Dict[str, Actuator] = {}

        # Actuator configurations loaded from environment
        self._configs: Dict[str, Dict[str, Any]] = {}

    def register_actuator(self, actuator_class: Type[Actuator]) -> None:
        """
        Register an actuator class.

        Args:
            actuator_class: The Actuator subclass to register
        """
        # Temporary instance to read name/version (only once at registration)
        temp_instance = actuator_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._actuators:
            logger.warning(f"Overwriting existing actuator: {name}")

        self._actuators[name] = actuator_class
        self._actuator_info[name] = {"name": name, "version": version}
        self._configs[name] = actuator_class.load_config_from_env()
        logger.info(f"Registered actuator: {name} v{version}")

    async def get_actuator(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> Actuator:
        """
        Get an initialized actuator instance.

        Args:
            name: The actuator name
            config: Configuration merged over the environment-loaded config
                before initialize()

        Raises:
            ValueError: If the actuator name is not registered
        """
        if name not in self._actuators:
            available = ", ".join(self._actuators.keys()) or "none"
            raise ValueError(
                f"Unknown actuator: {name}. Available actuators: {available}"
            )

        if name not in self._instances:
            actuator_config = dict(self._configs.get(name, {}))
            actuator_config.update(config or {})

            actuator = self._actuators[name]()
            await actuator.initialize(actuator_config)
            self._instances[name] = actuator
            logger.info(f"Initialized actuator: {name}")

        return self._instances[name]

    def list_actuators(self) -> list[str]:
        return list(self._actuators.keys())

    def has_actuator(self, name: str) -> bool:
        return name in self._actuators

    def get_actuator_info(self, name: str) -> Optional[Dict[str, str]]:
        """Return ``{'name', 'version'}`` of a registered actuator, or None."""
        return self._actuator_info.get(name)

    def get_actuator_config(self, name: str) -> Dict[str, Any]:
        return self._configs.get(name, {})

    async def close(self) -> None:
        """Close all initialized actuators."""
        for name, actuator in list(self._instances.items()):
            try:
                await actuator.close()
            except Exception as e:
                logger.error(f"Error closing actuator '{name}': {e}")
        self._instances.clear()


# Global registry instance
_registry: Optional[ActuatorRegistry] = None


def get_registry() -> ActuatorRegistry:
    """Get the global actuator registry singleton."""
    global _registry
    if _registry is None:
        _registry = ActuatorRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_actuators() -> None:
    """
    Register the built-in actuators and discover third-party actuators
    via entry points.

    Called during application startup.
    """
    registry = get_registry()

    from plugins.actuators.github_actions import GitHubActionsActuator

    registry.register_actuator(GitHubActionsActuator)

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            registry.register_actuator(ep.load())
        except Exception as e:
            logger.warning(f"Could not load actuator {ep.name}: {e}")
