"""
Plugin system for the Infrastructure operator.

Actuators are pluggable per provider and looked up through the registry.
"""

from plugins.actuators.base import Actuator
from plugins.registry import ActuatorRegistry, get_registry

__all__ = [
    "Actuator",
    "ActuatorRegistry",
    "get_registry",
]
