"""
Actuator plugins package.

Actuators perform the actual provisioning work for one provider
(GitHub Actions triggering Terraform, Ansible, etc.)
"""

from plugins.actuators.base import Actuator

__all__ = ["Actuator"]
