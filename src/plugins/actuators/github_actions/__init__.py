"""GitHub Actions actuator."""

from plugins.actuators.github_actions.executor import GitHubActionsActuator

__all__ = ["GitHubActionsActuator"]
