"""Unit tests for plugins/registry.py - Actuator registry."""

from unittest.mock import MagicMock, patch

import pytest

from plugins import registry as registry_module
from plugins.actuators.github_actions import GitHubActionsActuator
from plugins.registry import (
    ActuatorRegistry,
    get_registry,
    register_builtin_actuators,
    reset_registry,
)


@pytest.fixture
def fake_class(actuator):
    return type(actuator)


@pytest.fixture
def registry():
    return ActuatorRegistry()


@pytest.fixture(autouse=True)
def clean_global_registry():
    reset_registry()
    yield
    reset_registry()


class TestActuatorRegistry:
    """Tests for registration and lookup."""

    def test_register_actuator(self, registry, fake_class):
        registry.register_actuator(fake_class)

        assert registry.has_actuator("fake")
        assert registry.list_actuators() == ["fake"]
        assert registry.get_actuator_info("fake") == {
            "name": "fake",
            "version": "0.0.1",
        }
        assert registry.get_actuator_config("fake") == {}

    def test_unknown_actuator_info(self, registry):
        assert registry.get_actuator_info("missing") is None
        assert registry.has_actuator("missing") is False

    def test_register_loads_env_config(self, registry):
        with patch.dict(
            "os.environ", {"GITHUB_TOKEN": "ghp_test", "GITHUB_ACTIONS_TIMEOUT": "60"}
        ):
            registry.register_actuator(GitHubActionsActuator)

        config = registry.get_actuator_config("github_actions")
        assert config["github_token"] == "ghp_test"
        assert config["timeout"] == 60

    def test_global_registry_is_singleton(self):
        assert get_registry() is get_registry()

    def test_register_builtin_actuators(self):
        with patch.object(registry_module, "entry_points", return_value=[]):
            register_builtin_actuators()

        assert get_registry().has_actuator("github_actions")

    def test_register_entry_point_actuators(self, fake_class):
        ep = MagicMock()
        ep.load.return_value = fake_class
        broken = MagicMock()
        broken.name = "broken"
        broken.load.side_effect = ImportError("no module named broken")

        with patch.object(registry_module, "entry_points", return_value=[ep, broken]):
            register_builtin_actuators()

        assert sorted(get_registry().list_actuators()) == ["fake", "github_actions"]


@pytest.mark.asyncio
class TestActuatorRegistryAsync:
    """Tests for actuator instantiation."""

    async def test_get_actuator_initializes_once(self, registry, fake_class):
        registry.register_actuator(fake_class)

        first = await registry.get_actuator("fake", {"region": "eu-west-1"})
        second = await registry.get_actuator("fake")

        assert first is second
        assert first.config == {"region": "eu-west-1"}

    async def test_get_unknown_actuator(self, registry, fake_class):
        registry.register_actuator(fake_class)

        with pytest.raises(ValueError, match="Available actuators: fake"):
            await registry.get_actuator("terraform")

    async def test_config_overrides_environment(self, registry):
        with patch.dict("os.environ", {"GITHUB_TOKEN": "from-env"}):
            registry.register_actuator(GitHubActionsActuator)

        actuator = await registry.get_actuator(
            "github_actions", {"timeout": 5, "poll_interval": 1}
        )

        assert actuator.github_token == "from-env"
        assert actuator.timeout == 5
        assert actuator.poll_interval == 1

    async def test_close_closes_instances(self, registry, fake_class):
        registry.register_actuator(fake_class)
        actuator = await registry.get_actuator("fake")

        await registry.close()

        assert actuator.closed is True
        assert await registry.get_actuator("fake") is not actuator
