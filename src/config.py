"""
Configuration module for the Infrastructure operator.

Loads configuration from environment variables.
Supports plugin-based actuators with actuator-specific configuration.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from models import FINALIZER_NAME
from updates import Backoff

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "infra_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "infra_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    reconcile_interval: int = 30  # seconds
    max_concurrent_reconciles: int = 5
    resync_period: int = 300  # seconds between passes of settled objects
    finalizer_name: str = FINALIZER_NAME

    # Exponential backoff for failed passes
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 1000  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    # Retry budget for conflicting status/metadata writes
    status_retry_steps: int = 4
    status_retry_duration: float = 0.01  # seconds
    status_retry_factor: float = 5.0
    status_retry_jitter: float = 0.1

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "30")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            resync_period=int(os.getenv("RESYNC_PERIOD", "300")),
            finalizer_name=os.getenv("FINALIZER_NAME", FINALIZER_NAME),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "1000")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            status_retry_steps=int(os.getenv("STATUS_RETRY_STEPS", "4")),
            status_retry_duration=float(os.getenv("STATUS_RETRY_DURATION", "0.01")),
            status_retry_factor=float(os.getenv("STATUS_RETRY_FACTOR", "5.0")),
            status_retry_jitter=float(os.getenv("STATUS_RETRY_JITTER", "0.1")),
        )

    def status_backoff(self) -> Backoff:
        """Backoff used for optimistic writes."""
        return Backoff(
            steps=self.status_retry_steps,
            duration=self.status_retry_duration,
            factor=self.status_retry_factor,
            jitter=self.status_retry_jitter,
        )


@dataclass
class ActuatorConfig:
    """Actuator plugin configuration."""

    # Name of the actuator driving all Infrastructure objects
    actuator: str = "github_actions"

    # Actuator-specific configurations keyed by actuator name
    actuator_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        actuator_configs = {}
        raw = os.getenv("ACTUATOR_CONFIGS")
        if raw:
            try:
                actuator_configs = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"ACTUATOR_CONFIGS is not valid JSON: {e}") from e

        return cls(
            actuator=os.getenv("ACTUATOR", "github_actions"),
            actuator_configs=actuator_configs,
        )

    def get_actuator_config(self, name: Optional[str] = None) -> Dict[str, Any]:
        """Get configuration for an actuator (the selected one by default)."""
        return self.actuator_configs.get(name or self.actuator, {})


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(level=os.getenv("LOG_LEVEL", "INFO").upper())


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    actuators: ActuatorConfig
    logging: LoggingConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            actuators=ActuatorConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            actuators=ActuatorConfig(),
            logging=LoggingConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
        logger.debug(f"Loaded configuration: {config}")
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
