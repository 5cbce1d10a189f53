"""
Main entry point for the Infrastructure operator.

This module wires the store, the actuator and the reconciler together and
starts the controller.
"""

import asyncio
import logging
import signal
from typing import Optional

from config import Config, get_config
from controller import Controller
from db import DatabaseManager
from events import EventRecorder
from plugins.actuators.base import Actuator
from plugins.registry import get_registry, register_builtin_actuators
from reconciler import InfrastructureReconciler

logger = logging.getLogger(__name__)


def setup_logging(config: Config) -> None:
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format=config.logging.format,
    )


class Application:
    """Main application that orchestrates the controller and the actuator."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.db: Optional[DatabaseManager] = None
        self.actuator: Optional[Actuator] = None
        self.reconciler: Optional[InfrastructureReconciler] = None
        self.controller: Optional[Controller] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Infrastructure operator")

        register_builtin_actuators()
        registry = get_registry()

        # Initialize database
        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        # Actuator config from the environment, overridden by ACTUATOR_CONFIGS
        actuator_config = self.config.actuators
        self.actuator = await registry.get_actuator(
            actuator_config.actuator, actuator_config.get_actuator_config()
        )
        logger.info(f"Using actuator: {self.actuator.name} v{self.actuator.version}")

        recorder = EventRecorder(db=self.db)

        ctrl_config = self.config.controller
        self.reconciler = InfrastructureReconciler(
            db=self.db,
            actuator=self.actuator,
            recorder=recorder,
            finalizer=ctrl_config.finalizer_name,
            backoff=ctrl_config.status_backoff(),
        )
        self.controller = Controller(
            db_manager=self.db,
            reconciler=self.reconciler,
            config=ctrl_config,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        try:
            await self.controller.start()
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running and self.db is None:
            return
        logger.info("Stopping Infrastructure operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        await get_registry().close()

        if self.db:
            await self.db.close()
            self.db = None

        logger.info("Infrastructure operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    setup_logging(get_config())
    asyncio.run(main())


if __name__ == "__main__":
    run()
