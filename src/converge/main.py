"""
Long-running service: inspection API plus periodic drift reconciliation.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from converge.api import APIServer
from converge.config import Config, get_config
from converge.engine import Engine, open_state_store
from converge.events import EventBus
from converge.loader import load_schemas
from converge.providers import load_provider

logger = logging.getLogger(__name__)


async def build_engine(config: Config, event_bus: Optional[EventBus] = None) -> Engine:
    """Create the engine described by the configuration."""
    registry = load_schemas(config.providers.schema_path)
    provider_name = config.providers.provider
    provider = await load_provider(
        provider_name or None, config.providers.get_provider_config(provider_name)
    )
    store = await open_state_store(config.state)
    return Engine(store, provider, registry, config.executor, event_bus=event_bus)


class Application:
    """Orchestrates the inspection API and the drift loop."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.engine: Optional[Engine] = None
        self.event_bus: Optional[EventBus] = None
        self.api_server: Optional[APIServer] = None
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing converge service")
        self.event_bus = EventBus()
        self.engine = await build_engine(self.config, self.event_bus)
        self.api_server = APIServer(
            self.engine,
            self.event_bus,
            host=self.config.api.host,
            port=self.config.api.port,
            log_level=self.config.api.log_level,
        )
        logger.info("All components initialized")

    async def start(self):
        """Start the API server and, if enabled, the drift loop."""
        if self.engine is None:
            await self.initialize()

        self._shutdown_event.clear()
        self._tasks = [asyncio.create_task(self.api_server.start())]
        if self.config.drift.enabled:
            self._tasks.append(
                asyncio.create_task(
                    self.engine.drift.run(self.config.drift.interval, self._shutdown_event)
                )
            )

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        logger.info("Stopping converge service")
        self._shutdown_event.set()
        if self.api_server:
            await self.api_server.stop()
        if self.event_bus:
            await self.event_bus.close()
        if self.engine:
            await self.engine.close()
            self.engine = None
        logger.info("Converge service stopped")


async def main(config: Optional[Config] = None):
    """Main entry point for ``converge serve``."""
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()
