"""webtop main entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import TYPE_CHECKING, Any

from webtop.monitoring.metrics import start_metrics_server
from webtop.pipeline import WebtopPipeline

if TYPE_CHECKING:
    from webtop.config import WebtopConfig
    from webtop.storage import EventStore

logger = logging.getLogger(__name__)


class WebtopApplication:
    """webtop application with lifecycle management.

    Attributes:
        config: Process configuration
        pipeline: Pipeline components and scheduler
        shutdown_event: Event for graceful shutdown
    """

    def __init__(self, config: WebtopConfig, store: EventStore | None = None) -> None:
        """Initialize application.

        Args:
            config: Process configuration
            store: Event store to use instead of the configured one
        """
        self.config = config
        self.pipeline = WebtopPipeline(config, store=store)
        self.shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Initialize the store, register jobs and start the scheduler."""
        logger.info("Starting webtop application")

        await self.pipeline.initialize()
        await self.pipeline.register_jobs()

        if self.config.metrics_enabled:
            start_metrics_server(self.config.prometheus_port)

        await self.pipeline.scheduler.start()

        logger.info("✅ webtop application started successfully")
        logger.info(f"   Database: {self.pipeline.store.db_path}")
        logger.info(f"   Levels: {', '.join(level.name for level in self.pipeline.cascade.levels)}")
        logger.info(f"   Jobs: {len(self.pipeline.scheduler.list_jobs())}")

    async def run(self) -> None:
        """Start, then keep running until a shutdown signal arrives."""
        await self.start()

        logger.info("Setting up signal handlers for graceful shutdown")
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        try:
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Application cancelled")
        finally:
            await self.stop()

    def _handle_shutdown(self, signum: int, _frame: Any = None) -> None:
        """Handle shutdown signal.

        Args:
            signum: Signal number (SIGINT or SIGTERM)
            _frame: Current stack frame (unused)
        """
        signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
        logger.info(f"Received {signal_name} signal, initiating graceful shutdown")
        self.shutdown_event.set()

    async def stop(self) -> None:
        """Stop the scheduler (draining in-flight runs) and close the store."""
        logger.info("Initiating graceful shutdown")
        await self.pipeline.scheduler.stop()
        await self.pipeline.close()
        logger.info("✅ webtop application shutdown complete")
