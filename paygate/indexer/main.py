"""
Standalone entry point for the indexer service.
Runs every configured chain watcher without the HTTP API.
"""

import asyncio
import signal
from typing import List, Optional

import structlog

from paygate.core.config import settings
from paygate.core.database import close_database, init_database
from paygate.core.logging import setup_logging
from paygate.services.payment_store import PaymentStore

from .manager import IndexerManager

logger = structlog.get_logger(__name__)


class IndexerMain:
    """
    Indexer service coordinator.

    - Builds the manager from settings
    - Starts every chain watcher
    - Logs a periodic health summary until a shutdown signal arrives
    """

    def __init__(self, health_interval: Optional[float] = None):
        self.manager: Optional[IndexerManager] = None
        self.health_interval = health_interval or settings.indexer_health_interval
        self.running = False
        self.tasks: List[asyncio.Task] = []
        self._shutdown = asyncio.Event()

    async def initialize(self):
        """Initialize database and watchers."""
        try:
            logger.info("Initializing indexer service")

            session_maker = await init_database()
            self.manager = IndexerManager.from_settings(PaymentStore(session_maker))

            logger.info(
                "Indexer service initialized",
                chains=self.manager.get_supported_chains()
            )

        except Exception as e:
            logger.error("Failed to initialize indexer", error=str(e))
            raise

    async def start(self):
        """Start all watchers and block until shutdown is requested."""
        logger.info("Starting indexer service")

        self.running = True
        results = await self.manager.start_all()
        for result in results:
            if not result.success:
                logger.warning(
                    "Chain indexer did not start",
                    chain=result.chain_name,
                    error=result.error
                )

        self.tasks.append(asyncio.create_task(self._periodic_health_check()))

        logger.info("Indexer service started")
        await self._shutdown.wait()

    def request_shutdown(self):
        self._shutdown.set()

    async def stop(self):
        """Stop the indexer service."""
        logger.info("Stopping indexer service")

        self.running = False
        self._shutdown.set()

        # Cancel all tasks
        for task in self.tasks:
            if not task.done():
                task.cancel()

        # Wait for tasks to complete
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        if self.manager:
            await self.manager.shutdown()

        await close_database()
        logger.info("Indexer service stopped")

    async def _periodic_health_check(self):
        """Log a status summary every ``health_interval`` seconds."""
        while self.running:
            try:
                await asyncio.sleep(self.health_interval)

                if not self.running:
                    break

                summary = self.manager.get_manager_status()
                logger.info("Indexer health check", **summary)

                for status in self.manager.get_status():
                    if status.error:
                        logger.warning(
                            "Chain indexer unhealthy",
                            chain=status.chain_name,
                            status=status.status.value,
                            error=status.error
                        )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check error", error=str(e))


async def main():
    """Main function to run the indexer service."""
    setup_logging()

    indexer = IndexerMain()

    loop = asyncio.get_running_loop()

    def signal_handler(signum):
        logger.info(f"Received signal {signum}, shutting down...")
        indexer.request_shutdown()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)

    try:
        await indexer.initialize()
        await indexer.start()
    except Exception as e:
        logger.error("Indexer service failed", error=str(e))
        raise
    finally:
        await indexer.stop()


if __name__ == "__main__":
    asyncio.run(main())
