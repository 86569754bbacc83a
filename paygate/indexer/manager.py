"""
Indexer manager: owns one chain watcher per configured chain.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from paygate.core.config import settings, ChainConfig, GatewayConfig, Settings
from paygate.core.exceptions import PaygateException, UnknownChainError
from paygate.services.chain_client import ChainClient, EvmChainClient
from paygate.services.event_decoder import EventDecoder
from paygate.services.payment_store import PaymentStore

from .processor import EventProcessor
from .types import ChainOperationResult, ChainStatus
from .watcher import ChainWatcher


logger = structlog.get_logger(__name__)


ClientFactory = Callable[[ChainConfig], ChainClient]


class IndexerManager:
    """
    Fleet controller for chain watchers.

    Built once per process and handed to whoever needs it (API app state,
    standalone runner). Fleet operations fan out concurrently and report a
    result per chain; one chain failing never blocks the others.
    """

    def __init__(
        self,
        watchers: List[ChainWatcher],
        restart_delay: Optional[float] = None
    ):
        self.watchers: Dict[int, ChainWatcher] = {w.chain_id: w for w in watchers}
        self.restart_delay = restart_delay if restart_delay is not None else settings.indexer_restart_delay
        self.logger = logger.bind(service="indexer_manager")

    @classmethod
    def from_settings(
        cls,
        store: PaymentStore,
        config: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
        decoder: Optional[EventDecoder] = None
    ) -> "IndexerManager":
        """
        Build watchers for every chain in the configuration.

        All watchers share one decoder and one processor; each chain's
        client is registered with the processor for receipt lookups.
        """
        config = config or settings
        client_factory = client_factory or EvmChainClient
        decoder = decoder or EventDecoder()
        processor = EventProcessor(store)

        watchers = []
        for chain_config in GatewayConfig.get_chain_configs(config):
            client = client_factory(chain_config)
            processor.register_client(client)
            watchers.append(
                ChainWatcher(
                    chain_config,
                    client,
                    decoder,
                    processor,
                    backfill_window=config.indexer_backfill_window,
                    batch_size=config.indexer_batch_size,
                    poll_interval=config.indexer_poll_interval,
                    stop_timeout=config.indexer_stop_timeout,
                )
            )

        manager = cls(watchers, restart_delay=config.indexer_restart_delay)
        manager.logger.info(
            "Indexer manager configured",
            chains=[w.chain_name for w in watchers]
        )
        return manager

    def _get_watcher(self, chain_id: int) -> ChainWatcher:
        watcher = self.watchers.get(chain_id)
        if watcher is None:
            raise UnknownChainError(chain_id)
        return watcher

    async def _fan_out(
        self,
        operation: Callable[[ChainWatcher], Awaitable[Any]],
        action: str
    ) -> List[ChainOperationResult]:
        watchers = list(self.watchers.values())
        results = await asyncio.gather(
            *(operation(watcher) for watcher in watchers),
            return_exceptions=True
        )

        outcome = []
        for watcher, result in zip(watchers, results):
            if isinstance(result, BaseException):
                error = result.message if isinstance(result, PaygateException) else str(result)
                self.logger.error(
                    f"Failed to {action} indexer",
                    chain=watcher.chain_name,
                    chain_id=watcher.chain_id,
                    error=error
                )
                outcome.append(ChainOperationResult(watcher.chain_id, watcher.chain_name, False, error))
            else:
                outcome.append(ChainOperationResult(watcher.chain_id, watcher.chain_name, True))

        succeeded = sum(1 for r in outcome if r.success)
        self.logger.info(
            f"Indexer {action} complete",
            succeeded=succeeded,
            failed=len(outcome) - succeeded
        )
        return outcome

    async def start_all(self) -> List[ChainOperationResult]:
        """Start every watcher concurrently."""
        self.logger.info("Starting all indexers", total=len(self.watchers))
        return await self._fan_out(lambda w: w.start(), "start")

    async def stop_all(self) -> List[ChainOperationResult]:
        """Stop every watcher concurrently."""
        self.logger.info("Stopping all indexers", total=len(self.watchers))
        return await self._fan_out(lambda w: w.stop(), "stop")

    async def restart_all(self) -> List[ChainOperationResult]:
        """Stop everything, wait ``restart_delay``, start everything."""
        await self.stop_all()
        await asyncio.sleep(self.restart_delay)
        return await self.start_all()

    async def start_indexer(self, chain_id: int) -> None:
        """Start one watcher. Raises UnknownChainError for unconfigured chains."""
        watcher = self._get_watcher(chain_id)
        await watcher.start()

    async def stop_indexer(self, chain_id: int) -> None:
        """Stop one watcher. Raises UnknownChainError for unconfigured chains."""
        watcher = self._get_watcher(chain_id)
        await watcher.stop()

    def get_status(self) -> List[ChainStatus]:
        return [watcher.get_status() for watcher in self.watchers.values()]

    def get_supported_chains(self) -> List[int]:
        return sorted(self.watchers)

    def is_indexer_running(self, chain_id: int) -> bool:
        watcher = self.watchers.get(chain_id)
        return watcher is not None and watcher.is_running

    def get_manager_status(self) -> Dict[str, Any]:
        """Fleet summary for health checks."""
        running = sum(1 for w in self.watchers.values() if w.is_running)
        return {
            "is_running": running > 0,
            "total_indexers": len(self.watchers),
            "running_indexers": running,
        }

    async def shutdown(self) -> None:
        """Stop every watcher and close their chain clients."""
        await self.stop_all()
        for watcher in self.watchers.values():
            try:
                await watcher.client.close()
            except Exception as e:
                self.logger.warning(
                    "Failed to close chain client",
                    chain=watcher.chain_name,
                    error=str(e)
                )
        self.logger.info("Indexer manager shutdown complete")
