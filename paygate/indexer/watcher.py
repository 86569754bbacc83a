"""
Per-chain watcher combining a live log subscription with periodic backfill.
"""

import asyncio
from dataclasses import asdict
from typing import Optional

import structlog

from paygate.core.config import settings, ChainConfig
from paygate.core.exceptions import (
    ChainClientError, DecodeError, IndexerError, PaygateException
)
from paygate.models.base import utcnow
from paygate.services.chain_client import ChainClient, LogSubscription, RawLog
from paygate.services.event_decoder import EventDecoder

from .processor import EventProcessor
from .types import ChainStatus, IndexerStatus, ProcessingStats


logger = structlog.get_logger(__name__)


def _error_message(error: BaseException) -> str:
    if isinstance(error, PaygateException):
        return error.message
    return str(error) or type(error).__name__


class ChainWatcher:
    """
    Watches the gateway contract on one chain.

    Two sources feed the shared processor: a listener task draining the
    live subscription, and a backfill task that re-queries every block
    after ``last_processed_block`` on a fixed interval. Both may deliver
    the same log; the processor deduplicates.

    Each start opens a new generation. A backfill tick only moves the
    cursor if its generation is still current, so a slow tick left over
    from a previous start cannot touch the new cursor.
    """

    def __init__(
        self,
        config: ChainConfig,
        client: ChainClient,
        decoder: EventDecoder,
        processor: EventProcessor,
        backfill_window: Optional[int] = None,
        batch_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        stop_timeout: Optional[float] = None
    ):
        self.config = config
        self.client = client
        self.decoder = decoder
        self.processor = processor

        self.backfill_window = backfill_window if backfill_window is not None else settings.indexer_backfill_window
        self.batch_size = batch_size or settings.indexer_batch_size
        self.poll_interval = poll_interval if poll_interval is not None else settings.indexer_poll_interval
        self.stop_timeout = stop_timeout if stop_timeout is not None else settings.indexer_stop_timeout

        self.status = IndexerStatus.STOPPED
        self.last_processed_block: Optional[int] = None
        self.error: Optional[str] = None
        self.stats = ProcessingStats()

        self._generation = 0
        self._stop_event: Optional[asyncio.Event] = None
        self._subscription: Optional[LogSubscription] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._backfill_task: Optional[asyncio.Task] = None
        self._lifecycle_lock = asyncio.Lock()

        self.logger = logger.bind(
            service="chain_watcher",
            chain=config.name,
            chain_id=config.chain_id
        )

    @property
    def chain_id(self) -> int:
        return self.config.chain_id

    @property
    def chain_name(self) -> str:
        return self.config.name

    @property
    def is_running(self) -> bool:
        return self.status == IndexerStatus.RUNNING

    @property
    def generation(self) -> int:
        """Incremented on every start."""
        return self._generation

    async def start(self) -> None:
        """
        Start watching from ``max(0, height - backfill_window)``.

        Raises:
            IndexerError: the chain client could not connect, report the
                height, or open the subscription. The watcher is left FAILED.
        """
        async with self._lifecycle_lock:
            if self.status == IndexerStatus.RUNNING:
                self.logger.warning("Chain watcher already running")
                return

            # Leftovers from a failed generation
            await self._teardown()

            self.status = IndexerStatus.STARTING
            self.error = None
            self._generation += 1
            generation = self._generation
            self.stats = ProcessingStats(start_time=utcnow())
            stop_event = asyncio.Event()
            self._stop_event = stop_event

            self.logger.info("Starting chain watcher", generation=generation)

            try:
                await self.client.connect()
                height = await self.client.current_height()
                self.last_processed_block = max(0, height - self.backfill_window)
                self._subscription = await self.client.subscribe(self.decoder.topics)
            except Exception as e:
                self.status = IndexerStatus.FAILED
                self.error = _error_message(e)
                await self._close_subscription()
                self.logger.error("Failed to start chain watcher", error=self.error)
                raise IndexerError(
                    f"Failed to start watcher for {self.chain_name}: {self.error}",
                    {"chain_id": self.chain_id}
                ) from e

            self._listener_task = asyncio.create_task(
                self._listen(generation, self._subscription)
            )
            self._backfill_task = asyncio.create_task(
                self._backfill_loop(generation, stop_event)
            )

            self.status = IndexerStatus.RUNNING
            self.logger.info(
                "Chain watcher started",
                height=height,
                cursor=self.last_processed_block
            )

    async def stop(self) -> None:
        """Stop both tasks. Stopping a stopped watcher is a no-op."""
        async with self._lifecycle_lock:
            if self.status == IndexerStatus.STOPPED:
                return

            self.status = IndexerStatus.STOPPING
            self.logger.info("Stopping chain watcher")

            await self._teardown()

            self.status = IndexerStatus.STOPPED
            self.logger.info("Chain watcher stopped", cursor=self.last_processed_block)

    def get_status(self) -> ChainStatus:
        """Snapshot of state, cursor and counters."""
        return ChainStatus(
            chain_id=self.chain_id,
            chain_name=self.chain_name,
            status=self.status,
            is_running=self.is_running,
            last_processed_block=self.last_processed_block,
            error=self.error,
            stats=asdict(self.stats)
        )

    async def _teardown(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

        await self._close_subscription()

        listener, self._listener_task = self._listener_task, None
        if listener is not None and not listener.done() and listener is not asyncio.current_task():
            listener.cancel()
            await asyncio.wait({listener})

        backfill, self._backfill_task = self._backfill_task, None
        if backfill is not None and not backfill.done():
            done, _ = await asyncio.wait({backfill}, timeout=self.stop_timeout)
            if not done:
                # Its generation is stale once we restart, so it cannot move the cursor
                self.logger.warning(
                    "Backfill tick still running after stop timeout; detaching",
                    timeout=self.stop_timeout
                )

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except Exception as e:
            self.logger.warning("Failed to close subscription", error=str(e))

    async def _fail(self, generation: int, error: BaseException) -> None:
        """Mark the watcher FAILED after losing the live subscription."""
        if generation != self._generation or self.status != IndexerStatus.RUNNING:
            return

        self.status = IndexerStatus.FAILED
        self.error = _error_message(error)
        self.logger.error("Subscription lost; watcher failed", error=self.error)

        await self._teardown()

    async def _listen(self, generation: int, subscription: LogSubscription) -> None:
        """Forward every pushed log to the processor as soon as it arrives."""
        try:
            async for raw_log in subscription:
                self.stats.logs_from_subscription += 1
                await self._handle_log(raw_log)
        except ChainClientError as e:
            await self._fail(generation, e)
            return
        except Exception as e:
            self.logger.error("Subscription listener crashed", error=str(e), error_type=type(e).__name__)
            await self._fail(generation, e)
            return

        # The feed ended without being closed by us
        if self.status == IndexerStatus.RUNNING and generation == self._generation:
            await self._fail(generation, ChainClientError("Subscription ended unexpectedly"))

    async def _handle_log(self, raw_log: RawLog) -> None:
        """Decode and process one log; failures are counted and skipped."""
        try:
            event = self.decoder.decode(raw_log)
        except DecodeError as e:
            self.stats.decode_errors += 1
            self.logger.warning(
                "Skipping undecodable log",
                tx_hash=raw_log.tx_hash,
                log_index=raw_log.log_index,
                error=e.message
            )
            return

        try:
            outcome = await self.processor.process(event)
        except Exception as e:
            self.stats.processing_errors += 1
            self.logger.error(
                "Skipping log that failed processing",
                tx_hash=raw_log.tx_hash,
                log_index=raw_log.log_index,
                error=_error_message(e)
            )
            return

        self.stats.count_outcome(outcome)

    async def _backfill_loop(self, generation: int, stop_event: asyncio.Event) -> None:
        """Run a backfill tick every ``poll_interval`` until stopped."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                break
            except asyncio.TimeoutError:
                pass

            await self.backfill_tick(generation, stop_event)

    async def backfill_tick(self, generation: int, stop_event: asyncio.Event) -> bool:
        """
        Query ``[cursor + 1, height]`` in ``batch_size`` block ranges.

        The cursor moves to ``height`` only when every range was fetched and
        the generation is still current; otherwise it stays where it was and
        the next tick retries the whole range.

        Returns:
            True if the cursor was brought up to the chain head
        """
        self.stats.backfill_ticks += 1
        cursor = self.last_processed_block or 0

        try:
            height = await self.client.current_height()
            for batch_start in range(cursor + 1, height + 1, self.batch_size):
                if stop_event.is_set():
                    self.logger.debug("Backfill interrupted by stop", batch_start=batch_start)
                    return False

                batch_end = min(batch_start + self.batch_size - 1, height)
                logs = await self.client.query_logs(self.decoder.topics, batch_start, batch_end)
                for raw_log in logs:
                    self.stats.logs_from_backfill += 1
                    await self._handle_log(raw_log)
        except ChainClientError as e:
            self.stats.failed_ticks += 1
            self.logger.warning("Backfill tick failed; will retry", cursor=cursor, error=e.message)
            return False
        except Exception as e:
            self.stats.failed_ticks += 1
            self.logger.error(
                "Unexpected backfill error; will retry",
                cursor=cursor,
                error=str(e),
                error_type=type(e).__name__
            )
            return False

        if generation != self._generation:
            self.logger.debug("Discarding stale backfill tick", generation=generation)
            return False

        self.last_processed_block = max(self.last_processed_block or 0, height)
        self.stats.last_tick_at = utcnow()
        return True
