"""
EVM JSON-RPC client for gateway contract logs.
Provides block height, historical log queries, receipt lookups and live
log subscriptions over WebSocket or filter polling.
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

import aiohttp
import structlog
import websockets
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from paygate.core.config import settings, ChainConfig
from paygate.core.exceptions import (
    ChainClientError, ConfigurationError, SubscriptionLostError
)


logger = structlog.get_logger(__name__)


def _to_hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value)
    if text.startswith(("0x", "0X")):
        return int(text, 16)
    return int(text)


@dataclass(frozen=True)
class RawLog:
    """A contract log as delivered by a node, normalized to hex strings."""
    chain_id: int
    address: str
    topics: Tuple[str, ...]
    data: bytes
    block_number: int
    block_hash: Optional[str]
    tx_hash: str
    log_index: int
    removed: bool = False

    @classmethod
    def from_rpc(cls, chain_id: int, log: Mapping[str, Any]) -> "RawLog":
        """Build from a web3 AttributeDict or a raw JSON-RPC log object."""
        return cls(
            chain_id=chain_id,
            address=str(log["address"]),
            topics=tuple(_to_hex(topic) for topic in log.get("topics", [])),
            data=_to_bytes(log.get("data")),
            block_number=_to_int(log["blockNumber"]),
            block_hash=_to_hex(log.get("blockHash")),
            tx_hash=_to_hex(log["transactionHash"]),
            log_index=_to_int(log.get("logIndex", 0)),
            removed=bool(log.get("removed", False)),
        )


@dataclass(frozen=True)
class TransactionReceipt:
    """Gas details of a mined transaction."""
    gas_used: int
    effective_gas_price: int


class LogSubscription(ABC):
    """Async iterator over logs pushed by a live subscription."""

    def __aiter__(self) -> "LogSubscription":
        return self

    @abstractmethod
    async def __anext__(self) -> RawLog:
        """Next log; raises SubscriptionLostError when the feed drops."""

    @abstractmethod
    async def close(self) -> None:
        """Release the subscription. Iteration ends after close."""


class ChainClient(ABC):
    """Contract every chain adapter provides to the watchers."""

    chain_id: int

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def current_height(self) -> int:
        ...

    @abstractmethod
    async def query_logs(
        self,
        topics: Sequence[str],
        from_block: int,
        to_block: int
    ) -> List[RawLog]:
        ...

    @abstractmethod
    async def subscribe(self, topics: Sequence[str]) -> LogSubscription:
        ...

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        ...


class WebSocketLogSubscription(LogSubscription):
    """eth_subscribe("logs") over a dedicated WebSocket connection."""

    def __init__(self, chain_id: int, ws_url: str, filter_params: Dict[str, Any], timeout: float):
        self.chain_id = chain_id
        self.ws_url = ws_url
        self.filter_params = filter_params
        self.timeout = timeout
        self.subscription_id: Optional[str] = None
        self._websocket = None
        self._closed = False
        self.logger = logger.bind(service="ws_subscription", chain_id=chain_id)

    async def open(self) -> "WebSocketLogSubscription":
        """
        Connect and wait for the subscription confirmation.

        Both steps are bounded by ``timeout``. On any failure the socket is
        closed and ChainClientError is raised.
        """
        try:
            self._websocket = await websockets.connect(
                self.ws_url,
                open_timeout=self.timeout,
                ping_interval=30,
                ping_timeout=10,
                close_timeout=5,
                max_size=None
            )
        except websockets.exceptions.InvalidURI as e:
            raise ChainClientError(f"Invalid WebSocket URI: {self.ws_url} - {e}")
        except asyncio.TimeoutError:
            raise ChainClientError(
                f"WebSocket connect timed out after {self.timeout}s",
                {"chain_id": self.chain_id}
            )
        except OSError as e:
            raise ChainClientError(f"WebSocket endpoint not available: {e}")

        request_id = str(uuid.uuid4())
        try:
            await self._websocket.send(json.dumps({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": "eth_subscribe",
                "params": ["logs", self.filter_params]
            }))
            self.subscription_id = await asyncio.wait_for(
                self._await_confirmation(request_id), self.timeout
            )
        except asyncio.TimeoutError:
            await self._websocket.close()
            raise ChainClientError(
                f"No subscription confirmation within {self.timeout}s",
                {"chain_id": self.chain_id}
            )
        except websockets.exceptions.ConnectionClosed as e:
            await self._websocket.close()
            raise ChainClientError(f"WebSocket closed during subscribe: {e}", {"chain_id": self.chain_id})
        except json.JSONDecodeError as e:
            await self._websocket.close()
            raise ChainClientError(f"Unreadable subscription response: {e}", {"chain_id": self.chain_id})
        except ChainClientError:
            await self._websocket.close()
            raise

        self.logger.info("Log subscription confirmed", subscription_id=self.subscription_id)
        return self

    async def _await_confirmation(self, request_id: str) -> Optional[str]:
        while True:
            message = json.loads(await self._websocket.recv())
            if message.get("id") != request_id:
                continue
            if "error" in message:
                raise ChainClientError(
                    f"Subscription rejected: {message['error']}",
                    {"chain_id": self.chain_id}
                )
            return message.get("result")

    async def __anext__(self) -> RawLog:
        while True:
            if self._closed:
                raise StopAsyncIteration
            try:
                raw_message = await self._websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                if self._closed:
                    raise StopAsyncIteration
                raise SubscriptionLostError(
                    f"WebSocket connection closed: {e}",
                    {"chain_id": self.chain_id}
                ) from e

            try:
                message = json.loads(raw_message)
            except json.JSONDecodeError as e:
                self.logger.error("Failed to parse WebSocket message", error=str(e))
                continue

            if message.get("method") == "eth_subscription":
                return RawLog.from_rpc(self.chain_id, message["params"]["result"])

            if "error" in message:
                raise SubscriptionLostError(
                    f"Subscription error: {message['error']}",
                    {"chain_id": self.chain_id}
                )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._websocket is not None:
            await self._websocket.close()


class FilterLogSubscription(LogSubscription):
    """Polls an eth_newFilter log filter for nodes without WebSocket support."""

    def __init__(
        self,
        chain_id: int,
        w3: AsyncWeb3,
        filter_params: Dict[str, Any],
        poll_interval: float
    ):
        self.chain_id = chain_id
        self.w3 = w3
        self.filter_params = filter_params
        self.poll_interval = poll_interval
        self._filter = None
        self._pending: Deque[RawLog] = deque()
        self._closed = False
        self.logger = logger.bind(service="filter_subscription", chain_id=chain_id)

    async def open(self) -> "FilterLogSubscription":
        try:
            self._filter = await self.w3.eth.filter(self.filter_params)
        except Exception as e:
            raise ChainClientError(f"Failed to install log filter: {e}", {"chain_id": self.chain_id})
        self.logger.info("Log filter installed", filter_id=self._filter.filter_id)
        return self

    async def __anext__(self) -> RawLog:
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._pending:
                return self._pending.popleft()

            try:
                entries = await self._filter.get_new_entries()
            except Exception as e:
                if self._closed:
                    raise StopAsyncIteration
                raise SubscriptionLostError(
                    f"Log filter polling failed: {e}",
                    {"chain_id": self.chain_id}
                ) from e

            self._pending.extend(RawLog.from_rpc(self.chain_id, entry) for entry in entries)
            if not self._pending:
                await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._filter is None:
            return
        try:
            await self.w3.eth.uninstall_filter(self._filter.filter_id)
        except Exception as e:
            # Nodes expire idle filters on their own
            self.logger.warning("Failed to uninstall log filter", error=str(e))


class EvmChainClient(ChainClient):
    """
    Async web3 client bound to one chain and one gateway contract.

    Queries go over HTTP; live logs use eth_subscribe when a WebSocket URL
    is configured, otherwise an eth_newFilter polling loop.
    """

    def __init__(
        self,
        config: ChainConfig,
        timeout: Optional[float] = None,
        filter_poll_interval: Optional[float] = None
    ):
        self.config = config
        self.chain_id = config.chain_id
        self.timeout = timeout or settings.rpc_timeout
        self.filter_poll_interval = filter_poll_interval or settings.indexer_filter_poll_interval
        self.w3: Optional[AsyncWeb3] = None
        self.logger = logger.bind(service="chain_client", chain=config.name, chain_id=config.chain_id)

    @property
    def contract_address(self) -> str:
        return AsyncWeb3.to_checksum_address(self.config.contract_address)

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self) -> None:
        """Create the HTTP provider; verifies the contract address is usable."""
        if not self.config.contract_address:
            raise ConfigurationError(
                f"Gateway contract address not configured for {self.config.name}",
                {"chain_id": self.chain_id}
            )
        if not AsyncWeb3.is_address(self.config.contract_address):
            raise ConfigurationError(
                f"Invalid gateway contract address for {self.config.name}: {self.config.contract_address}",
                {"chain_id": self.chain_id}
            )
        if self.w3 is not None:
            return

        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                self.config.rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=self.timeout)}
            )
        )
        self.logger.info("Chain client connected", rpc_url=self.config.rpc_url)

    async def close(self) -> None:
        """Close the HTTP provider session."""
        if self.w3 is None:
            return
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
        self.w3 = None
        self.logger.info("Chain client closed")

    def _require_connection(self) -> AsyncWeb3:
        if self.w3 is None:
            raise ChainClientError(
                f"Chain client for {self.config.name} is not connected",
                {"chain_id": self.chain_id}
            )
        return self.w3

    def _filter_params(self, topics: Sequence[str], **block_range: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "address": self.contract_address,
            "topics": [list(topics)],
        }
        params.update(block_range)
        return params

    async def get_health(self) -> bool:
        """Check if the RPC endpoint answers."""
        try:
            return await self._require_connection().is_connected()
        except Exception as e:
            self.logger.error("Health check failed", error=str(e))
            return False

    async def current_height(self) -> int:
        """Get the latest block number."""
        w3 = self._require_connection()
        try:
            return await w3.eth.block_number
        except Exception as e:
            self.logger.error("Failed to get block number", error=str(e))
            raise ChainClientError(f"Failed to get block number: {e}", {"chain_id": self.chain_id})

    async def query_logs(
        self,
        topics: Sequence[str],
        from_block: int,
        to_block: int
    ) -> List[RawLog]:
        """Get gateway logs matching any of ``topics`` in an inclusive block range."""
        w3 = self._require_connection()
        params = self._filter_params(topics, fromBlock=from_block, toBlock=to_block)
        try:
            logs = await w3.eth.get_logs(params)
        except Exception as e:
            self.logger.error(
                "Failed to get logs",
                from_block=from_block,
                to_block=to_block,
                error=str(e)
            )
            raise ChainClientError(
                f"Failed to get logs for blocks {from_block}-{to_block}: {e}",
                {"chain_id": self.chain_id, "from_block": from_block, "to_block": to_block}
            )
        return [RawLog.from_rpc(self.chain_id, log) for log in logs]

    async def subscribe(self, topics: Sequence[str]) -> LogSubscription:
        """Open a live subscription for gateway logs matching ``topics``."""
        params = self._filter_params(topics)
        if self.config.websocket_url:
            subscription = WebSocketLogSubscription(
                self.chain_id,
                self.config.websocket_url,
                params,
                self.timeout
            )
        else:
            subscription = FilterLogSubscription(
                self.chain_id,
                self._require_connection(),
                params,
                self.filter_poll_interval
            )
        return await subscription.open()

    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        """Get gas details for a transaction, or None if the node has no receipt."""
        w3 = self._require_connection()
        try:
            receipt = await w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            self.logger.warning("Failed to get receipt", tx_hash=tx_hash, error=str(e))
            raise ChainClientError(f"Failed to get receipt: {e}", {"chain_id": self.chain_id})

        if receipt is None:
            return None
        return TransactionReceipt(
            gas_used=int(receipt["gasUsed"]),
            effective_gas_price=int(receipt.get("effectiveGasPrice") or 0)
        )
