"""
Event decoder for gateway contract logs.
Turns raw EVM logs into typed domain events.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from paygate.core.config import GatewayConfig
from paygate.core.exceptions import DecodeError
from paygate.services.chain_client import RawLog
from paygate.utils.amounts import to_decimal_amount


class EventType(Enum):
    """Gateway contract events."""
    PAYMENT_RECEIVED = "PaymentReceived"
    WITHDRAWAL_EXECUTED = "WithdrawalExecuted"
    FEE_COLLECTED = "FeeCollected"
    CROSS_CHAIN_PAYMENT_INITIATED = "CrossChainPaymentInitiated"
    CROSS_CHAIN_PAYMENT_COMPLETED = "CrossChainPaymentCompleted"


def _hex_prefixed(value) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    text = text.lower()
    return text if text.startswith("0x") else f"0x{text}"


def event_topic(event_type: EventType) -> str:
    """keccak256 of the canonical event signature, as a 0x-prefixed hex string."""
    signature = GatewayConfig.EVENT_SIGNATURES[event_type.value]
    return _hex_prefixed(Web3.keccak(text=signature))


def _topic_to_address(topic: str) -> str:
    return Web3.to_checksum_address(f"0x{topic[-40:]}")


@dataclass(frozen=True)
class GatewayEvent:
    """Location of a decoded event on its chain."""
    chain_id: int
    chain: str
    contract_address: str
    tx_hash: str
    block_number: int
    block_hash: Optional[str]
    log_index: int

    @property
    def event_type(self) -> EventType:
        return _EVENT_CLASSES[type(self)]


@dataclass(frozen=True)
class PaymentReceived(GatewayEvent):
    invoice_id: str
    payer: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class WithdrawalExecuted(GatewayEvent):
    app_id: str
    recipient: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class FeeCollected(GatewayEvent):
    app_id: str
    platform_fee: Decimal
    network_fee: Decimal
    currency: str

    @property
    def total_fee(self) -> Decimal:
        return self.platform_fee + self.network_fee


@dataclass(frozen=True)
class CrossChainPaymentInitiated(GatewayEvent):
    invoice_id: str
    payer: str
    amount: Decimal
    currency: str
    target_chain_id: int


@dataclass(frozen=True)
class CrossChainPaymentCompleted(GatewayEvent):
    """Settlement of a cross-chain payment.

    ``source_tx_hash`` is the initiating transaction on ``source_chain_id``;
    ``tx_hash`` is the settlement transaction carrying this log.
    """
    invoice_id: str
    source_tx_hash: str
    source_chain_id: int


_EVENT_CLASSES = {
    PaymentReceived: EventType.PAYMENT_RECEIVED,
    WithdrawalExecuted: EventType.WITHDRAWAL_EXECUTED,
    FeeCollected: EventType.FEE_COLLECTED,
    CrossChainPaymentInitiated: EventType.CROSS_CHAIN_PAYMENT_INITIATED,
    CrossChainPaymentCompleted: EventType.CROSS_CHAIN_PAYMENT_COMPLETED,
}


class EventDecoder:
    """
    Stateless decoder from RawLog to GatewayEvent.

    Identifiers and currencies travel in the data section; indexed topics
    carry only addresses and the cross-chain source hash.
    """

    def __init__(self, decimals_for: Callable[[str], int] = GatewayConfig.get_currency_decimals):
        self.decimals_for = decimals_for
        self._topics: Dict[str, EventType] = {
            event_topic(event_type): event_type for event_type in EventType
        }
        self._decoders = {
            EventType.PAYMENT_RECEIVED: self._decode_payment_received,
            EventType.WITHDRAWAL_EXECUTED: self._decode_withdrawal_executed,
            EventType.FEE_COLLECTED: self._decode_fee_collected,
            EventType.CROSS_CHAIN_PAYMENT_INITIATED: self._decode_cross_chain_initiated,
            EventType.CROSS_CHAIN_PAYMENT_COMPLETED: self._decode_cross_chain_completed,
        }

    @property
    def topics(self) -> List[str]:
        """topic0 values of every gateway event, for subscriptions and queries."""
        return list(self._topics)

    def decode(self, raw_log: RawLog) -> GatewayEvent:
        """
        Decode one raw log.

        Raises:
            DecodeError: unknown signature, removed log, or malformed arguments
        """
        details = {"chain_id": raw_log.chain_id, "tx_hash": raw_log.tx_hash, "log_index": raw_log.log_index}

        if raw_log.removed:
            raise DecodeError("Log was removed by a chain reorganization", details)
        if not raw_log.topics:
            raise DecodeError("Log has no topics", details)

        event_type = self._topics.get(raw_log.topics[0].lower())
        if event_type is None:
            raise DecodeError(f"Unknown event signature: {raw_log.topics[0]}", details)

        try:
            return self._decoders[event_type](raw_log)
        except DecodeError:
            raise
        except (DecodingError, ValueError, TypeError, IndexError) as e:
            raise DecodeError(f"Malformed {event_type.value} log: {e}", details) from e

    def _location(self, raw_log: RawLog) -> dict:
        return {
            "chain_id": raw_log.chain_id,
            "chain": GatewayConfig.get_chain_name(raw_log.chain_id),
            "contract_address": Web3.to_checksum_address(raw_log.address),
            "tx_hash": raw_log.tx_hash.lower(),
            "block_number": raw_log.block_number,
            "block_hash": raw_log.block_hash,
            "log_index": raw_log.log_index,
        }

    @staticmethod
    def _expect_topics(raw_log: RawLog, count: int) -> Sequence[str]:
        if len(raw_log.topics) != count:
            raise DecodeError(
                f"Expected {count} topics, got {len(raw_log.topics)}",
                {"tx_hash": raw_log.tx_hash}
            )
        return raw_log.topics

    def _amount(self, raw: int, currency: str) -> Decimal:
        return to_decimal_amount(raw, self.decimals_for(currency))

    def _decode_payment_received(self, raw_log: RawLog) -> PaymentReceived:
        topics = self._expect_topics(raw_log, 2)
        invoice_id, amount, currency = decode(["string", "uint256", "string"], raw_log.data)
        return PaymentReceived(
            **self._location(raw_log),
            invoice_id=invoice_id,
            payer=_topic_to_address(topics[1]),
            amount=self._amount(amount, currency),
            currency=currency,
        )

    def _decode_withdrawal_executed(self, raw_log: RawLog) -> WithdrawalExecuted:
        topics = self._expect_topics(raw_log, 2)
        app_id, amount, currency = decode(["string", "uint256", "string"], raw_log.data)
        return WithdrawalExecuted(
            **self._location(raw_log),
            app_id=app_id,
            recipient=_topic_to_address(topics[1]),
            amount=self._amount(amount, currency),
            currency=currency,
        )

    def _decode_fee_collected(self, raw_log: RawLog) -> FeeCollected:
        self._expect_topics(raw_log, 1)
        app_id, platform_fee, network_fee, currency = decode(
            ["string", "uint256", "uint256", "string"], raw_log.data
        )
        return FeeCollected(
            **self._location(raw_log),
            app_id=app_id,
            platform_fee=self._amount(platform_fee, currency),
            network_fee=self._amount(network_fee, currency),
            currency=currency,
        )

    def _decode_cross_chain_initiated(self, raw_log: RawLog) -> CrossChainPaymentInitiated:
        topics = self._expect_topics(raw_log, 2)
        invoice_id, amount, currency, target_chain_id = decode(
            ["string", "uint256", "string", "uint256"], raw_log.data
        )
        return CrossChainPaymentInitiated(
            **self._location(raw_log),
            invoice_id=invoice_id,
            payer=_topic_to_address(topics[1]),
            amount=self._amount(amount, currency),
            currency=currency,
            target_chain_id=target_chain_id,
        )

    def _decode_cross_chain_completed(self, raw_log: RawLog) -> CrossChainPaymentCompleted:
        topics = self._expect_topics(raw_log, 2)
        invoice_id, source_chain_id = decode(["string", "uint256"], raw_log.data)
        return CrossChainPaymentCompleted(
            **self._location(raw_log),
            invoice_id=invoice_id,
            source_tx_hash=topics[1].lower(),
            source_chain_id=source_chain_id,
        )
