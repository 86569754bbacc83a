"""
Transaction model - the per-application ledger.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    String, Numeric, BigInteger, Index, JSON, UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin
from .invoice import enum_values


class TransactionType(Enum):
    """Ledger entry types."""
    PAYMENT = "payment"
    WITHDRAWAL = "withdrawal"
    FEE = "fee"


class TransactionStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Transaction(BaseModel, TimestampMixin):
    """Ledger entry derived from a gateway contract event."""

    __tablename__ = "transactions"

    app_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        comment="Application the entry belongs to"
    )

    type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType, name="transactiontype", values_callable=enum_values),
        comment="Ledger entry type"
    )

    chain: Mapped[str] = mapped_column(String(32), comment="Chain name")

    tx_hash: Mapped[str] = mapped_column(String(66), comment="Transaction hash")

    amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 18),
        comment="Amount in currency units"
    )

    currency: Mapped[str] = mapped_column(String(16), comment="Currency symbol")

    fee: Mapped[Decimal] = mapped_column(
        Numeric(38, 18),
        default=Decimal("0"),
        comment="Fee charged in native units"
    )

    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(TransactionStatus, name="transactionstatus", values_callable=enum_values),
        default=TransactionStatus.CONFIRMED,
        comment="Entry status"
    )

    block_number: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        comment="Block containing the event"
    )

    from_address: Mapped[Optional[str]] = mapped_column(String(42), comment="Sender")

    to_address: Mapped[Optional[str]] = mapped_column(String(42), comment="Recipient")

    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata",
        JSON,
        comment="Event specific metadata"
    )

    __table_args__ = (
        UniqueConstraint("chain", "tx_hash", "type", name="uq_transaction_chain_tx_type"),
        Index("idx_transaction_app_type", "app_id", "type"),
    )

    def __repr__(self) -> str:
        return f"<Transaction(type={self.type.value}, chain={self.chain}, tx={self.tx_hash[:10]}...)>"
