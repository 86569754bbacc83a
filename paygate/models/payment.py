"""
Payment model - one on-chain settlement observed by the indexer.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    String, Numeric, BigInteger, DateTime, ForeignKey, Index, JSON,
    UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, utcnow
from .invoice import enum_values


class PaymentStatus(Enum):
    """Payment confirmation status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Payment(BaseModel):
    """Payment recorded from a gateway contract event."""

    __tablename__ = "payments"

    invoice_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("invoices.id"),
        comment="Invoice being settled"
    )

    external_chain: Mapped[str] = mapped_column(
        String(32),
        comment="Chain the payment was observed on"
    )

    tx_hash: Mapped[str] = mapped_column(
        String(66),
        comment="Transaction hash"
    )

    payer: Mapped[Optional[str]] = mapped_column(
        String(42),
        comment="Payer address; unknown until a cross-chain completion is paired"
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 18),
        comment="Amount paid in currency units"
    )

    currency: Mapped[str] = mapped_column(String(16), comment="Currency symbol")

    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus, name="paymentstatus", values_callable=enum_values),
        default=PaymentStatus.PENDING,
        comment="Confirmation status"
    )

    block_number: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        comment="Block containing the event"
    )

    block_hash: Mapped[Optional[str]] = mapped_column(
        String(66),
        comment="Hash of the block containing the event"
    )

    gas_used: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        default=0,
        comment="Gas used by the transaction"
    )

    gas_fee: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(38, 18),
        default=Decimal("0"),
        comment="Gas fee in native units"
    )

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        comment="When the indexer recorded the payment"
    )

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="When the payment was confirmed"
    )

    source_chain: Mapped[Optional[str]] = mapped_column(
        String(32),
        comment="Chain of the initiating transaction, for cross-chain settlements"
    )

    source_tx_hash: Mapped[Optional[str]] = mapped_column(
        String(66),
        comment="Initiating transaction hash, for cross-chain settlements"
    )

    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata",
        JSON,
        comment="Event specific metadata"
    )

    __table_args__ = (
        UniqueConstraint("external_chain", "tx_hash", name="uq_payment_chain_tx"),
        Index("idx_payment_invoice", "invoice_id"),
        Index("idx_payment_status", "status"),
        Index("idx_payment_source", "source_chain", "source_tx_hash"),
    )

    def __repr__(self) -> str:
        return f"<Payment(chain={self.external_chain}, tx={self.tx_hash[:10]}..., amount={self.amount})>"

    @property
    def is_cross_chain(self) -> bool:
        return (self.metadata_json or {}).get("type") == "cross-chain"
