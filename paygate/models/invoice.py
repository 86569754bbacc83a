"""
Invoice model - amounts owed to an application, settled on-chain.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    String, Numeric, Text, DateTime, Index, JSON, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


def enum_values(enum_cls) -> list:
    """Persist enum members by their lowercase value."""
    return [member.value for member in enum_cls]


class InvoiceStatus(Enum):
    """Invoice settlement status."""
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Invoice(BaseModel, TimestampMixin):
    """Invoice issued by an application.

    Invoices are created by the gateway API; the indexer only moves them
    from an unpaid status to ``paid``.
    """

    __tablename__ = "invoices"

    app_id: Mapped[str] = mapped_column(
        String(64),
        comment="Owning application"
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 18),
        comment="Amount due in currency units"
    )

    currency: Mapped[str] = mapped_column(
        String(16),
        comment="Currency symbol"
    )

    external_chain: Mapped[Optional[str]] = mapped_column(
        String(32),
        comment="Chain the payer is expected to settle on"
    )

    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus, name="invoicestatus", values_callable=enum_values),
        default=InvoiceStatus.PENDING,
        comment="Settlement status"
    )

    memo: Mapped[Optional[str]] = mapped_column(Text, comment="Free-form memo")

    due_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="Payment due date"
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="When a sufficient payment was recorded"
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="Expiry time"
    )

    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata",
        JSON,
        comment="Application supplied metadata"
    )

    __table_args__ = (
        Index("idx_invoice_app_status", "app_id", "status"),
        Index("idx_invoice_created", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, amount={self.amount} {self.currency}, status={self.status.value})>"

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID
