"""
Database models for the paygate indexer.

Invoices are owned by the gateway API; payments and ledger transactions
are written by the event processor.
"""

from .base import Base, BaseModel, TimestampMixin
from .invoice import Invoice, InvoiceStatus
from .payment import Payment, PaymentStatus
from .transaction import Transaction, TransactionType, TransactionStatus

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "Invoice",
    "InvoiceStatus",
    "Payment",
    "PaymentStatus",
    "Transaction",
    "TransactionType",
    "TransactionStatus",
]
