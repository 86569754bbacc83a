"""
Data store used by the event processor.
Wraps SQLAlchemy sessions in units of work whose inserts surface unique
constraint violations as ConflictError.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.core.exceptions import ConflictError
from paygate.models.invoice import Invoice, InvoiceStatus
from paygate.models.payment import Payment, PaymentStatus
from paygate.models.transaction import Transaction, TransactionType


class StoreSession:
    """Repository operations bound to one open database transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_payment_by_chain_and_hash(self, chain: str, tx_hash: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(
                Payment.external_chain == chain,
                Payment.tx_hash == tx_hash
            )
        )
        return result.scalar_one_or_none()

    async def find_pending_settlement(self, source_chain: str, source_tx_hash: str) -> Optional[Payment]:
        """Cross-chain settlement still waiting for its initiation to be indexed."""
        result = await self.session.execute(
            select(Payment).where(
                Payment.source_chain == source_chain,
                Payment.source_tx_hash == source_tx_hash,
                Payment.status == PaymentStatus.PENDING
            )
        )
        return result.scalars().first()

    async def insert_payment(self, payment: Payment) -> Payment:
        """Insert a payment; raises ConflictError if (chain, tx_hash) exists."""
        self.session.add(payment)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Payment already recorded: {payment.external_chain}/{payment.tx_hash}",
                {"chain": payment.external_chain, "tx_hash": payment.tx_hash}
            ) from e
        return payment

    async def confirm_payment(
        self,
        payment: Payment,
        payer: str,
        amount: Decimal,
        currency: str,
        confirmed_at: datetime
    ) -> Payment:
        """Fill in a pending settlement and mark it confirmed."""
        payment.payer = payer
        payment.amount = amount
        payment.currency = currency
        payment.status = PaymentStatus.CONFIRMED
        payment.confirmed_at = confirmed_at
        await self.session.flush()
        return payment

    async def find_invoice_by_id(self, invoice_id: str, for_update: bool = False) -> Optional[Invoice]:
        """
        Load an invoice.

        With ``for_update`` the row stays locked until the unit of work ends,
        on backends that support row locks.
        """
        if not for_update:
            return await self.session.get(Invoice, invoice_id)
        result = await self.session.execute(
            select(Invoice).where(Invoice.id == invoice_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def update_invoice_status(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        paid_at: Optional[datetime] = None
    ) -> bool:
        """
        Move an invoice to ``status`` unless it is already there.

        The check and the write are one UPDATE statement, so of several
        concurrent callers exactly one sees True.

        Returns:
            True if this call changed the row
        """
        values = {"status": status}
        if paid_at is not None:
            values["paid_at"] = paid_at

        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status != status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def find_transaction(
        self,
        chain: str,
        tx_hash: str,
        type: TransactionType
    ) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(
                Transaction.chain == chain,
                Transaction.tx_hash == tx_hash,
                Transaction.type == type
            )
        )
        return result.scalar_one_or_none()

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        """Insert a ledger entry; raises ConflictError if (chain, tx_hash, type) exists."""
        self.session.add(transaction)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Transaction already recorded: {transaction.chain}/{transaction.tx_hash}/{transaction.type.value}",
                {"chain": transaction.chain, "tx_hash": transaction.tx_hash, "type": transaction.type.value}
            ) from e
        return transaction


class PaymentStore:
    """Factory of units of work over a session maker."""

    session_class = StoreSession

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator[StoreSession, None]:
        """
        Open a transaction that commits on success and rolls back on any error.

        Usage:
            async with store.unit_of_work() as repo:
                await repo.insert_payment(payment)
        """
        async with self.session_maker() as session:
            async with session.begin():
                yield self.session_class(session)
