"""
Shared fixtures: a SQLite-backed store and invoice factory.
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from decimal import Decimal

import pytest

from paygate.core.database import init_database, close_database, DatabaseManager
from paygate.models.invoice import Invoice, InvoiceStatus
from paygate.services.payment_store import PaymentStore


@pytest.fixture
async def session_maker(tmp_path):
    """Fresh SQLite database with every table created."""
    maker = await init_database(f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}")
    await DatabaseManager.create_tables()
    yield maker
    await close_database()


@pytest.fixture
def store(session_maker):
    return PaymentStore(session_maker)


@pytest.fixture
def create_invoice(session_maker):
    """Insert an invoice and return its id."""
    async def _create(
        amount: str = "10",
        currency: str = "USDC",
        app_id: str = "app-1",
        status: InvoiceStatus = InvoiceStatus.PENDING
    ) -> str:
        async with session_maker() as session:
            invoice = Invoice(
                app_id=app_id,
                amount=Decimal(amount),
                currency=currency,
                status=status,
            )
            session.add(invoice)
            await session.commit()
            return invoice.id

    return _create
