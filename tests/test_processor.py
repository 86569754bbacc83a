"""
Test the event processor against a SQLite store.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from paygate.core.exceptions import ChainClientError
from paygate.indexer.processor import EventProcessor
from paygate.indexer.types import ProcessingOutcome
from paygate.models.invoice import Invoice, InvoiceStatus
from paygate.models.payment import Payment, PaymentStatus
from paygate.models.transaction import Transaction, TransactionType
from paygate.services.chain_client import TransactionReceipt
from paygate.services.event_decoder import EventDecoder
from paygate.services.payment_store import PaymentStore, StoreSession

from fakes import (
    ETHEREUM_CHAIN_ID, GATEWAY, PAYER, PUSH_CHAIN_ID, RECIPIENT, FakeChainClient,
    completed_log, fee_log, initiated_log, payment_log, withdrawal_log,
)


decoder = EventDecoder()


@pytest.fixture
def push_client():
    return FakeChainClient(PUSH_CHAIN_ID)


@pytest.fixture
def processor(store, push_client):
    return EventProcessor(store, {PUSH_CHAIN_ID: push_client})


async def fetch_all(session_maker, model):
    async with session_maker() as session:
        result = await session.execute(select(model))
        return list(result.scalars().all())


async def fetch_invoice(session_maker, invoice_id):
    async with session_maker() as session:
        return await session.get(Invoice, invoice_id)


async def test_payment_marks_invoice_paid(processor, push_client, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="10")
    raw = payment_log(invoice_id, 10_000_000)
    push_client.receipts[raw.tx_hash] = TransactionReceipt(gas_used=21_000, effective_gas_price=2 * 10 ** 9)

    outcome = await processor.process(decoder.decode(raw))

    assert outcome == ProcessingOutcome.RECORDED

    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_at is not None

    payments = await fetch_all(session_maker, Payment)
    assert len(payments) == 1
    payment = payments[0]
    assert payment.status == PaymentStatus.CONFIRMED
    assert payment.external_chain == "push-chain"
    assert payment.tx_hash == raw.tx_hash
    assert payment.payer == PAYER
    assert payment.amount == Decimal("10")
    assert payment.gas_used == 21_000
    assert payment.gas_fee == Decimal("0.000042")
    assert payment.confirmed_at is not None

    transactions = await fetch_all(session_maker, Transaction)
    assert len(transactions) == 1
    ledger = transactions[0]
    assert ledger.type == TransactionType.PAYMENT
    assert ledger.app_id == "app-1"
    assert ledger.from_address == PAYER
    assert ledger.to_address == GATEWAY
    assert ledger.fee == Decimal("0.000042")
    assert ledger.metadata_json["payment_id"] == payment.id


async def test_duplicate_delivery_is_recorded_once(processor, session_maker, create_invoice):
    invoice_id = await create_invoice()
    event = decoder.decode(payment_log(invoice_id, 10_000_000))

    first = await processor.process(event)
    second = await processor.process(event)

    assert first == ProcessingOutcome.RECORDED
    assert second == ProcessingOutcome.DUPLICATE
    assert len(await fetch_all(session_maker, Payment)) == 1
    assert len(await fetch_all(session_maker, Transaction)) == 1


async def test_partial_payment_leaves_invoice_pending(processor, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="10")

    outcome = await processor.process(decoder.decode(payment_log(invoice_id, 9_999_999)))

    assert outcome == ProcessingOutcome.RECORDED
    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PENDING
    assert invoice.paid_at is None
    assert len(await fetch_all(session_maker, Payment)) == 1


async def test_overpayment_marks_invoice_paid(processor, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="10")

    await processor.process(decoder.decode(payment_log(invoice_id, 12_000_000)))

    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PAID


async def test_paid_invoice_is_never_rewritten(processor, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="10")
    await processor.process(decoder.decode(payment_log(invoice_id, 10_000_000)))
    paid = await fetch_invoice(session_maker, invoice_id)

    outcome = await processor.process(decoder.decode(payment_log(invoice_id, 1_000)))

    assert outcome == ProcessingOutcome.RECORDED
    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_at == paid.paid_at
    assert len(await fetch_all(session_maker, Payment)) == 2


async def test_missing_invoice_is_an_anomaly(processor, session_maker):
    outcome = await processor.process(decoder.decode(payment_log("no-such-invoice", 10_000_000)))

    assert outcome == ProcessingOutcome.ANOMALY
    assert await fetch_all(session_maker, Payment) == []
    assert await fetch_all(session_maker, Transaction) == []


async def test_missing_receipt_defaults_gas_to_zero(processor, session_maker, create_invoice):
    invoice_id = await create_invoice()

    await processor.process(decoder.decode(payment_log(invoice_id, 10_000_000)))

    payment = (await fetch_all(session_maker, Payment))[0]
    assert payment.gas_used == 0
    assert payment.gas_fee == Decimal("0")


async def test_receipt_failure_does_not_block_recording(processor, push_client, session_maker, create_invoice):
    invoice_id = await create_invoice()
    push_client.receipt_error = ChainClientError("receipt lookup timed out")

    outcome = await processor.process(decoder.decode(payment_log(invoice_id, 10_000_000)))

    assert outcome == ProcessingOutcome.RECORDED
    payment = (await fetch_all(session_maker, Payment))[0]
    assert payment.gas_fee == Decimal("0")


class BlindStoreSession(StoreSession):
    """Never sees existing payments, so only the unique constraint can catch replays."""

    async def find_payment_by_chain_and_hash(self, chain, tx_hash):
        return None


class BlindStore(PaymentStore):
    session_class = BlindStoreSession


async def test_unique_violation_is_reported_as_duplicate(session_maker, create_invoice):
    processor = EventProcessor(BlindStore(session_maker))
    invoice_id = await create_invoice(amount="10")
    event = decoder.decode(payment_log(invoice_id, 4_000_000))

    first = await processor.process(event)
    second = await processor.process(event)

    assert first == ProcessingOutcome.RECORDED
    assert second == ProcessingOutcome.DUPLICATE
    assert len(await fetch_all(session_maker, Payment)) == 1
    # The rolled back unit of work left no second ledger entry behind
    assert len(await fetch_all(session_maker, Transaction)) == 1


async def test_same_hash_on_two_chains_is_two_payments(processor, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="100")
    shared_hash = "0x" + "42" * 32

    push = await processor.process(decoder.decode(payment_log(invoice_id, 1_000_000, tx_hash=shared_hash)))
    eth = await processor.process(decoder.decode(
        payment_log(invoice_id, 1_000_000, tx_hash=shared_hash, chain_id=ETHEREUM_CHAIN_ID)
    ))

    assert push == ProcessingOutcome.RECORDED
    assert eth == ProcessingOutcome.RECORDED
    chains = sorted(p.external_chain for p in await fetch_all(session_maker, Payment))
    assert chains == ["ethereum", "push-chain"]


async def test_withdrawal_on_ethereum(processor, session_maker):
    event = decoder.decode(withdrawal_log("app-7", 25_000_000, chain_id=ETHEREUM_CHAIN_ID))

    first = await processor.process(event)
    second = await processor.process(event)

    assert first == ProcessingOutcome.RECORDED
    assert second == ProcessingOutcome.DUPLICATE

    transactions = await fetch_all(session_maker, Transaction)
    assert len(transactions) == 1
    withdrawal = transactions[0]
    assert withdrawal.type == TransactionType.WITHDRAWAL
    assert withdrawal.chain == "ethereum"
    assert withdrawal.app_id == "app-7"
    assert withdrawal.amount == Decimal("25")
    assert withdrawal.from_address == GATEWAY
    assert withdrawal.to_address == RECIPIENT


async def test_fee_collected_records_total_and_breakdown(processor, session_maker):
    outcome = await processor.process(decoder.decode(fee_log("app-7", 250_000, 50_000)))

    assert outcome == ProcessingOutcome.RECORDED
    fee = (await fetch_all(session_maker, Transaction))[0]
    assert fee.type == TransactionType.FEE
    assert fee.amount == Decimal("0.3")
    assert fee.metadata_json["platform_fee"] == "0.25"
    assert fee.metadata_json["network_fee"] == "0.05"


async def test_payment_and_withdrawal_share_a_hash(processor, session_maker, create_invoice):
    invoice_id = await create_invoice()
    shared_hash = "0x" + "77" * 32

    await processor.process(decoder.decode(payment_log(invoice_id, 10_000_000, tx_hash=shared_hash)))
    outcome = await processor.process(decoder.decode(withdrawal_log("app-1", 1_000_000, tx_hash=shared_hash)))

    assert outcome == ProcessingOutcome.RECORDED
    types = sorted(t.type.value for t in await fetch_all(session_maker, Transaction))
    assert types == ["payment", "withdrawal"]


async def test_cross_chain_initiation_records_pending_payment(processor, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="5")

    outcome = await processor.process(decoder.decode(
        initiated_log(invoice_id, 5_000_000, target_chain_id=PUSH_CHAIN_ID, chain_id=ETHEREUM_CHAIN_ID)
    ))

    assert outcome == ProcessingOutcome.RECORDED
    payment = (await fetch_all(session_maker, Payment))[0]
    assert payment.status == PaymentStatus.PENDING
    assert payment.external_chain == "ethereum"
    assert payment.metadata_json["type"] == "cross-chain"
    assert payment.metadata_json["target_chain_id"] == PUSH_CHAIN_ID
    assert payment.is_cross_chain

    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PENDING
    assert await fetch_all(session_maker, Transaction) == []


async def test_cross_chain_completion_settles_invoice(processor, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="5")
    initiated = decoder.decode(
        initiated_log(invoice_id, 5_000_000, target_chain_id=PUSH_CHAIN_ID, chain_id=ETHEREUM_CHAIN_ID)
    )
    await processor.process(initiated)

    completed = decoder.decode(completed_log(invoice_id, initiated.tx_hash, ETHEREUM_CHAIN_ID))
    first = await processor.process(completed)
    second = await processor.process(completed)

    assert first == ProcessingOutcome.RECORDED
    assert second == ProcessingOutcome.DUPLICATE

    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PAID

    settled = [p for p in await fetch_all(session_maker, Payment) if p.external_chain == "push-chain"]
    assert len(settled) == 1
    assert settled[0].tx_hash == completed.tx_hash
    assert settled[0].amount == Decimal("5")
    assert settled[0].payer == PAYER
    assert settled[0].metadata_json["source_tx_hash"] == initiated.tx_hash

    ledger = await fetch_all(session_maker, Transaction)
    assert [t.chain for t in ledger] == ["push-chain"]


async def test_larger_payment_on_paid_invoice_keeps_paid_at(processor, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="10")
    await processor.process(decoder.decode(payment_log(invoice_id, 10_000_000)))
    paid = await fetch_invoice(session_maker, invoice_id)

    outcome = await processor.process(decoder.decode(payment_log(invoice_id, 20_000_000)))

    assert outcome == ProcessingOutcome.RECORDED
    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_at == paid.paid_at
    assert len(await fetch_all(session_maker, Transaction)) == 2


class SlowReceiptClient(FakeChainClient):
    """Holds every receipt lookup long enough for units of work to overlap."""

    async def get_receipt(self, tx_hash):
        await asyncio.sleep(0.05)
        return await super().get_receipt(tx_hash)


async def test_concurrent_payments_mark_invoice_paid_once(session_maker, create_invoice):
    transitions = []

    class CountingStoreSession(StoreSession):
        async def update_invoice_status(self, invoice_id, status, paid_at=None):
            changed = await super().update_invoice_status(invoice_id, status, paid_at=paid_at)
            if changed:
                transitions.append(invoice_id)
            return changed

    class CountingStore(PaymentStore):
        session_class = CountingStoreSession

    processor = EventProcessor(CountingStore(session_maker), {PUSH_CHAIN_ID: SlowReceiptClient(PUSH_CHAIN_ID)})
    invoice_id = await create_invoice(amount="10")

    outcomes = await asyncio.gather(
        processor.process(decoder.decode(payment_log(invoice_id, 10_000_000))),
        processor.process(decoder.decode(payment_log(invoice_id, 15_000_000))),
    )

    assert outcomes == [ProcessingOutcome.RECORDED, ProcessingOutcome.RECORDED]
    assert transitions == [invoice_id]
    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PAID
    assert len(await fetch_all(session_maker, Payment)) == 2
    assert len(await fetch_all(session_maker, Transaction)) == 2


async def test_concurrent_duplicate_delivery_records_once(session_maker, create_invoice):
    processor = EventProcessor(PaymentStore(session_maker), {PUSH_CHAIN_ID: SlowReceiptClient(PUSH_CHAIN_ID)})
    invoice_id = await create_invoice(amount="10")
    event = decoder.decode(payment_log(invoice_id, 10_000_000))

    outcomes = await asyncio.gather(processor.process(event), processor.process(event))

    assert sorted(o.value for o in outcomes) == ["duplicate", "recorded"]
    assert len(await fetch_all(session_maker, Payment)) == 1
    assert len(await fetch_all(session_maker, Transaction)) == 1


async def test_completion_before_initiation_is_deferred(processor, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="5")
    source_hash = "0x" + "99" * 32
    completed = decoder.decode(completed_log(invoice_id, source_hash, ETHEREUM_CHAIN_ID))

    first = await processor.process(completed)
    second = await processor.process(completed)

    assert first == ProcessingOutcome.DEFERRED
    assert second == ProcessingOutcome.DUPLICATE

    payments = await fetch_all(session_maker, Payment)
    assert len(payments) == 1
    settlement = payments[0]
    assert settlement.status == PaymentStatus.PENDING
    assert settlement.external_chain == "push-chain"
    assert settlement.payer is None
    assert settlement.source_chain == "ethereum"
    assert settlement.source_tx_hash == source_hash

    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PENDING
    assert await fetch_all(session_maker, Transaction) == []


async def test_initiation_after_completion_settles_invoice(processor, session_maker, create_invoice):
    invoice_id = await create_invoice(amount="5")
    initiated_raw = initiated_log(invoice_id, 5_000_000, target_chain_id=PUSH_CHAIN_ID, chain_id=ETHEREUM_CHAIN_ID)
    completed = decoder.decode(completed_log(invoice_id, initiated_raw.tx_hash, ETHEREUM_CHAIN_ID))

    deferred = await processor.process(completed)
    recorded = await processor.process(decoder.decode(initiated_raw))

    assert deferred == ProcessingOutcome.DEFERRED
    assert recorded == ProcessingOutcome.RECORDED

    invoice = await fetch_invoice(session_maker, invoice_id)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_at is not None

    payments = {p.external_chain: p for p in await fetch_all(session_maker, Payment)}
    settled = payments["push-chain"]
    assert settled.tx_hash == completed.tx_hash
    assert settled.status == PaymentStatus.CONFIRMED
    assert settled.payer == PAYER
    assert settled.amount == Decimal("5")
    assert settled.confirmed_at is not None
    assert settled.metadata_json["initiation_payment_id"] == payments["ethereum"].id
    assert payments["ethereum"].status == PaymentStatus.PENDING

    ledger = await fetch_all(session_maker, Transaction)
    assert len(ledger) == 1
    assert ledger[0].chain == "push-chain"
    assert ledger[0].tx_hash == completed.tx_hash
    assert ledger[0].from_address == PAYER
    assert ledger[0].to_address == GATEWAY
    assert ledger[0].metadata_json["payment_id"] == settled.id


async def test_completion_for_other_invoice_is_an_anomaly(processor, session_maker, create_invoice):
    paid_invoice_id = await create_invoice(amount="5")
    other_invoice_id = await create_invoice(amount="5")
    initiated = decoder.decode(
        initiated_log(paid_invoice_id, 5_000_000, target_chain_id=PUSH_CHAIN_ID, chain_id=ETHEREUM_CHAIN_ID)
    )
    await processor.process(initiated)

    outcome = await processor.process(decoder.decode(
        completed_log(other_invoice_id, initiated.tx_hash, ETHEREUM_CHAIN_ID)
    ))

    assert outcome == ProcessingOutcome.ANOMALY
    assert [p.external_chain for p in await fetch_all(session_maker, Payment)] == ["ethereum"]
    assert (await fetch_invoice(session_maker, other_invoice_id)).status == InvoiceStatus.PENDING
    assert await fetch_all(session_maker, Transaction) == []


async def test_initiation_for_other_invoice_leaves_settlement_pending(processor, session_maker, create_invoice):
    paid_invoice_id = await create_invoice(amount="5")
    other_invoice_id = await create_invoice(amount="5")
    initiated_raw = initiated_log(paid_invoice_id, 5_000_000, target_chain_id=PUSH_CHAIN_ID, chain_id=ETHEREUM_CHAIN_ID)

    await processor.process(decoder.decode(completed_log(other_invoice_id, initiated_raw.tx_hash, ETHEREUM_CHAIN_ID)))
    outcome = await processor.process(decoder.decode(initiated_raw))

    assert outcome == ProcessingOutcome.RECORDED
    payments = {p.external_chain: p for p in await fetch_all(session_maker, Payment)}
    assert payments["push-chain"].status == PaymentStatus.PENDING
    assert payments["push-chain"].payer is None
    assert (await fetch_invoice(session_maker, paid_invoice_id)).status == InvoiceStatus.PENDING
    assert (await fetch_invoice(session_maker, other_invoice_id)).status == InvoiceStatus.PENDING
    assert await fetch_all(session_maker, Transaction) == []
