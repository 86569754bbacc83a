"""
Event processor: turns decoded gateway events into payments, ledger
transactions and invoice status changes.

The processor is the only deduplication point. Every handler first looks
for an existing record and then inserts inside one unit of work; a unique
constraint violation at insert time means another delivery won the race
and is reported as a duplicate.
"""

from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Mapping, Optional, Tuple, Type

import structlog

from paygate.core.config import GatewayConfig
from paygate.core.exceptions import (
    ChainClientError,
    ConflictError,
    CrossChainMismatchError,
    InvoiceNotFoundError,
    ValidationError,
)
from paygate.models.base import utcnow
from paygate.models.invoice import Invoice, InvoiceStatus
from paygate.models.payment import Payment, PaymentStatus
from paygate.models.transaction import Transaction, TransactionStatus, TransactionType
from paygate.services.chain_client import ChainClient
from paygate.services.event_decoder import (
    CrossChainPaymentCompleted,
    CrossChainPaymentInitiated,
    FeeCollected,
    GatewayEvent,
    PaymentReceived,
    WithdrawalExecuted,
)
from paygate.services.payment_store import PaymentStore, StoreSession
from paygate.utils.amounts import wei_to_native

from .types import ProcessingOutcome


logger = structlog.get_logger(__name__)

Handler = Callable[[StoreSession, GatewayEvent], Awaitable[ProcessingOutcome]]


class EventProcessor:
    """
    Applies decoded events to the data store.

    Shared by every chain watcher. Receipt lookups go through the chain
    client registered for the event's chain id, when there is one.
    """

    def __init__(
        self,
        store: PaymentStore,
        clients: Optional[Mapping[int, ChainClient]] = None
    ):
        self.store = store
        self.clients: Dict[int, ChainClient] = dict(clients or {})
        self.logger = logger.bind(service="event_processor")

        self._event_handlers: Dict[Type[GatewayEvent], Handler] = {
            PaymentReceived: self.handle_payment_received,
            CrossChainPaymentCompleted: self.handle_cross_chain_completed,
            CrossChainPaymentInitiated: self.handle_cross_chain_initiated,
            WithdrawalExecuted: self.handle_withdrawal_executed,
            FeeCollected: self.handle_fee_collected,
        }

    def register_client(self, client: ChainClient) -> None:
        """Use ``client`` for receipt lookups on its chain."""
        self.clients[client.chain_id] = client

    async def process(self, event: GatewayEvent) -> ProcessingOutcome:
        """
        Apply one event.

        Returns:
            RECORDED, DUPLICATE, ANOMALY, or DEFERRED for a cross-chain
            settlement whose initiation has not been indexed yet

        Raises:
            ValidationError: event type has no handler
            Exception: store failures propagate so the caller can count them
        """
        handler = self._event_handlers.get(type(event))
        if handler is None:
            raise ValidationError(f"No handler for event {type(event).__name__}")

        log = self.logger.bind(
            event_type=event.event_type.value,
            chain=event.chain,
            tx_hash=event.tx_hash,
            block_number=event.block_number
        )

        try:
            async with self.store.unit_of_work() as repo:
                outcome = await handler(repo, event)
        except ConflictError as e:
            log.info("Concurrent delivery already recorded", detail=e.message)
            return ProcessingOutcome.DUPLICATE
        except (InvoiceNotFoundError, CrossChainMismatchError) as e:
            log.warning("Event anomaly", error_code=e.code, error=e.message, **e.details)
            return ProcessingOutcome.ANOMALY
        except Exception as e:
            log.error("Failed to process event", error=str(e), error_type=type(e).__name__)
            raise

        if outcome == ProcessingOutcome.DUPLICATE:
            log.debug("Event already recorded")
        elif outcome == ProcessingOutcome.DEFERRED:
            log.info("Settlement awaiting initiation")
        else:
            log.info("Event recorded")
        return outcome

    async def _lookup_gas(self, event: GatewayEvent) -> Tuple[int, Decimal]:
        """Best-effort (gas_used, gas_fee); zeros when no receipt is available."""
        client = self.clients.get(event.chain_id)
        if client is None:
            return 0, Decimal("0")

        try:
            receipt = await client.get_receipt(event.tx_hash)
        except ChainClientError as e:
            self.logger.warning(
                "Receipt lookup failed; recording without gas data",
                chain=event.chain,
                tx_hash=event.tx_hash,
                error=e.message
            )
            return 0, Decimal("0")

        if receipt is None:
            return 0, Decimal("0")
        return receipt.gas_used, wei_to_native(receipt.gas_used * receipt.effective_gas_price)

    async def _require_invoice(
        self, repo: StoreSession, invoice_id: str, for_update: bool = False
    ) -> Invoice:
        invoice = await repo.find_invoice_by_id(invoice_id, for_update=for_update)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    async def _record_payment(
        self,
        repo: StoreSession,
        event: GatewayEvent,
        invoice: Invoice,
        payer: str,
        amount: Decimal,
        currency: str,
        metadata: dict,
        source_chain: Optional[str] = None,
        source_tx_hash: Optional[str] = None
    ) -> ProcessingOutcome:
        gas_used, gas_fee = await self._lookup_gas(event)
        now = utcnow()

        payment = await repo.insert_payment(Payment(
            invoice_id=invoice.id,
            external_chain=event.chain,
            tx_hash=event.tx_hash,
            payer=payer,
            amount=amount,
            currency=currency,
            status=PaymentStatus.CONFIRMED,
            block_number=event.block_number,
            block_hash=event.block_hash,
            gas_used=gas_used,
            gas_fee=gas_fee,
            recorded_at=now,
            confirmed_at=now,
            source_chain=source_chain,
            source_tx_hash=source_tx_hash,
            metadata_json=metadata,
        ))

        await self._settle(repo, invoice, payment, event.contract_address, now)
        return ProcessingOutcome.RECORDED

    async def _settle(
        self,
        repo: StoreSession,
        invoice: Invoice,
        payment: Payment,
        to_address: Optional[str],
        now: datetime
    ) -> None:
        """Apply the invoice threshold and write the ledger entry for a confirmed payment."""
        if payment.amount >= invoice.amount:
            # Conditional update: a paid invoice is never rewritten, even by a larger payment
            if await repo.update_invoice_status(invoice.id, InvoiceStatus.PAID, paid_at=now):
                self.logger.info(
                    "Invoice paid",
                    invoice_id=invoice.id,
                    amount=str(payment.amount),
                    invoice_amount=str(invoice.amount),
                    chain=payment.external_chain
                )
        else:
            self.logger.info(
                "Partial payment below invoice amount",
                invoice_id=invoice.id,
                amount=str(payment.amount),
                invoice_amount=str(invoice.amount)
            )

        await repo.insert_transaction(Transaction(
            app_id=invoice.app_id,
            type=TransactionType.PAYMENT,
            chain=payment.external_chain,
            tx_hash=payment.tx_hash,
            amount=payment.amount,
            currency=payment.currency,
            fee=payment.gas_fee,
            status=TransactionStatus.CONFIRMED,
            block_number=payment.block_number,
            from_address=payment.payer,
            to_address=to_address,
            metadata_json={"invoice_id": invoice.id, "payment_id": payment.id},
        ))

    async def handle_payment_received(
        self, repo: StoreSession, event: PaymentReceived
    ) -> ProcessingOutcome:
        """Handle PaymentReceived event."""
        if await repo.find_payment_by_chain_and_hash(event.chain, event.tx_hash):
            return ProcessingOutcome.DUPLICATE

        invoice = await self._require_invoice(repo, event.invoice_id)
        return await self._record_payment(
            repo,
            event,
            invoice,
            payer=event.payer,
            amount=event.amount,
            currency=event.currency,
            metadata={"log_index": event.log_index},
        )

    async def handle_cross_chain_completed(
        self, repo: StoreSession, event: CrossChainPaymentCompleted
    ) -> ProcessingOutcome:
        """
        Handle CrossChainPaymentCompleted event.

        Keyed by the settlement transaction; payer, amount and currency are
        taken from the pending payment recorded when the transfer was
        initiated on the source chain. When the initiation is not indexed
        yet, the settlement is stored as pending and confirmed later by
        handle_cross_chain_initiated.
        """
        if await repo.find_payment_by_chain_and_hash(event.chain, event.tx_hash):
            return ProcessingOutcome.DUPLICATE

        # Lock the invoice so pairing with a concurrent initiation is serialized
        invoice = await self._require_invoice(repo, event.invoice_id, for_update=True)

        source_chain = GatewayConfig.get_chain_name(event.source_chain_id)
        initiation = await repo.find_payment_by_chain_and_hash(source_chain, event.source_tx_hash)

        if initiation is None:
            gas_used, gas_fee = await self._lookup_gas(event)
            await repo.insert_payment(Payment(
                invoice_id=invoice.id,
                external_chain=event.chain,
                tx_hash=event.tx_hash,
                payer=None,
                amount=Decimal("0"),
                currency=invoice.currency,
                status=PaymentStatus.PENDING,
                block_number=event.block_number,
                block_hash=event.block_hash,
                gas_used=gas_used,
                gas_fee=gas_fee,
                recorded_at=utcnow(),
                source_chain=source_chain,
                source_tx_hash=event.source_tx_hash,
                metadata_json={
                    "type": "cross-chain",
                    "log_index": event.log_index,
                    "contract_address": event.contract_address,
                    "source_chain_id": event.source_chain_id,
                    "source_chain": source_chain,
                    "source_tx_hash": event.source_tx_hash,
                },
            ))
            return ProcessingOutcome.DEFERRED

        if initiation.invoice_id != event.invoice_id:
            raise CrossChainMismatchError(event.source_tx_hash, event.invoice_id, initiation.invoice_id)

        return await self._record_payment(
            repo,
            event,
            invoice,
            payer=initiation.payer,
            amount=initiation.amount,
            currency=initiation.currency,
            metadata={
                "type": "cross-chain",
                "log_index": event.log_index,
                "source_chain_id": event.source_chain_id,
                "source_chain": source_chain,
                "source_tx_hash": event.source_tx_hash,
                "initiation_payment_id": initiation.id,
            },
            source_chain=source_chain,
            source_tx_hash=event.source_tx_hash,
        )

    async def handle_cross_chain_initiated(
        self, repo: StoreSession, event: CrossChainPaymentInitiated
    ) -> ProcessingOutcome:
        """
        Handle CrossChainPaymentInitiated event.

        Records the pending initiation. If its settlement was indexed first,
        the settlement is confirmed here and the invoice and ledger are
        updated on the settlement chain.
        """
        if await repo.find_payment_by_chain_and_hash(event.chain, event.tx_hash):
            return ProcessingOutcome.DUPLICATE

        invoice = await self._require_invoice(repo, event.invoice_id, for_update=True)

        initiation = await repo.insert_payment(Payment(
            invoice_id=invoice.id,
            external_chain=event.chain,
            tx_hash=event.tx_hash,
            payer=event.payer,
            amount=event.amount,
            currency=event.currency,
            status=PaymentStatus.PENDING,
            block_number=event.block_number,
            block_hash=event.block_hash,
            gas_used=0,
            gas_fee=Decimal("0"),
            recorded_at=utcnow(),
            metadata_json={
                "type": "cross-chain",
                "log_index": event.log_index,
                "target_chain_id": event.target_chain_id,
                "target_chain": GatewayConfig.get_chain_name(event.target_chain_id),
            },
        ))

        settlement = await repo.find_pending_settlement(event.chain, event.tx_hash)
        if settlement is None:
            return ProcessingOutcome.RECORDED

        if settlement.invoice_id != initiation.invoice_id:
            self.logger.warning(
                "Settlement names a different invoice; leaving it pending",
                source_tx_hash=event.tx_hash,
                expected_invoice_id=settlement.invoice_id,
                actual_invoice_id=initiation.invoice_id
            )
            return ProcessingOutcome.RECORDED

        now = utcnow()
        settlement.metadata_json = {
            **(settlement.metadata_json or {}),
            "initiation_payment_id": initiation.id,
        }
        await repo.confirm_payment(settlement, event.payer, event.amount, event.currency, now)
        await self._settle(
            repo,
            invoice,
            settlement,
            (settlement.metadata_json or {}).get("contract_address"),
            now
        )
        return ProcessingOutcome.RECORDED

    async def handle_withdrawal_executed(
        self, repo: StoreSession, event: WithdrawalExecuted
    ) -> ProcessingOutcome:
        """Handle WithdrawalExecuted event."""
        if await repo.find_transaction(event.chain, event.tx_hash, TransactionType.WITHDRAWAL):
            return ProcessingOutcome.DUPLICATE

        await repo.insert_transaction(Transaction(
            app_id=event.app_id,
            type=TransactionType.WITHDRAWAL,
            chain=event.chain,
            tx_hash=event.tx_hash,
            amount=event.amount,
            currency=event.currency,
            fee=Decimal("0"),
            status=TransactionStatus.CONFIRMED,
            block_number=event.block_number,
            from_address=event.contract_address,
            to_address=event.recipient,
            metadata_json={"log_index": event.log_index},
        ))
        return ProcessingOutcome.RECORDED

    async def handle_fee_collected(
        self, repo: StoreSession, event: FeeCollected
    ) -> ProcessingOutcome:
        """Handle FeeCollected event."""
        if await repo.find_transaction(event.chain, event.tx_hash, TransactionType.FEE):
            return ProcessingOutcome.DUPLICATE

        await repo.insert_transaction(Transaction(
            app_id=event.app_id,
            type=TransactionType.FEE,
            chain=event.chain,
            tx_hash=event.tx_hash,
            amount=event.total_fee,
            currency=event.currency,
            fee=Decimal("0"),
            status=TransactionStatus.CONFIRMED,
            block_number=event.block_number,
            from_address=event.contract_address,
            metadata_json={
                "log_index": event.log_index,
                "platform_fee": str(event.platform_fee),
                "network_fee": str(event.network_fee),
            },
        ))
        return ProcessingOutcome.RECORDED
