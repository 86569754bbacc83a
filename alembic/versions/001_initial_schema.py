"""Initial schema - invoices, payments, transactions

Revision ID: 001
Revises: 
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE invoicestatus AS ENUM ('pending', 'paid', 'expired', 'cancelled')")
    op.execute("CREATE TYPE paymentstatus AS ENUM ('pending', 'confirmed', 'failed')")
    op.execute("CREATE TYPE transactiontype AS ENUM ('payment', 'withdrawal', 'fee')")
    op.execute("CREATE TYPE transactionstatus AS ENUM ('pending', 'confirmed', 'failed')")

    # Create invoices table
    op.create_table('invoices',
        sa.Column('id', sa.String(length=36), nullable=False, comment='UUID primary key'),
        sa.Column('app_id', sa.String(length=64), nullable=False, comment='Owning application'),
        sa.Column('amount', sa.Numeric(precision=38, scale=18), nullable=False, comment='Amount due in currency units'),
        sa.Column('currency', sa.String(length=16), nullable=False, comment='Currency symbol'),
        sa.Column('external_chain', sa.String(length=32), nullable=True, comment='Chain the payer is expected to settle on'),
        sa.Column('status', postgresql.ENUM('pending', 'paid', 'expired', 'cancelled', name='invoicestatus', create_type=False), nullable=False, comment='Settlement status'),
        sa.Column('memo', sa.Text(), nullable=True, comment='Free-form memo'),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=True, comment='Payment due date'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='When a sufficient payment was recorded'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True, comment='Expiry time'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='Application supplied metadata'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Create payments table
    op.create_table('payments',
        sa.Column('id', sa.String(length=36), nullable=False, comment='UUID primary key'),
        sa.Column('invoice_id', sa.String(length=36), nullable=True, comment='Invoice being settled'),
        sa.Column('external_chain', sa.String(length=32), nullable=False, comment='Chain the payment was observed on'),
        sa.Column('tx_hash', sa.String(length=66), nullable=False, comment='Transaction hash'),
        sa.Column('payer', sa.String(length=42), nullable=True, comment='Payer address; unknown until a cross-chain completion is paired'),
        sa.Column('amount', sa.Numeric(precision=38, scale=18), nullable=False, comment='Amount paid in currency units'),
        sa.Column('currency', sa.String(length=16), nullable=False, comment='Currency symbol'),
        sa.Column('status', postgresql.ENUM('pending', 'confirmed', 'failed', name='paymentstatus', create_type=False), nullable=False, comment='Confirmation status'),
        sa.Column('block_number', sa.BigInteger(), nullable=True, comment='Block containing the event'),
        sa.Column('block_hash', sa.String(length=66), nullable=True, comment='Hash of the block containing the event'),
        sa.Column('gas_used', sa.BigInteger(), nullable=True, comment='Gas used by the transaction'),
        sa.Column('gas_fee', sa.Numeric(precision=38, scale=18), nullable=True, comment='Gas fee in native units'),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False, comment='When the indexer recorded the payment'),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True, comment='When the payment was confirmed'),
        sa.Column('source_chain', sa.String(length=32), nullable=True, comment='Chain of the initiating transaction, for cross-chain settlements'),
        sa.Column('source_tx_hash', sa.String(length=66), nullable=True, comment='Initiating transaction hash, for cross-chain settlements'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='Event specific metadata'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_chain', 'tx_hash', name='uq_payment_chain_tx')
    )

    # Create transactions table
    op.create_table('transactions',
        sa.Column('id', sa.String(length=36), nullable=False, comment='UUID primary key'),
        sa.Column('app_id', sa.String(length=64), nullable=True, comment='Application the entry belongs to'),
        sa.Column('type', postgresql.ENUM('payment', 'withdrawal', 'fee', name='transactiontype', create_type=False), nullable=False, comment='Ledger entry type'),
        sa.Column('chain', sa.String(length=32), nullable=False, comment='Chain name'),
        sa.Column('tx_hash', sa.String(length=66), nullable=False, comment='Transaction hash'),
        sa.Column('amount', sa.Numeric(precision=38, scale=18), nullable=False, comment='Amount in currency units'),
        sa.Column('currency', sa.String(length=16), nullable=False, comment='Currency symbol'),
        sa.Column('fee', sa.Numeric(precision=38, scale=18), nullable=False, comment='Fee charged in native units'),
        sa.Column('status', postgresql.ENUM('pending', 'confirmed', 'failed', name='transactionstatus', create_type=False), nullable=False, comment='Entry status'),
        sa.Column('block_number', sa.BigInteger(), nullable=True, comment='Block containing the event'),
        sa.Column('from_address', sa.String(length=42), nullable=True, comment='Sender'),
        sa.Column('to_address', sa.String(length=42), nullable=True, comment='Recipient'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='Event specific metadata'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('chain', 'tx_hash', 'type', name='uq_transaction_chain_tx_type')
    )

    # Create indexes
    op.create_index('idx_invoice_app_status', 'invoices', ['app_id', 'status'])
    op.create_index('idx_invoice_created', 'invoices', ['created_at'])
    op.create_index('idx_payment_invoice', 'payments', ['invoice_id'])
    op.create_index('idx_payment_status', 'payments', ['status'])
    op.create_index('idx_payment_source', 'payments', ['source_chain', 'source_tx_hash'])
    op.create_index('idx_transaction_app_type', 'transactions', ['app_id', 'type'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('idx_transaction_app_type', table_name='transactions')
    op.drop_index('idx_payment_source', table_name='payments')
    op.drop_index('idx_payment_status', table_name='payments')
    op.drop_index('idx_payment_invoice', table_name='payments')
    op.drop_index('idx_invoice_created', table_name='invoices')
    op.drop_index('idx_invoice_app_status', table_name='invoices')

    # Drop tables
    op.drop_table('transactions')
    op.drop_table('payments')
    op.drop_table('invoices')

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS transactionstatus")
    op.execute("DROP TYPE IF EXISTS transactiontype")
    op.execute("DROP TYPE IF EXISTS paymentstatus")
    op.execute("DROP TYPE IF EXISTS invoicestatus")
