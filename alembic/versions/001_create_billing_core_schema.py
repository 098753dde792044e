"""Create billing core schema

Revision ID: 001_billing_core
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '001_billing_core'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    ]


def _billable_document_columns():
    """Columns shared by invoices, estimates and recurring templates."""
    return [
        sa.Column('client_id', UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), nullable=True),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('tax_rate', sa.Numeric(6, 3), server_default='0', nullable=False),
        sa.Column('discount_amount', sa.Numeric(14, 4), server_default='0', nullable=False),
        sa.Column('subtotal', sa.Numeric(14, 4), nullable=True),
        sa.Column('tax_amount', sa.Numeric(14, 4), nullable=True),
        sa.Column('total_amount', sa.Numeric(14, 4), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('terms', sa.Text, nullable=True),
    ]


def _line_item_columns(parent_column, parent_table):
    return [
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column(
            parent_column, UUID(as_uuid=True),
            sa.ForeignKey(f'{parent_table}.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('quantity', sa.Numeric(14, 4), nullable=False),
        sa.Column('unit_price', sa.Numeric(14, 4), nullable=False),
        sa.Column('amount', sa.Numeric(14, 4), nullable=True, comment='Cached quantity x unit_price'),
        sa.Column('position', sa.Integer, server_default='0', nullable=False),
    ]


def upgrade():
    """Create plans, accounts and billing document tables"""

    # ====================
    # PLANS TABLE
    # ====================
    op.create_table(
        'plans',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('processor_price_id', sa.String(100), unique=True, nullable=False),
        sa.Column('processor_product_id', sa.String(100), nullable=True),
        sa.Column('price_cents', sa.Integer, server_default='0', nullable=False),
        sa.Column('interval', sa.String(10), server_default='month', nullable=False),
        sa.Column('trial_days', sa.Integer, server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        sa.Column('sort_order', sa.Integer, server_default='0', nullable=False),
        sa.Column('features', JSONB, server_default='[]', nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_plans_processor_price_id', 'plans', ['processor_price_id'])

    # ====================
    # ACCOUNTS TABLE
    # ====================
    op.create_table(
        'accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('slug', sa.String(50), unique=True, nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), sa.ForeignKey('plans.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('subscription_status', sa.String(20), server_default='trialing', nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processor_customer_id', sa.String(100), unique=True, nullable=True),
        sa.Column('subscription_synced_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_accounts_processor_customer_id', 'accounts', ['processor_customer_id'])

    # ====================
    # PROCESSED PROCESSOR EVENTS (replay ledger)
    # ====================
    op.create_table(
        'processed_processor_events',
        sa.Column('event_id', sa.String(100), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('customer_ref', sa.String(100), nullable=True),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_processed_processor_events_customer_ref', 'processed_processor_events', ['customer_ref'])

    # ====================
    # RECURRING INVOICES TABLE
    # ====================
    op.create_table(
        'recurring_invoices',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('frequency', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('start_date', sa.Date, nullable=False),
        sa.Column('end_date', sa.Date, nullable=True),
        sa.Column('next_occurrence_date', sa.Date, nullable=True),
        sa.Column('occurrences_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('occurrences_limit', sa.Integer, nullable=True),
        sa.Column('last_generated_at', sa.Date, nullable=True),
        sa.Column('payment_terms', sa.Integer, server_default='30', nullable=False),
        sa.Column('auto_send', sa.Boolean, server_default='false', nullable=False),
        sa.Column('email_subject', sa.String(255), nullable=True),
        sa.Column('email_body', sa.Text, nullable=True),
        *_billable_document_columns(),
        *_timestamps(),
    )
    op.create_index('ix_recurring_invoices_account_id', 'recurring_invoices', ['account_id'])
    op.create_index('ix_recurring_invoices_client_id', 'recurring_invoices', ['client_id'])
    op.create_index(
        'ix_recurring_invoices_sweep', 'recurring_invoices',
        ['account_id', 'next_occurrence_date', 'status'],
    )

    op.create_table(
        'recurring_invoice_line_items',
        *_line_item_columns('recurring_invoice_id', 'recurring_invoices'),
    )
    op.create_index(
        'ix_recurring_invoice_line_items_recurring_invoice_id',
        'recurring_invoice_line_items', ['recurring_invoice_id'],
    )

    # ====================
    # INVOICES TABLE
    # ====================
    op.create_table(
        'invoices',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'recurring_invoice_id', UUID(as_uuid=True),
            sa.ForeignKey('recurring_invoices.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('invoice_number', sa.String(50), nullable=False, comment='Per-account number e.g., INV-10001'),
        sa.Column('issue_date', sa.Date, nullable=False),
        sa.Column('due_date', sa.Date, nullable=False),
        sa.Column('status', sa.String(20), server_default='draft', nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('viewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('payment_reference', sa.String(255), nullable=True),
        sa.Column('reminder_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reminder_count', sa.Integer, server_default='0', nullable=False),
        *_billable_document_columns(),
        *_timestamps(),
        sa.UniqueConstraint('account_id', 'invoice_number', name='uq_invoices_account_number'),
    )
    op.create_index('ix_invoices_account_id', 'invoices', ['account_id'])
    op.create_index('ix_invoices_client_id', 'invoices', ['client_id'])
    op.create_index('ix_invoices_account_status_due', 'invoices', ['account_id', 'status', 'due_date'])

    op.create_table(
        'invoice_line_items',
        *_line_item_columns('invoice_id', 'invoices'),
    )
    op.create_index('ix_invoice_line_items_invoice_id', 'invoice_line_items', ['invoice_id'])

    # ====================
    # ESTIMATES TABLE
    # ====================
    op.create_table(
        'estimates',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('estimate_number', sa.String(50), nullable=False),
        sa.Column('issue_date', sa.Date, nullable=False),
        sa.Column('valid_until', sa.Date, nullable=False),
        sa.Column('status', sa.String(20), server_default='draft', nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('viewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('declined_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            'converted_invoice_id', UUID(as_uuid=True),
            sa.ForeignKey('invoices.id', ondelete='SET NULL'), nullable=True,
        ),
        *_billable_document_columns(),
        *_timestamps(),
        sa.UniqueConstraint('account_id', 'estimate_number', name='uq_estimates_account_number'),
    )
    op.create_index('ix_estimates_account_id', 'estimates', ['account_id'])
    op.create_index('ix_estimates_client_id', 'estimates', ['client_id'])
    op.create_index('ix_estimates_account_status', 'estimates', ['account_id', 'status'])

    op.create_table(
        'estimate_line_items',
        *_line_item_columns('estimate_id', 'estimates'),
    )
    op.create_index('ix_estimate_line_items_estimate_id', 'estimate_line_items', ['estimate_id'])

    # ====================
    # DELIVERY JOBS (outbound queue)
    # ====================
    op.create_table(
        'delivery_jobs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('target_kind', sa.String(20), nullable=False),
        sa.Column('target_id', UUID(as_uuid=True), nullable=False),
        sa.Column('subject', sa.String(255), nullable=True),
        sa.Column('message', sa.Text, nullable=True),
        sa.Column('payload', JSONB, server_default='{}', nullable=False),
        sa.Column('status', sa.String(20), server_default='queued', nullable=False),
        sa.Column('attempts', sa.Integer, server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_delivery_jobs_account_id', 'delivery_jobs', ['account_id'])
    op.create_index('ix_delivery_jobs_status_created', 'delivery_jobs', ['status', 'created_at'])
    op.create_index('ix_delivery_jobs_target', 'delivery_jobs', ['target_kind', 'target_id'])


def downgrade():
    """Drop billing core tables"""
    op.drop_table('delivery_jobs')
    op.drop_table('estimate_line_items')
    op.drop_table('estimates')
    op.drop_table('invoice_line_items')
    op.drop_table('invoices')
    op.drop_table('recurring_invoice_line_items')
    op.drop_table('recurring_invoices')
    op.drop_table('processed_processor_events')
    op.drop_table('accounts')
    op.drop_table('plans')
