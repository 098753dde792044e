"""Add payment token to invoices

Revision ID: 002_invoice_payment_token
Revises: 001_billing_core
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '002_invoice_payment_token'
down_revision = '001_billing_core'
branch_labels = None
depends_on = None


def upgrade():
    """Add invoices.payment_token and backfill existing invoices"""
    op.add_column(
        'invoices',
        sa.Column('payment_token', sa.String(64), nullable=True, comment='Unguessable key of the public payment page'),
    )

    # 32 hex characters, the same shape the application generates
    op.execute(
        "UPDATE invoices SET payment_token = md5(random()::text || id::text) "
        "WHERE payment_token IS NULL"
    )

    op.alter_column('invoices', 'payment_token', nullable=False)
    op.create_index('ix_invoices_payment_token', 'invoices', ['payment_token'], unique=True)


def downgrade():
    """Remove invoices.payment_token"""
    op.drop_index('ix_invoices_payment_token', table_name='invoices')
    op.drop_column('invoices', 'payment_token')
