"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('domain_bookings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('domain_name', sa.String(length=253), nullable=False),
        sa.Column('owner_id', sa.String(length=128), nullable=False),
        sa.Column('payment_ref', sa.String(length=255), nullable=True),
        sa.Column('booked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_current', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('domain_name', 'is_current', name='uq_domain_current_booking'),
    )
    op.create_index('ix_domain_bookings_domain_name', 'domain_bookings', ['domain_name'], unique=False)
    op.create_index('ix_domain_bookings_owner_id', 'domain_bookings', ['owner_id'], unique=False)
    op.create_index('ix_domain_bookings_expires_at', 'domain_bookings', ['expires_at'], unique=False)

    op.create_table('payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('domain_name', sa.String(length=253), nullable=False),
        sa.Column('owner_id', sa.String(length=128), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='KES'),
        sa.Column('provider', sa.String(length=128), nullable=True),
        sa.Column('provider_ref', sa.String(length=255), nullable=True),
        sa.Column('account_reference', sa.String(length=64), nullable=False),
        sa.Column('payer_phone', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('outcome_message', sa.String(length=1024), nullable=True),
        sa.Column('receipt', sa.String(length=64), nullable=True),
        sa.Column('booking_id', sa.Integer(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('meta', postgresql.JSON(), nullable=True),
        sa.UniqueConstraint('provider_ref', name='payments_provider_ref_key'),
    )
    op.create_index('ix_payments_domain_name', 'payments', ['domain_name'], unique=False)
    op.create_index('ix_payments_owner_id', 'payments', ['owner_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)


def downgrade():
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_owner_id', table_name='payments')
    op.drop_index('ix_payments_domain_name', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_domain_bookings_expires_at', table_name='domain_bookings')
    op.drop_index('ix_domain_bookings_owner_id', table_name='domain_bookings')
    op.drop_index('ix_domain_bookings_domain_name', table_name='domain_bookings')
    op.drop_table('domain_bookings')
