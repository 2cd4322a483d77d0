"""Add escrow payment columns to applications

Revision ID: c4d5e6f7a8b9
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'c4d5e6f7a8b9'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('applications') as batch_op:
        batch_op.add_column(sa.Column('agreed_usd_amount', sa.Numeric(20, 2), nullable=True))
        batch_op.add_column(sa.Column('payment_status', sa.String(length=20),
                                      server_default='pending_deposit', nullable=True))
        batch_op.add_column(sa.Column('escrow_job_id', sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column('escrow_tx_hash_deposit', sa.String(length=100), nullable=True))
        batch_op.add_column(sa.Column('escrow_tx_hash_release', sa.String(length=100), nullable=True))
        batch_op.add_column(sa.Column('escrow_tx_hash_refund', sa.String(length=100), nullable=True))
        batch_op.add_column(sa.Column('updated_at', sa.DateTime(), nullable=True))
    # Reconciliation sweeps
    op.create_index('ix_applications_payment_status', 'applications', ['payment_status'])
    op.create_index('ix_applications_payment_status_updated', 'applications',
                    ['payment_status', 'updated_at'])


def downgrade():
    op.drop_index('ix_applications_payment_status_updated', table_name='applications')
    op.drop_index('ix_applications_payment_status', table_name='applications')
    with op.batch_alter_table('applications') as batch_op:
        batch_op.drop_column('updated_at')
        batch_op.drop_column('escrow_tx_hash_refund')
        batch_op.drop_column('escrow_tx_hash_release')
        batch_op.drop_column('escrow_tx_hash_deposit')
        batch_op.drop_column('escrow_job_id')
        batch_op.drop_column('payment_status')
        batch_op.drop_column('agreed_usd_amount')
