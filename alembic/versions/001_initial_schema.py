"""Initial schema: swaps, legs, events, reservations, confirmation records.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Atomic swaps table
    op.create_table(
        'atomic_swaps',
        sa.Column('swap_id', sa.String(64), nullable=False),
        sa.Column('initiator_id', sa.String(255), nullable=False),
        sa.Column('responder_id', sa.String(255), nullable=False),
        sa.Column('secret_hash', sa.String(64), nullable=False),
        sa.Column('sealed_secret', sa.Text(), nullable=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('auto_rollback', sa.Boolean(), nullable=False),
        sa.Column('stage', sa.String(30), nullable=False),
        sa.Column('progress_percentage', sa.Integer(), nullable=False),
        sa.Column('progress_description', sa.Text(), nullable=False),
        sa.Column('progress_sub_stages', sa.Text(), nullable=False),
        sa.Column('progress_updated_at', sa.DateTime(), nullable=False),
        sa.Column('timeout_at', sa.DateTime(), nullable=False),
        sa.Column('rollback', sa.Text(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('swap_id'),
        sa.UniqueConstraint('secret_hash')
    )
    op.create_index('ix_atomic_swaps_initiator_id', 'atomic_swaps', ['initiator_id'])
    op.create_index('ix_atomic_swaps_responder_id', 'atomic_swaps', ['responder_id'])
    op.create_index('ix_atomic_swaps_status', 'atomic_swaps', ['status'])
    op.create_index('ix_atomic_swaps_timeout_at', 'atomic_swaps', ['timeout_at'])

    # Swap legs table
    op.create_table(
        'swap_legs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('swap_id', sa.String(64), nullable=False),
        sa.Column('leg_index', sa.Integer(), nullable=False),
        sa.Column('chain', sa.String(50), nullable=False),
        sa.Column('asset_id', sa.String(100), nullable=False),
        sa.Column('amount', sa.Numeric(36, 18), nullable=False),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('recipient_id', sa.String(255), nullable=False),
        sa.Column('timeout_seconds', sa.Integer(), nullable=False),
        sa.Column('timelock_at', sa.DateTime(), nullable=False),
        sa.Column('required_confirmations', sa.Integer(), nullable=False),
        sa.Column('confirmations', sa.Integer(), nullable=False),
        sa.Column('state', sa.String(20), nullable=False),
        sa.Column('reservation_id', sa.String(100), nullable=True),
        sa.Column('lock_ref', sa.String(255), nullable=True),
        sa.Column('lock_tx_hash', sa.String(255), nullable=True),
        sa.Column('claim_tx_hash', sa.String(255), nullable=True),
        sa.Column('refund_tx_hash', sa.String(255), nullable=True),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['swap_id'], ['atomic_swaps.swap_id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('swap_id', 'leg_index', name='uq_swap_legs_swap_index')
    )
    op.create_index('ix_swap_legs_lock_ref', 'swap_legs', ['lock_ref'])

    # Swap events table
    op.create_table(
        'swap_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(128), nullable=False),
        sa.Column('swap_id', sa.String(64), nullable=False),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('leg_index', sa.Integer(), nullable=True),
        sa.Column('chain', sa.String(50), nullable=True),
        sa.Column('tx_hash', sa.String(255), nullable=True),
        sa.Column('data', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['swap_id'], ['atomic_swaps.swap_id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id')
    )
    op.create_index('ix_swap_events_swap_id', 'swap_events', ['swap_id'])

    # Reservations table
    op.create_table(
        'reservations',
        sa.Column('reservation_id', sa.String(100), nullable=False),
        sa.Column('ledger_id', sa.String(50), nullable=False),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('asset_id', sa.String(100), nullable=False),
        sa.Column('amount', sa.Numeric(36, 18), nullable=False),
        sa.Column('state', sa.String(20), nullable=False),
        sa.Column('owner_ref', sa.String(64), nullable=True),
        sa.Column('hash_lock', sa.String(64), nullable=True),
        sa.Column('recipient_id', sa.String(255), nullable=True),
        sa.Column('lock_ref', sa.String(255), nullable=True),
        sa.Column('lock_tx_hash', sa.String(255), nullable=True),
        sa.Column('claim_ref', sa.String(255), nullable=True),
        sa.Column('refund_ref', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('reservation_id')
    )
    op.create_index(
        'ix_reservations_ledger_account_asset',
        'reservations',
        ['ledger_id', 'account_id', 'asset_id'],
    )
    op.create_index('ix_reservations_state', 'reservations', ['state'])
    op.create_index('ix_reservations_owner_ref', 'reservations', ['owner_ref'])
    op.create_index('ix_reservations_expires_at', 'reservations', ['expires_at'])

    # Confirmation records table (insert only)
    op.create_table(
        'confirmation_records',
        sa.Column('sequence', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('record_id', sa.String(64), nullable=False),
        sa.Column('swap_id', sa.String(64), nullable=False),
        sa.Column('leg_index', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('chain', sa.String(50), nullable=False),
        sa.Column('asset_id', sa.String(100), nullable=False),
        sa.Column('amount', sa.Numeric(36, 18), nullable=False),
        sa.Column('tx_hash', sa.String(255), nullable=True),
        sa.Column('compensates', sa.String(64), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('sequence'),
        sa.UniqueConstraint('record_id')
    )
    op.create_index('ix_confirmation_records_swap_id', 'confirmation_records', ['swap_id'])
    op.create_index('ix_confirmation_records_created_at', 'confirmation_records', ['created_at'])


def downgrade() -> None:
    op.drop_table('confirmation_records')
    op.drop_table('reservations')
    op.drop_table('swap_events')
    op.drop_table('swap_legs')
    op.drop_table('atomic_swaps')
