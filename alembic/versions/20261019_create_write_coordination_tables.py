"""Create write coordination tables

Revision ID: 20261019_write_coordination
Revises:
Create Date: 2026-10-19

Submission records with the single-writer partial unique index, the
read-repair cache, the shared signer nonce sequence and reconciliation reports.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_write_coordination'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_PREDICATE = "status IN ('pending', 'submitted')"


def upgrade() -> None:
    """Create submission_records, cached_records, signer_nonces and reconciliation_reports"""
    op.create_table(
        'submission_records',
        sa.Column('id', sa.String(36), nullable=False, comment="Request id returned to API callers"),
        sa.Column('slot', sa.String(100), nullable=False, comment="Logical key, e.g. document:1:0"),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('record_type', sa.String(32), nullable=False, comment="document or carbon_emission"),
        sa.Column('doc_type', sa.Integer(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('idempotency_token', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_kind', sa.String(50), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('tx_hash', sa.String(66), nullable=True),
        sa.Column('signer', sa.String(42), nullable=True),
        sa.Column('nonce', sa.Integer(), nullable=True),
        sa.Column('confirmed_block', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(), nullable=True, comment="Broadcast time"),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('archived_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_token')
    )
    op.create_index('ix_submission_records_slot', 'submission_records', ['slot'])
    op.create_index('ix_submission_records_tx_hash', 'submission_records', ['tx_hash'])
    op.create_index('ix_submission_status_updated', 'submission_records', ['status', 'updated_at'])
    op.create_index('ix_submission_signer_nonce', 'submission_records', ['signer', 'nonce'])
    # At most one pending/submitted record per logical key
    op.create_index(
        'uq_submission_active_slot',
        'submission_records',
        ['slot'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PREDICATE),
        sqlite_where=sa.text(ACTIVE_PREDICATE)
    )

    op.create_table(
        'cached_records',
        sa.Column('slot', sa.String(100), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('record_type', sa.String(32), nullable=False),
        sa.Column('doc_type', sa.Integer(), nullable=True),
        sa.Column('value', sa.JSON(), nullable=True),
        sa.Column('confirmed_at_block', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fetched_at', sa.DateTime(), nullable=False),
        sa.Column('stale', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('slot')
    )

    op.create_table(
        'signer_nonces',
        sa.Column('address', sa.String(42), nullable=False),
        sa.Column('next_nonce', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('address')
    )

    op.create_table(
        'reconciliation_reports',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('redispatched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('repolled', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('archived', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cache_repaired', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('purged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='running'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )


def downgrade() -> None:
    """Drop write coordination tables"""
    op.drop_table('reconciliation_reports')
    op.drop_table('signer_nonces')
    op.drop_table('cached_records')
    op.drop_index('uq_submission_active_slot', table_name='submission_records')
    op.drop_index('ix_submission_signer_nonce', table_name='submission_records')
    op.drop_index('ix_submission_status_updated', table_name='submission_records')
    op.drop_index('ix_submission_records_tx_hash', table_name='submission_records')
    op.drop_index('ix_submission_records_slot', table_name='submission_records')
    op.drop_table('submission_records')
