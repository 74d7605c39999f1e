"""create_catalog_sync_tables

Revision ID: c41a7e9b2d10
Revises:
Create Date: 2025-03-02 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
import sqlmodel

# revision identifiers, used by Alembic.
revision = 'c41a7e9b2d10'
down_revision = None
branch_labels = None
depends_on = None

sync_direction = sa.Enum('REMOTE_TO_LOCAL', 'LOCAL_TO_REMOTE', name='syncdirection')
sync_status = sa.Enum('IDLE', 'RUNNING', 'CANCELLED', 'COMPLETED', name='syncstatus')


def upgrade():
    op.create_table(
        'sync_runs',
        sa.Column('entity', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('run_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('direction', sync_direction, nullable=False),
        sa.Column('status', sync_status, nullable=False),
        sa.Column('batch_size', sa.Integer(), nullable=False),
        sa.Column('current_batch', sa.Integer(), nullable=False),
        sa.Column('total_batches', sa.Integer(), nullable=False),
        sa.Column('next_offset', sa.Integer(), nullable=False),
        sa.Column('items_synced', sa.Integer(), nullable=False),
        sa.Column('total_items', sa.Integer(), nullable=False),
        sa.Column('error_count', sa.Integer(), nullable=False),
        sa.Column('filters', sa.JSON(), nullable=True),
        sa.Column('recovery_mode', sa.Boolean(), nullable=False),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False),
        sa.Column('last_error', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('last_update_time', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('entity')
    )
    op.create_index(op.f('ix_sync_runs_run_id'), 'sync_runs', ['run_id'], unique=False)
    op.create_index(op.f('ix_sync_runs_status'), 'sync_runs', ['status'], unique=False)

    op.create_table(
        'sync_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('entity', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('direction', sync_direction, nullable=False),
        sa.Column('status', sync_status, nullable=False),
        sa.Column('items_synced', sa.Integer(), nullable=False),
        sa.Column('total_items', sa.Integer(), nullable=False),
        sa.Column('error_count', sa.Integer(), nullable=False),
        sa.Column('batches_processed', sa.Integer(), nullable=False),
        sa.Column('total_batches', sa.Integer(), nullable=False),
        sa.Column('batch_size', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('duration_seconds', sa.Float(), nullable=False),
        sa.Column('last_error', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_history_run_id'), 'sync_history', ['run_id'], unique=False)
    op.create_index(op.f('ix_sync_history_entity'), 'sync_history', ['entity'], unique=False)
    op.create_index(op.f('ix_sync_history_end_time'), 'sync_history', ['end_time'], unique=False)

    op.create_table(
        'sync_progress_markers',
        sa.Column('entity', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('run_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('direction', sync_direction, nullable=False),
        sa.Column('offset', sa.Integer(), nullable=False),
        sa.Column('batch_size', sa.Integer(), nullable=False),
        sa.Column('current_batch', sa.Integer(), nullable=False),
        sa.Column('filters', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('entity')
    )

    op.create_table(
        'sync_locks',
        sa.Column('entity', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('owner_pid', sa.Integer(), nullable=False),
        sa.Column('owner_host', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('owner_token', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('refreshed_at', sa.DateTime(), nullable=False),
        sa.Column('heartbeat_at', sa.DateTime(), nullable=False),
        sa.Column('timeout_seconds', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('entity')
    )

    op.create_table(
        'sync_batch_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('entity', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('batch_number', sa.Integer(), nullable=False),
        sa.Column('range_start', sa.Integer(), nullable=False),
        sa.Column('range_end', sa.Integer(), nullable=False),
        sa.Column('batch_size', sa.Integer(), nullable=False),
        sa.Column('processed_count', sa.Integer(), nullable=False),
        sa.Column('error_count', sa.Integer(), nullable=False),
        sa.Column('retry_processed_count', sa.Integer(), nullable=False),
        sa.Column('retry_error_count', sa.Integer(), nullable=False),
        sa.Column('duration_seconds', sa.Float(), nullable=False),
        sa.Column('memory_peak_mb', sa.Float(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_batch_records_run_id'), 'sync_batch_records', ['run_id'], unique=False)
    op.create_index(op.f('ix_sync_batch_records_entity'), 'sync_batch_records', ['entity'], unique=False)
    op.create_index(op.f('ix_sync_batch_records_timestamp'), 'sync_batch_records', ['timestamp'], unique=False)

    op.create_table(
        'sync_errors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('item_key', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('item_payload', sa.JSON(), nullable=True),
        sa.Column('error_code', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('error_message', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_errors_run_id'), 'sync_errors', ['run_id'], unique=False)
    op.create_index(op.f('ix_sync_errors_item_key'), 'sync_errors', ['item_key'], unique=False)
    op.create_index(op.f('ix_sync_errors_error_code'), 'sync_errors', ['error_code'], unique=False)
    op.create_index(op.f('ix_sync_errors_timestamp'), 'sync_errors', ['timestamp'], unique=False)

    op.create_table(
        'catalog_items',
        sa.Column('entity', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('key', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('name', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('last_run_id', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('entity', 'key')
    )


def downgrade():
    op.drop_table('catalog_items')
    for index in ('timestamp', 'error_code', 'item_key', 'run_id'):
        op.drop_index(op.f(f'ix_sync_errors_{index}'), table_name='sync_errors')
    op.drop_table('sync_errors')
    for index in ('timestamp', 'entity', 'run_id'):
        op.drop_index(op.f(f'ix_sync_batch_records_{index}'), table_name='sync_batch_records')
    op.drop_table('sync_batch_records')
    op.drop_table('sync_locks')
    op.drop_table('sync_progress_markers')
    for index in ('end_time', 'entity', 'run_id'):
        op.drop_index(op.f(f'ix_sync_history_{index}'), table_name='sync_history')
    op.drop_table('sync_history')
    op.drop_index(op.f('ix_sync_runs_status'), table_name='sync_runs')
    op.drop_index(op.f('ix_sync_runs_run_id'), table_name='sync_runs')
    op.drop_table('sync_runs')
    sync_status.drop(op.get_bind(), checkfirst=True)
    sync_direction.drop(op.get_bind(), checkfirst=True)
