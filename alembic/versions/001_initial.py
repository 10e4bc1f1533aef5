"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Marketplace accounts table
    op.create_table(
        'marketplace_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('external_user_id', sa.BigInteger(), nullable=False),
        sa.Column('site_id', sa.String(length=8), nullable=False),
        sa.Column('nickname', sa.String(length=128), nullable=True),
        sa.Column('access_token', sa.String(length=1024), nullable=True),
        sa.Column('refresh_token', sa.String(length=1024), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('connected_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_user_id', name='uq_marketplace_accounts_external_user_id')
    )
    op.create_index('ix_marketplace_accounts_owner_id', 'marketplace_accounts', ['owner_id'])

    # Drivers table
    op.create_table(
        'drivers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_drivers_owner_id', 'drivers', ['owner_id'])

    # Shipments cache table
    op.create_table(
        'shipments_cache',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shipment_id', sa.String(length=32), nullable=False),
        sa.Column('order_id', sa.String(length=32), nullable=True),
        sa.Column('pack_id', sa.String(length=32), nullable=True),
        sa.Column('tracking_number', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('substatus', sa.String(length=64), nullable=True),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_update_at', sa.DateTime(), nullable=False),
        sa.Column('raw_payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['marketplace_accounts.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shipment_id', name='uq_shipments_cache_shipment_id')
    )
    op.create_index('ix_shipments_cache_owner_id', 'shipments_cache', ['owner_id'])
    op.create_index('ix_shipments_cache_status', 'shipments_cache', ['status'])
    op.create_index('ix_shipments_cache_last_update_at', 'shipments_cache', ['last_update_at'])

    # Driver assignments table
    op.create_table(
        'driver_assignments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('driver_id', sa.Integer(), nullable=False),
        sa.Column('shipment_id', sa.String(length=32), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('assigned_at', sa.DateTime(), nullable=False),
        sa.Column('scanned_at', sa.DateTime(), nullable=True),
        sa.Column('returned_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['driver_id'], ['drivers.id']),
        sa.ForeignKeyConstraint(['account_id'], ['marketplace_accounts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    # At most one active holder per package and owner
    op.create_index('uq_driver_assignment_active', 'driver_assignments', ['shipment_id', 'owner_id'],
                    unique=True, postgresql_where=sa.text('returned_at IS NULL'))
    op.create_index('ix_driver_assignments_shipment_id', 'driver_assignments', ['shipment_id'])
    op.create_index('ix_driver_assignments_driver_id', 'driver_assignments', ['driver_id'])

    # Shipment alerts table
    op.create_table(
        'shipment_alerts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shipment_id', sa.String(length=32), nullable=False),
        sa.Column('alert_type', sa.String(length=40), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('driver_id', sa.Integer(), nullable=True),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['driver_id'], ['drivers.id']),
        sa.ForeignKeyConstraint(['account_id'], ['marketplace_accounts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('uq_shipment_alert_pending', 'shipment_alerts', ['shipment_id', 'alert_type'],
                    unique=True, postgresql_where=sa.text("status = 'pending'"))
    op.create_index('ix_shipment_alerts_status', 'shipment_alerts', ['status'])
    op.create_index('ix_shipment_alerts_shipment_id', 'shipment_alerts', ['shipment_id'])

    # Scan logs table
    op.create_table(
        'scan_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('driver_id', sa.Integer(), nullable=False),
        sa.Column('shipment_id', sa.String(length=32), nullable=False),
        sa.Column('scanned_code', sa.Text(), nullable=False),
        sa.Column('resolved_from', sa.String(length=32), nullable=True),
        sa.Column('outcome', sa.String(length=20), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('scanned_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['driver_id'], ['drivers.id']),
        sa.ForeignKeyConstraint(['account_id'], ['marketplace_accounts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_scan_logs_shipment_id', 'scan_logs', ['shipment_id'])

    # Sync runs table
    op.create_table(
        'sync_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('trigger', sa.String(length=32), nullable=False, server_default='scheduled'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='running'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('total_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('success_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_sync_runs_run_id', 'sync_runs', ['run_id'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_sync_runs_run_id', table_name='sync_runs')
    op.drop_index('ix_scan_logs_shipment_id', table_name='scan_logs')
    op.drop_index('ix_shipment_alerts_shipment_id', table_name='shipment_alerts')
    op.drop_index('ix_shipment_alerts_status', table_name='shipment_alerts')
    op.drop_index('uq_shipment_alert_pending', table_name='shipment_alerts')
    op.drop_index('ix_driver_assignments_driver_id', table_name='driver_assignments')
    op.drop_index('ix_driver_assignments_shipment_id', table_name='driver_assignments')
    op.drop_index('uq_driver_assignment_active', table_name='driver_assignments')
    op.drop_index('ix_shipments_cache_last_update_at', table_name='shipments_cache')
    op.drop_index('ix_shipments_cache_status', table_name='shipments_cache')
    op.drop_index('ix_shipments_cache_owner_id', table_name='shipments_cache')
    op.drop_index('ix_drivers_owner_id', table_name='drivers')
    op.drop_index('ix_marketplace_accounts_owner_id', table_name='marketplace_accounts')

    # Drop tables
    op.drop_table('sync_runs')
    op.drop_table('scan_logs')
    op.drop_table('shipment_alerts')
    op.drop_table('driver_assignments')
    op.drop_table('shipments_cache')
    op.drop_table('drivers')
    op.drop_table('marketplace_accounts')
