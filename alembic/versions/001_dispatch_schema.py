"""Dispatch schema - drivers, routes, assignments, bidding, health, outbox

Revision ID: 001_dispatch_schema
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_dispatch_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid():
    return postgresql.UUID(as_uuid=True)


def _ts():
    return sa.DateTime(timezone=True)


def _enum():
    # Enum values are stored as plain strings (native_enum=False)
    return sa.String(32)


def upgrade() -> None:
    op.create_table(
        'drivers',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('hired_at', sa.Date(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_flagged', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('flag_warning_at', _ts(), nullable=True),
        sa.Column('created_at', _ts(), nullable=True, server_default=sa.func.now()),
    )

    op.create_table(
        'routes',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('start_time', sa.String(5), nullable=False, server_default='09:00'),
        sa.Column('manager_id', _uuid(), nullable=True, index=True),
        sa.Column('created_at', _ts(), nullable=True, server_default=sa.func.now()),
    )

    op.create_table(
        'driver_preferences',
        sa.Column('driver_id', _uuid(), sa.ForeignKey('drivers.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('preferred_route_ids', sa.JSON(), nullable=False),
        sa.Column('preferred_weekdays', sa.JSON(), nullable=False),
        sa.Column('updated_at', _ts(), nullable=True),
        sa.Column('locked_at', _ts(), nullable=True),
    )

    op.create_table(
        'driver_metrics',
        sa.Column('driver_id', _uuid(), sa.ForeignKey('drivers.id', ondelete='CASCADE'), primary_key=True),
        *[
            sa.Column(name, sa.Integer(), nullable=False, server_default='0')
            for name in (
                'total_assigned', 'confirmed_count', 'arrived_on_time_count',
                'completed_count', 'high_delivery_count', 'bid_pickup_count',
                'urgent_pickup_count', 'auto_drop_count', 'late_cancel_count',
                'early_cancel_count', 'no_show_count',
            )
        ],
        sa.Column('updated_at', _ts(), nullable=True),
    )

    op.create_table(
        'route_completions',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('driver_id', _uuid(), sa.ForeignKey('drivers.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('route_id', _uuid(), sa.ForeignKey('routes.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('completion_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_completed_at', _ts(), nullable=True),
        sa.UniqueConstraint('driver_id', 'route_id', name='uq_route_completions_driver_route'),
    )

    op.create_table(
        'assignments',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('route_id', _uuid(), sa.ForeignKey('routes.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('date', sa.Date(), nullable=False, index=True),
        sa.Column('status', _enum(), nullable=False, server_default='unfilled'),
        sa.Column('driver_id', _uuid(), sa.ForeignKey('drivers.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('creation_trigger', _enum(), nullable=False, server_default='scheduled'),
        sa.Column('assigned_by', _enum(), nullable=True),
        sa.Column('assigned_at', _ts(), nullable=True),
        sa.Column('confirmed_at', _ts(), nullable=True),
        sa.Column('cancel_type', _enum(), nullable=False, server_default='none'),
        sa.Column('cancel_reason', sa.String(500), nullable=True),
        sa.Column('cancelled_at', _ts(), nullable=True),
        sa.Column('arrival_deadline_at', _ts(), nullable=False),
        sa.Column('arrived_at', _ts(), nullable=True),
        sa.Column('started_at', _ts(), nullable=True),
        sa.Column('parcels_start', sa.Integer(), nullable=True),
        sa.Column('parcels_returned', sa.Integer(), nullable=True),
        sa.Column('parcels_delivered', sa.Integer(), nullable=True),
        sa.Column('completed_at', _ts(), nullable=True),
        sa.Column('editable_until', _ts(), nullable=True),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', _ts(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_assignments_status_date', 'assignments', ['status', 'date'])
    op.create_index('ix_assignments_driver_date', 'assignments', ['driver_id', 'date'])

    op.create_table(
        'bid_windows',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('assignment_id', _uuid(), sa.ForeignKey('assignments.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('source_assignment_id', _uuid(), sa.ForeignKey('assignments.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('trigger', _enum(), nullable=False),
        sa.Column('mode', _enum(), nullable=False),
        sa.Column('status', _enum(), nullable=False, server_default='open'),
        sa.Column('opens_at', _ts(), nullable=False),
        sa.Column('closes_at', _ts(), nullable=False),
        sa.Column('pay_bonus_percent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('winner_id', _uuid(), sa.ForeignKey('drivers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('resolved_at', _ts(), nullable=True),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        'uq_bid_windows_open_assignment', 'bid_windows', ['assignment_id'],
        unique=True, postgresql_where=sa.text("status = 'open'"),
    )
    op.create_index('ix_bid_windows_status_closes_at', 'bid_windows', ['status', 'closes_at'])

    op.create_table(
        'bids',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('bid_window_id', _uuid(), sa.ForeignKey('bid_windows.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('assignment_id', _uuid(), sa.ForeignKey('assignments.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('driver_id', _uuid(), sa.ForeignKey('drivers.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('status', _enum(), nullable=False, server_default='pending'),
        sa.Column('score', sa.Float(), nullable=True),
        sa.Column('submitted_at', _ts(), nullable=False),
        sa.Column('resolved_at', _ts(), nullable=True),
        sa.UniqueConstraint('bid_window_id', 'driver_id', name='uq_bids_window_driver'),
    )

    op.create_table(
        'driver_health_states',
        sa.Column('driver_id', _uuid(), sa.ForeignKey('drivers.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stars', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('streak_weeks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('hard_stop', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('hard_stop_reasons', sa.JSON(), nullable=False),
        sa.Column('assignment_pool_eligible', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('requires_manager_intervention', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_reset_at', _ts(), nullable=True),
        sa.Column('reinstated_at', _ts(), nullable=True),
        sa.Column('last_evaluated_week_start', sa.Date(), nullable=True),
        sa.Column('last_qualified_week_start', sa.Date(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', _ts(), nullable=True),
    )

    op.create_table(
        'driver_health_snapshots',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('driver_id', _uuid(), sa.ForeignKey('drivers.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('evaluated_on', sa.Date(), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('contributions', sa.JSON(), nullable=False),
        sa.Column('late_cancel_count_rolling', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('no_show_count_rolling', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('hard_stop', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reasons', sa.JSON(), nullable=False),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('driver_id', 'evaluated_on', name='uq_health_snapshots_driver_date'),
    )

    op.create_table(
        'notifications',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('recipient_id', _uuid(), nullable=False, index=True),
        sa.Column('kind', _enum(), nullable=False),
        sa.Column('assignment_id', _uuid(), nullable=True),
        sa.Column('bid_window_id', _uuid(), nullable=True),
        sa.Column('subject_date', sa.Date(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.Column('dispatched_at', _ts(), nullable=True),
        sa.Column('last_error', sa.String(500), nullable=True),
    )
    op.create_index('ix_notifications_kind_assignment', 'notifications', ['kind', 'assignment_id'])
    op.create_index('ix_notifications_undelivered', 'notifications', ['dispatched_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('entity_type', sa.String(50), nullable=False, index=True),
        sa.Column('entity_id', _uuid(), nullable=False, index=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('actor_type', sa.String(20), nullable=False, server_default='system'),
        sa.Column('actor_id', _uuid(), nullable=True),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_index('ix_notifications_undelivered', table_name='notifications')
    op.drop_index('ix_notifications_kind_assignment', table_name='notifications')
    op.drop_table('notifications')
    op.drop_table('driver_health_snapshots')
    op.drop_table('driver_health_states')
    op.drop_table('bids')
    op.drop_index('ix_bid_windows_status_closes_at', table_name='bid_windows')
    op.drop_index('uq_bid_windows_open_assignment', table_name='bid_windows')
    op.drop_table('bid_windows')
    op.drop_index('ix_assignments_driver_date', table_name='assignments')
    op.drop_index('ix_assignments_status_date', table_name='assignments')
    op.drop_table('assignments')
    op.drop_table('route_completions')
    op.drop_table('driver_metrics')
    op.drop_table('driver_preferences')
    op.drop_table('routes')
    op.drop_table('drivers')
