"""create_booking_workflow_tables

Revision ID: 0001
Revises:
Create Date: 2026-10-17 09:12:40.118302

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUMS = {
    "user_role": (
        "user", "admin", "superadmin", "cashier", "inventory_manager", "manager", "dispatcher", "crew",
    ),
    "crew_status": ("available", "busy", "offline"),
    "booking_type": ("registered", "guest"),
    "service_category": ("carwash", "auto_detailing", "graphene_coating"),
    "service_type": ("branch", "home"),
    "unit_type": ("car", "motorcycle"),
    "payment_status": ("pending", "paid", "failed", "refunded"),
    "booking_status": (
        "pending", "confirmed", "crew_assigned", "crew_going", "crew_arrived",
        "in_progress", "washing", "completed", "paid", "cancelled",
    ),
    "crew_assignment_status": ("assigned", "accepted", "rejected", "completed"),
    "notification_type": ("booking_assignment", "booking_update", "booking_confirmation", "system"),
}


def _enum(name: str) -> postgresql.ENUM:
    # Types are created once up front; booking_status is shared by two tables
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    """Upgrade schema: users, bookings, status history, crew assignments, notifications."""
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        'users',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('role', _enum('user_role'), nullable=False),
        sa.Column('contact_number', sa.String(length=20), nullable=True),
        sa.Column('branch_location', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('crew_skills', sa.JSON(), nullable=True),
        sa.Column('crew_status', _enum('crew_status'), nullable=True),
        sa.Column('current_assignment', sa.String(length=64), nullable=True),
        sa.Column('crew_rating', sa.Numeric(3, 2), nullable=True),
        sa.Column('crew_experience', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_branch_location', 'users', ['branch_location'])
    op.create_index('ix_users_crew_status', 'users', ['crew_status'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=64), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('guest_info', sa.JSON(), nullable=True),
        sa.Column('type', _enum('booking_type'), nullable=False),
        sa.Column('confirmation_code', sa.String(length=50), nullable=False),
        sa.Column('category', _enum('service_category'), nullable=False),
        sa.Column('service', sa.String(length=255), nullable=False),
        sa.Column('service_type', _enum('service_type'), nullable=False),
        sa.Column('service_location', sa.Text(), nullable=True),
        sa.Column('estimated_duration', sa.Integer(), nullable=True),
        sa.Column('unit_type', _enum('unit_type'), nullable=False),
        sa.Column('unit_size', sa.String(length=50), nullable=True),
        sa.Column('plate_number', sa.String(length=20), nullable=True),
        sa.Column('vehicle_model', sa.String(length=255), nullable=True),
        sa.Column('date', sa.String(length=20), nullable=False),
        sa.Column('time_slot', sa.String(length=50), nullable=False),
        sa.Column('branch', sa.String(length=255), nullable=False),
        sa.Column('base_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False, server_default='PHP'),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('payment_status', _enum('payment_status'), nullable=False, server_default='pending'),
        sa.Column('status', _enum('booking_status'), nullable=False, server_default='pending'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('assigned_crew', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('crew_notes', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('crew_arrival_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('crew_start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('crew_completion_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'])
    op.create_index('ix_bookings_confirmation_code', 'bookings', ['confirmation_code'])
    op.create_index('ix_bookings_date', 'bookings', ['date'])
    op.create_index('ix_bookings_branch', 'bookings', ['branch'])
    op.create_index('ix_bookings_status', 'bookings', ['status'])
    op.create_index('ix_bookings_created_at', 'bookings', ['created_at'])

    op.create_table(
        'booking_status_updates',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('booking_id', sa.String(length=64), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', _enum('booking_status'), nullable=False),
        sa.Column('previous_status', _enum('booking_status'), nullable=True),
        sa.Column('updated_by', sa.String(length=64), nullable=False),
        sa.Column('updated_by_role', sa.String(length=50), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('location', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_booking_status_updates_booking_id', 'booking_status_updates', ['booking_id'])

    op.create_table(
        'crew_assignments',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('booking_id', sa.String(length=64), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('crew_id', sa.String(length=64), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('assigned_by', sa.String(length=64), nullable=False),
        sa.Column('status', _enum('crew_assignment_status'), nullable=False, server_default='assigned'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_crew_assignments_booking_id', 'crew_assignments', ['booking_id'])
    op.create_index('ix_crew_assignments_crew_id', 'crew_assignments', ['crew_id'])
    op.create_index('ix_crew_assignments_status', 'crew_assignments', ['status'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=64), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', _enum('notification_type'), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_is_read', 'notifications', ['is_read'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])


def downgrade() -> None:
    """Downgrade schema: drop all workflow tables and their enum types."""
    op.drop_table('notifications')
    op.drop_table('crew_assignments')
    op.drop_table('booking_status_updates')
    op.drop_table('bookings')
    op.drop_table('users')

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
