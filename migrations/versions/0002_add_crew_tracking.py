"""add_crew_status_history_and_locations

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-17 15:40:02.517734

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0002'
down_revision: Union[str, Sequence[str], None] = '0001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _crew_status() -> postgresql.ENUM:
    # Created by 0001
    return postgresql.ENUM('available', 'busy', 'offline', name='crew_status', create_type=False)


def upgrade() -> None:
    """Upgrade schema: crew availability periods and GPS fixes."""
    op.create_table(
        'crew_status_history',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('crew_id', sa.String(length=64), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', _crew_status(), nullable=False),
        sa.Column('previous_status', _crew_status(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('booking_id', sa.String(length=64), nullable=True),
        sa.Column('changed_by', sa.String(length=64), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_crew_status_history_crew_id', 'crew_status_history', ['crew_id'])
    op.create_index('ix_crew_status_history_started_at', 'crew_status_history', ['started_at'])

    op.create_table(
        'crew_locations',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('crew_id', sa.String(length=64), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('accuracy', sa.Float(), nullable=True),
        sa.Column('heading', sa.Float(), nullable=True),
        sa.Column('speed', sa.Float(), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('battery_level', sa.Integer(), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_crew_locations_crew_id', 'crew_locations', ['crew_id'])
    op.create_index('ix_crew_locations_recorded_at', 'crew_locations', ['recorded_at'])


def downgrade() -> None:
    """Downgrade schema: drop crew tracking tables."""
    op.drop_table('crew_locations')
    op.drop_table('crew_status_history')
