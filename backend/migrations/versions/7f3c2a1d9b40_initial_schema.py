"""initial_schema

Revision ID: 7f3c2a1d9b40
Revises:
Create Date: 2025-09-01 09:12:44.215301

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '7f3c2a1d9b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Enums ---
    # Created once up front; task_status is shared by tasks and task_updates.
    bind = op.get_bind()
    postgresql.ENUM('todo', 'in_progress', 'blocked', 'done', 'cancelled', name='task_status').create(bind, checkfirst=True)
    postgresql.ENUM('low', 'medium', 'high', 'urgent', name='task_priority').create(bind, checkfirst=True)
    task_status_enum = postgresql.ENUM(name='task_status', create_type=False)
    task_priority_enum = postgresql.ENUM(name='task_priority', create_type=False)

    # --- Tables ---

    # groups
    op.create_table(
        'groups',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # tasks
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('group_id', sa.String(), sa.ForeignKey('groups.id'), nullable=False),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', task_status_enum, nullable=False, server_default='todo'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('priority', task_priority_enum, nullable=False, server_default='medium'),
        sa.Column('tags', postgresql.ARRAY(sa.Text()), nullable=True),
        sa.Column('external_source', sa.String(), nullable=True),
        sa.Column('external_id', sa.String(), nullable=True),
        sa.Column('external_ref', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint('progress BETWEEN 0 AND 100', name='ck_tasks_progress_range'),
        sa.UniqueConstraint('group_id', 'code', name='tasks_group_code_uq'),
    )
    op.create_index('idx_tasks_group_due', 'tasks', ['group_id', 'due_at'])
    op.create_index('idx_tasks_group_external', 'tasks', ['group_id', 'external_source', 'external_id'])

    # task_updates
    op.create_table(
        'task_updates',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('actor_id', sa.String(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('progress', sa.Integer(), nullable=True),
        sa.Column('new_status', task_status_enum, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('idx_task_updates_task_created', 'task_updates', ['task_id', sa.text('created_at DESC')])

    # calendar_configs
    op.create_table(
        'calendar_configs',
        sa.Column('group_id', sa.String(), sa.ForeignKey('groups.id'), primary_key=True),
        sa.Column('cal1_id', sa.Text(), nullable=True),
        sa.Column('cal1_tag', sa.Text(), nullable=False, server_default='CAL1'),
        sa.Column('cal1_color', sa.Text(), nullable=True),
        sa.Column('cal2_id', sa.Text(), nullable=True),
        sa.Column('cal2_tag', sa.Text(), nullable=False, server_default='CAL2'),
        sa.Column('cal2_color', sa.Text(), nullable=True),
        sa.Column('since_month', sa.String(7), nullable=True),
        sa.Column('tz', sa.String(), nullable=False, server_default='Asia/Bangkok'),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # external_calendar_events
    op.create_table(
        'external_calendar_events',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('group_id', sa.String(), sa.ForeignKey('groups.id'), nullable=False),
        sa.Column('calendar_id', sa.Text(), nullable=False),
        sa.Column('google_event_id', sa.Text(), nullable=False),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('all_day', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('html_link', sa.Text(), nullable=True),
        sa.Column('color_id', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('etag', sa.Text(), nullable=True),
        sa.Column('raw', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('group_id', 'calendar_id', 'google_event_id', name='uq_external_event_group_calendar_event'),
    )
    op.create_index('idx_external_events_group_color_start', 'external_calendar_events', ['group_id', 'color_id', 'start_at'])


def downgrade() -> None:
    op.drop_index('idx_external_events_group_color_start', table_name='external_calendar_events')
    op.drop_table('external_calendar_events')
    op.drop_table('calendar_configs')
    op.drop_index('idx_task_updates_task_created', table_name='task_updates')
    op.drop_table('task_updates')
    op.drop_index('idx_tasks_group_external', table_name='tasks')
    op.drop_index('idx_tasks_group_due', table_name='tasks')
    op.drop_table('tasks')
    op.drop_table('groups')
    postgresql.ENUM(name='task_priority').drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name='task_status').drop(op.get_bind(), checkfirst=True)
