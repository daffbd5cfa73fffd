"""Hive pipeline tables

Revision ID: 001_hive_tables
Revises:
Create Date: 2026-10-17

Creates all tables for the task pipeline:
- projects
- tasks (with subtask and iteration back-references)
- pipeline_runs (one running run per task, enforced by a partial index)
- step_logs
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_hive_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Projects table
    op.create_table(
        'projects',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('repo_path', sa.String(length=1000), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    # Tasks table
    op.create_table(
        'tasks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('spec', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='plan'),
        sa.Column('stage', sa.String(length=20), nullable=False, server_default='plan'),
        sa.Column('priority', sa.String(length=20), nullable=False, server_default='normal'),
        sa.Column('greenlit', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_run', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('parent_id', sa.Integer(), nullable=True),
        sa.Column('linked_from_id', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id']),
        sa.ForeignKeyConstraint(['parent_id'], ['tasks.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['linked_from_id'], ['tasks.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_project_id', 'tasks', ['project_id'], unique=False)
    op.create_index('ix_tasks_status', 'tasks', ['status'], unique=False)
    op.create_index('ix_tasks_stage', 'tasks', ['stage'], unique=False)
    op.create_index('ix_tasks_parent_id', 'tasks', ['parent_id'], unique=False)

    # Pipeline runs table
    op.create_table(
        'pipeline_runs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('stage', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='running'),
        sa.Column('agent_session_key', sa.String(length=500), nullable=True),
        sa.Column('callback_token', sa.String(length=100), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('output', sa.Text(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pipeline_runs_task_id', 'pipeline_runs', ['task_id'], unique=False)
    op.create_index('ix_pipeline_runs_task_stage', 'pipeline_runs', ['task_id', 'stage'], unique=False)
    op.create_index(
        'uq_pipeline_runs_one_running_per_task',
        'pipeline_runs',
        ['task_id'],
        unique=True,
        sqlite_where=sa.text("status = 'running'"),
        postgresql_where=sa.text("status = 'running'"),
    )

    # Step logs table
    op.create_table(
        'step_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('level', sa.String(length=10), nullable=False, server_default='info'),
        sa.Column('message', sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['pipeline_runs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_step_logs_run_id', 'step_logs', ['run_id'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('step_logs')
    op.drop_index('uq_pipeline_runs_one_running_per_task', table_name='pipeline_runs')
    op.drop_table('pipeline_runs')
    op.drop_table('tasks')
    op.drop_table('projects')
