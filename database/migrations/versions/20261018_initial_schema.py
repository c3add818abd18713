"""Initial schema - projects, variables, executions, jobs, progress, workers

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create tables for the Alpaka workflow engine"""

    # Projects and their global variables
    op.create_table(
        'projects',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('template_id', sa.String(length=255), nullable=True),
        sa.Column('canvas_data', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_projects_name'), 'projects', ['name'], unique=False)

    op.create_table(
        'global_variables',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('project_id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('folder', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'name', name='uq_global_variables_project_name')
    )
    op.create_index(op.f('ix_global_variables_project_id'), 'global_variables', ['project_id'], unique=False)

    # Execution instances and their node logs
    op.create_table(
        'execution_instances',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('project_id', sa.String(length=36), nullable=False),
        sa.Column('project_name', sa.String(length=255), nullable=True),
        sa.Column('job_id', sa.String(length=36), nullable=True),
        sa.Column('session_id', sa.String(length=255), nullable=True),
        sa.Column('worker_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('total_nodes', sa.Integer(), nullable=False),
        sa.Column('executed_nodes', sa.Integer(), nullable=False),
        sa.Column('failed_nodes', sa.Integer(), nullable=False),
        sa.Column('skipped_nodes', sa.Integer(), nullable=False),
        sa.Column('current_node_id', sa.String(length=255), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('global_variables_snapshot', sa.JSON(), nullable=True),
        sa.Column('execution_results', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_execution_instances_project_id'), 'execution_instances', ['project_id'], unique=False)
    op.create_index(op.f('ix_execution_instances_job_id'), 'execution_instances', ['job_id'], unique=False)
    op.create_index(op.f('ix_execution_instances_session_id'), 'execution_instances', ['session_id'], unique=False)
    op.create_index(op.f('ix_execution_instances_status'), 'execution_instances', ['status'], unique=False)

    op.create_table(
        'execution_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('execution_instance_id', sa.String(length=36), nullable=False),
        sa.Column('project_id', sa.String(length=36), nullable=False),
        sa.Column('node_id', sa.String(length=255), nullable=False),
        sa.Column('node_type', sa.String(length=50), nullable=True),
        sa.Column('input', sa.JSON(), nullable=True),
        sa.Column('output', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(length=50), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['execution_instance_id'], ['execution_instances.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_execution_logs_execution_instance_id'), 'execution_logs', ['execution_instance_id'], unique=False)
    op.create_index(op.f('ix_execution_logs_project_id'), 'execution_logs', ['project_id'], unique=False)
    op.create_index(op.f('ix_execution_logs_status'), 'execution_logs', ['status'], unique=False)

    # Job hand-off
    op.create_table(
        'processing_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('session_id', sa.String(length=255), nullable=False),
        sa.Column('mode', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('worker_id', sa.String(length=255), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('reports', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('session_id')
    )
    op.create_index(op.f('ix_processing_jobs_mode'), 'processing_jobs', ['mode'], unique=False)
    op.create_index(op.f('ix_processing_jobs_status'), 'processing_jobs', ['status'], unique=False)
    op.create_index('ix_processing_jobs_status_mode', 'processing_jobs', ['status', 'mode'], unique=False)

    # Progress feed
    op.create_table(
        'progress_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('stream_id', sa.String(length=36), nullable=False),
        sa.Column('offset', sa.Integer(), nullable=False),
        sa.Column('event', sa.String(length=50), nullable=False),
        sa.Column('line', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stream_id', 'offset', name='uq_progress_events_stream_offset')
    )
    op.create_index(op.f('ix_progress_events_stream_id'), 'progress_events', ['stream_id'], unique=False)

    # Worker liveness
    op.create_table(
        'worker_records',
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('project_id', sa.String(length=36), nullable=True),
        sa.Column('project_name', sa.String(length=255), nullable=True),
        sa.Column('mode', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('pid', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('last_heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('last_execution_at', sa.DateTime(), nullable=True),
        sa.Column('restart_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('name')
    )


def downgrade() -> None:
    """Drop all tables"""
    op.drop_table('worker_records')

    op.drop_index(op.f('ix_progress_events_stream_id'), table_name='progress_events')
    op.drop_table('progress_events')

    op.drop_index('ix_processing_jobs_status_mode', table_name='processing_jobs')
    op.drop_index(op.f('ix_processing_jobs_status'), table_name='processing_jobs')
    op.drop_index(op.f('ix_processing_jobs_mode'), table_name='processing_jobs')
    op.drop_table('processing_jobs')

    op.drop_index(op.f('ix_execution_logs_status'), table_name='execution_logs')
    op.drop_index(op.f('ix_execution_logs_project_id'), table_name='execution_logs')
    op.drop_index(op.f('ix_execution_logs_execution_instance_id'), table_name='execution_logs')
    op.drop_table('execution_logs')

    op.drop_index(op.f('ix_execution_instances_status'), table_name='execution_instances')
    op.drop_index(op.f('ix_execution_instances_session_id'), table_name='execution_instances')
    op.drop_index(op.f('ix_execution_instances_job_id'), table_name='execution_instances')
    op.drop_index(op.f('ix_execution_instances_project_id'), table_name='execution_instances')
    op.drop_table('execution_instances')

    op.drop_index(op.f('ix_global_variables_project_id'), table_name='global_variables')
    op.drop_table('global_variables')

    op.drop_index(op.f('ix_projects_name'), table_name='projects')
    op.drop_table('projects')
