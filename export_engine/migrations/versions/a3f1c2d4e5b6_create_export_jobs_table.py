"""create export_jobs table

Revision ID: a3f1c2d4e5b6
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a3f1c2d4e5b6'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create export_jobs table"""

    op.create_table(
        'export_jobs',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('export_id', sa.String(length=36), nullable=False, comment='Public opaque export identifier (UUID)'),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='User who requested the export'),
        sa.Column('organization_id', sa.Integer(), nullable=False, comment='Organization the exported data belongs to'),
        sa.Column('resource_type', sa.String(length=50), nullable=False, comment='Resource being exported (donations, ...)'),
        sa.Column('format', sa.Enum('csv', 'excel', name='exportformat'), nullable=False, comment='Export file format (csv, excel)'),
        sa.Column('status', sa.Enum('pending', 'processing', 'completed', 'failed', 'cancelled', name='exportstatus'), nullable=False, comment='Current status of export job'),
        sa.Column('claim_token', sa.String(length=36), nullable=True, comment='Fencing token of the worker run that holds the processing claim'),
        sa.Column('current_percentage', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress_message', sa.String(length=255), nullable=True),
        sa.Column('filters', sa.JSON(), nullable=True, comment='Normalized filter parameters applied to the export'),
        sa.Column('file_path', sa.String(length=500), nullable=True, comment='Storage path of generated export file (set only when completed)'),
        sa.Column('file_size', sa.BigInteger(), nullable=True, comment='Artifact size in bytes (set only when completed)'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='Sanitized, user-facing error (set only when failed)'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),

        # Primary key
        sa.PrimaryKeyConstraint('id'),

        # Indexes for performance
        sa.Index('ix_export_jobs_export_id', 'export_id', unique=True),
        sa.Index('ix_export_jobs_user_id', 'user_id'),
        sa.Index('ix_export_jobs_organization_id', 'organization_id'),
        sa.Index('ix_export_jobs_resource_type', 'resource_type'),
        sa.Index('ix_export_jobs_status', 'status'),
        sa.Index('ix_export_jobs_created_at', 'created_at'),
        sa.Index('ix_export_jobs_expires_at', 'expires_at'),
        # Cleanup sweep and watchdog scans
        sa.Index('ix_export_jobs_status_expires_at', 'status', 'expires_at'),
        sa.Index('ix_export_jobs_user_status', 'user_id', 'status'),
    )


def downgrade() -> None:
    """Drop export_jobs table"""
    op.drop_table('export_jobs')
