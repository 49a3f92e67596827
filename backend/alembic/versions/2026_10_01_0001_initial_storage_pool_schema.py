"""storage accounts, assets, conversion jobs and hls segments

Revision ID: 2026_10_01_0001
Revises:
Create Date: 2026-10-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers
revision: str = '2026_10_01_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'storage_accounts',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('credentials', sa.JSON(), nullable=False),
        sa.Column('capacity_bytes', sa.BigInteger(), nullable=False),
        sa.Column('used_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('last_reconciled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_storage_accounts_email', 'storage_accounts', ['email'], unique=True)
    op.create_index('ix_storage_accounts_is_active', 'storage_accounts', ['is_active'])

    op.create_table(
        'assets',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('identifier', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False),
        sa.Column('media_type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='processing'),
        sa.Column('source', sa.String(), nullable=False, server_default='upload'),
        sa.Column('folder_tag', sa.String(), nullable=True),
        sa.Column('account_id', sa.UUID(), nullable=True),
        sa.Column('remote_id', sa.String(), nullable=True),
        sa.Column('thumbnail_account_id', sa.UUID(), nullable=True),
        sa.Column('thumbnail_remote_id', sa.String(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('extra', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['storage_accounts.id']),
        sa.ForeignKeyConstraint(['thumbnail_account_id'], ['storage_accounts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_assets_identifier', 'assets', ['identifier'], unique=True)
    op.create_index('ix_assets_category', 'assets', ['category'])
    op.create_index('ix_assets_status', 'assets', ['status'])
    op.create_index('ix_assets_folder_tag', 'assets', ['folder_tag'])
    op.create_index('ix_assets_remote_id', 'assets', ['remote_id'])
    op.create_index('ix_assets_created_at', 'assets', ['created_at'])

    op.create_table(
        'conversion_jobs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('asset_id', sa.UUID(), nullable=False),
        sa.Column('resolution', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='waiting'),
        sa.Column('progress_percent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('width', sa.Integer(), nullable=False),
        sa.Column('height', sa.Integer(), nullable=False),
        sa.Column('video_bitrate', sa.String(), nullable=False),
        sa.Column('audio_bitrate', sa.String(), nullable=False),
        sa.Column('rq_job_id', sa.String(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['asset_id'], ['assets.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_conversion_jobs_asset_id', 'conversion_jobs', ['asset_id'])
    op.create_index('ix_conversion_jobs_asset_resolution', 'conversion_jobs', ['asset_id', 'resolution'], unique=True)
    op.create_index('ix_conversion_jobs_status', 'conversion_jobs', ['status'])
    op.create_index('ix_conversion_jobs_rq_job_id', 'conversion_jobs', ['rq_job_id'])
    op.create_index('ix_conversion_jobs_created_at', 'conversion_jobs', ['created_at'])

    op.create_table(
        'segments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('asset_id', sa.UUID(), nullable=False),
        sa.Column('resolution', sa.String(), nullable=False),
        sa.Column('index', sa.Integer(), nullable=False),
        sa.Column('duration', sa.Float(), nullable=False),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('remote_id', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['asset_id'], ['assets.id']),
        sa.ForeignKeyConstraint(['account_id'], ['storage_accounts.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('asset_id', 'resolution', 'index', name='uq_segments_asset_resolution_index')
    )
    op.create_index('ix_segments_asset_id', 'segments', ['asset_id'])
    op.create_index('ix_segments_resolution', 'segments', ['resolution'])


def downgrade() -> None:
    op.drop_table('segments')
    op.drop_table('conversion_jobs')
    op.drop_table('assets')
    op.drop_table('storage_accounts')
