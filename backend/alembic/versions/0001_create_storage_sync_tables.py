"""create_storage_sync_tables

Revision ID: 0001a7c3e9b2
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001a7c3e9b2'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create connection, folder, sync state, catalog and audit tables."""
    op.create_table(
        'storage_connections',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            'status',
            sa.Enum('active', 'disconnected', name='connectionstatus'),
            nullable=False,
        ),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('user_id', 'provider', name='uq_storage_connections_user_provider'),
    )
    op.create_index(
        'ix_storage_connections_user_status',
        'storage_connections',
        ['user_id', 'status']
    )

    op.create_table(
        'root_folders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('provider_folder_id', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('user_id', 'provider', name='uq_root_folders_user_provider'),
    )

    op.create_table(
        'folder_mappings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('gallery_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('provider_folder_id', sa.String(255), nullable=False),
        sa.Column('parent_folder_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('gallery_id', 'provider', name='uq_folder_mappings_gallery_provider'),
    )
    op.create_index(
        'ix_folder_mappings_provider_folder',
        'folder_mappings',
        ['provider', 'provider_folder_id']
    )

    op.create_table(
        'sync_state',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('last_sync_token', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('user_id', 'provider', name='uq_sync_state_user_provider'),
    )

    op.create_table(
        'albums',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column(
            'parent_id',
            sa.Integer(),
            sa.ForeignKey('albums.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_albums_user_id', 'albums', ['user_id'])

    op.create_table(
        'photos',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'album_id',
            sa.Integer(),
            sa.ForeignKey('albums.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('name', sa.String(512), nullable=False),
        sa.Column('provider_file_id', sa.String(255), nullable=True),
        sa.Column('mime_type', sa.String(100), nullable=True),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_photos_provider_file_id', 'photos', ['provider_file_id'])
    op.create_index('ix_photos_album_id', 'photos', ['album_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=True),
        sa.Column('metadata', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_audit_logs_user_time', 'audit_logs', ['user_id', 'created_at'])
    op.create_index('ix_audit_logs_action_time', 'audit_logs', ['action', 'created_at'])
    op.create_index('ix_audit_logs_resource', 'audit_logs', ['resource_type', 'resource_id'])


def downgrade() -> None:
    """Drop all storage sync tables."""
    op.drop_index('ix_audit_logs_resource', 'audit_logs')
    op.drop_index('ix_audit_logs_action_time', 'audit_logs')
    op.drop_index('ix_audit_logs_user_time', 'audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_photos_album_id', 'photos')
    op.drop_index('ix_photos_provider_file_id', 'photos')
    op.drop_table('photos')
    op.drop_index('ix_albums_user_id', 'albums')
    op.drop_table('albums')
    op.drop_table('sync_state')
    op.drop_index('ix_folder_mappings_provider_folder', 'folder_mappings')
    op.drop_table('folder_mappings')
    op.drop_table('root_folders')
    op.drop_index('ix_storage_connections_user_status', 'storage_connections')
    op.drop_table('storage_connections')
    sa.Enum(name='connectionstatus').drop(op.get_bind(), checkfirst=True)
