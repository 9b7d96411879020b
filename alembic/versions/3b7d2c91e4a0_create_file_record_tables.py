"""Create file record tables

Revision ID: 3b7d2c91e4a0
Revises:
Create Date: 2026-10-19 10:00:00.000000

Creates file_record plus its tag and metadata child tables.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import sqlmodel


# revision identifiers, used by Alembic.
revision: str = '3b7d2c91e4a0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create file_record, file_record_tag and file_record_metadata."""

    op.create_table(
        'file_record',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column(
            'storage_ref',
            sqlmodel.sql.sqltypes.AutoString(length=1024),
            nullable=False
        ),
        sa.Column('url', sqlmodel.sql.sqltypes.AutoString(length=2048), nullable=False),
        sa.Column(
            'secure_url',
            sqlmodel.sql.sqltypes.AutoString(length=2048),
            nullable=False
        ),
        sa.Column(
            'original_name',
            sqlmodel.sql.sqltypes.AutoString(length=1024),
            nullable=False
        ),
        sa.Column(
            'sanitized_name',
            sqlmodel.sql.sqltypes.AutoString(length=255),
            nullable=False
        ),
        sa.Column(
            'mime_type',
            sqlmodel.sql.sqltypes.AutoString(length=255),
            nullable=False
        ),
        sa.Column('size_bytes', sa.Integer(), nullable=False),
        sa.Column('checksum', sqlmodel.sql.sqltypes.AutoString(length=64), nullable=True),
        sa.Column(
            'uploaded_by',
            sqlmodel.sql.sqltypes.AutoString(length=255),
            nullable=True
        ),
        sa.Column('is_public', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        op.f('ix_file_record_storage_ref'), 'file_record', ['storage_ref'], unique=True
    )
    op.create_index(op.f('ix_file_record_mime_type'), 'file_record', ['mime_type'])
    op.create_index(op.f('ix_file_record_uploaded_by'), 'file_record', ['uploaded_by'])
    op.create_index(op.f('ix_file_record_is_public'), 'file_record', ['is_public'])
    op.create_index(op.f('ix_file_record_created_at'), 'file_record', ['created_at'])

    op.create_table(
        'file_record_tag',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('file_record_id', sa.Uuid(), nullable=False),
        sa.Column('tag', sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.ForeignKeyConstraint(
            ['file_record_id'], ['file_record.id'], ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('file_record_id', 'tag', name='uq_file_record_tag')
    )
    op.create_index(op.f('ix_file_record_tag_tag'), 'file_record_tag', ['tag'])

    op.create_table(
        'file_record_metadata',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('file_record_id', sa.Uuid(), nullable=False),
        sa.Column('key', sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(
            ['file_record_id'], ['file_record.id'], ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'file_record_id', 'key',
            name='uq_file_record_metadata_key'
        )
    )
    op.create_index(
        op.f('ix_file_record_metadata_key'), 'file_record_metadata', ['key']
    )


def downgrade() -> None:
    """Drop the file record tables."""
    op.drop_index(op.f('ix_file_record_metadata_key'), table_name='file_record_metadata')
    op.drop_table('file_record_metadata')
    op.drop_index(op.f('ix_file_record_tag_tag'), table_name='file_record_tag')
    op.drop_table('file_record_tag')
    op.drop_index(op.f('ix_file_record_created_at'), table_name='file_record')
    op.drop_index(op.f('ix_file_record_is_public'), table_name='file_record')
    op.drop_index(op.f('ix_file_record_uploaded_by'), table_name='file_record')
    op.drop_index(op.f('ix_file_record_mime_type'), table_name='file_record')
    op.drop_index(op.f('ix_file_record_storage_ref'), table_name='file_record')
    op.drop_table('file_record')
