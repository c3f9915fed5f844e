"""add_retired_export_secrets

Revision ID: 2b3c4d5e6f70
Revises: 1a2b3c4d5e6f
Create Date: 2026-10-19

Adds:
- retired_export_secrets table holding hashes of spent download secrets
"""
from alembic import op
import sqlalchemy as sa

revision = '2b3c4d5e6f70'
down_revision = '1a2b3c4d5e6f'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'retired_export_secrets',
        sa.Column('secret_hash', sa.String(64), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('retired_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('secret_hash'),
    )
    op.create_index('idx_retired_export_secrets_expires_at', 'retired_export_secrets', ['expires_at'])


def downgrade() -> None:
    op.drop_index('idx_retired_export_secrets_expires_at', table_name='retired_export_secrets')
    op.drop_table('retired_export_secrets')
