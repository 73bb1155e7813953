"""create_article_sync_tables

Revision ID: b41c7e9d2a10
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'b41c7e9d2a10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'distributed_locks',
        sa.Column('lock_key', sa.String(length=255), nullable=False),
        sa.Column('holder_id', sa.String(length=64), nullable=False),
        sa.Column('expire_time', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('lock_key'),
    )
    op.create_index('ix_distributed_locks_expire_time', 'distributed_locks', ['expire_time'])

    op.create_table(
        'synced_articles',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.String(length=100), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('status', sa.Enum('ACTIVE', 'ARCHIVED', 'FAILED', name='articlestatus'), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('author', sa.String(length=100), nullable=False),
        sa.Column('digest', sa.Text(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('source_url', sa.String(length=1024), nullable=False),
        sa.Column('cover_url', sa.String(length=1024), nullable=False),
        sa.Column('published_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'external_id', name='uq_synced_articles_account_external'),
    )
    op.create_index('ix_synced_articles_account_id', 'synced_articles', ['account_id'])
    op.create_index('ix_synced_articles_status', 'synced_articles', ['status'])
    op.create_index('ix_synced_articles_published_at', 'synced_articles', ['published_at'])
    op.create_index('ix_synced_articles_updated_at', 'synced_articles', ['updated_at'])


def downgrade():
    op.drop_index('ix_synced_articles_updated_at', table_name='synced_articles')
    op.drop_index('ix_synced_articles_published_at', table_name='synced_articles')
    op.drop_index('ix_synced_articles_status', table_name='synced_articles')
    op.drop_index('ix_synced_articles_account_id', table_name='synced_articles')
    op.drop_table('synced_articles')
    sa.Enum(name='articlestatus').drop(op.get_bind(), checkfirst=True)
    op.drop_index('ix_distributed_locks_expire_time', table_name='distributed_locks')
    op.drop_table('distributed_locks')
