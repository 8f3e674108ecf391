"""create scrape_jobs table

Adds the scrape_jobs table backing the persistent scrape queue. Each row
is one queued scrape of a BGG game with its lifecycle state, retry
bookkeeping and optional batch id. Batches are not stored separately;
they are derived by grouping on batch_id.

See also: src/entities/scrape_job.py (ScrapeJob entity)

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the scrape_jobs table and its lookup indexes.

    - status: claim query and status counts
    - game_id: duplicate check on enqueue
    - batch_id: batch progress aggregation
    """
    op.create_table(
        'scrape_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('game_id', sa.String(length=32), nullable=False),
        sa.Column('game_name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('batch_id', sa.String(length=36), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_scrape_jobs_status'), 'scrape_jobs', ['status'])
    op.create_index(op.f('ix_scrape_jobs_game_id'), 'scrape_jobs', ['game_id'])
    op.create_index(op.f('ix_scrape_jobs_batch_id'), 'scrape_jobs', ['batch_id'])


def downgrade() -> None:
    """Drop the scrape_jobs table and its indexes."""
    op.drop_index(op.f('ix_scrape_jobs_batch_id'), table_name='scrape_jobs')
    op.drop_index(op.f('ix_scrape_jobs_game_id'), table_name='scrape_jobs')
    op.drop_index(op.f('ix_scrape_jobs_status'), table_name='scrape_jobs')
    op.drop_table('scrape_jobs')
