"""voter registry, voters, votes and the vote_counts view

Revision ID: 0001_initial_schema
Revises:
Create Date: 2025-06-01 00:00:00

"""
from alembic import op
import sqlalchemy as sa

from ballotbox.database.models import CREATE_VOTE_COUNTS_VIEW, DROP_VOTE_COUNTS_VIEW

# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'valid_voter_ids',
        sa.Column('unique_id', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('voter_name', sa.String(length=120), nullable=True),
        sa.Column('issued_by', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('unique_id'),
    )
    op.create_table(
        'voters',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.String(length=254), nullable=False),
        sa.Column('unique_id', sa.String(length=64), nullable=False),
        sa.Column('has_voted', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['unique_id'], ['valid_voter_ids.unique_id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('unique_id'),
        sa.UniqueConstraint('email', 'unique_id', name='uq_voters_email_unique_id'),
    )
    op.create_table(
        'votes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('voter_id', sa.String(length=36), nullable=False),
        sa.Column('position_id', sa.String(length=64), nullable=False),
        sa.Column('candidate_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['voter_id'], ['voters.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('voter_id', 'position_id', name='uq_votes_voter_position'),
    )
    op.execute(CREATE_VOTE_COUNTS_VIEW)


def downgrade():
    op.execute(DROP_VOTE_COUNTS_VIEW)
    op.drop_table('votes')
    op.drop_table('voters')
    op.drop_table('valid_voter_ids')
