# ballotbox/database/models.py

import uuid
from datetime import datetime, timezone

from sqlalchemy import DDL, event

from ballotbox import db

# Database schema: eligibility registry, voter records, vote ledger and
# the vote_counts view that tallies are read from.


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return str(uuid.uuid4())


class VoterId(db.Model):
    __tablename__ = 'valid_voter_ids'
    unique_id = db.Column(db.String(64), primary_key=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    voter_name = db.Column(db.String(120), nullable=True)
    issued_by = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def __repr__(self):
        return f'<VoterId {self.unique_id} active={self.is_active}>'


class Voter(db.Model):
    __tablename__ = 'voters'
    __table_args__ = (
        db.UniqueConstraint('email', 'unique_id', name='uq_voters_email_unique_id'),
    )
    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    email = db.Column(db.String(254), nullable=False)
    # first write wins: one voter per unique id at any time
    unique_id = db.Column(db.String(64), db.ForeignKey('valid_voter_ids.unique_id'),
                          unique=True, nullable=False)
    has_voted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    votes = db.relationship('VoteRecord', backref='voter', lazy=True, passive_deletes=True)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'unique_id': self.unique_id,
            'has_voted': self.has_voted,
        }

    def __repr__(self):
        return f'<Voter {self.id} id={self.unique_id} voted={self.has_voted}>'


class VoteRecord(db.Model):
    __tablename__ = 'votes'
    __table_args__ = (
        db.UniqueConstraint('voter_id', 'position_id', name='uq_votes_voter_position'),
    )
    id = db.Column(db.Integer, primary_key=True)
    voter_id = db.Column(db.String(36), db.ForeignKey('voters.id'), nullable=False)
    position_id = db.Column(db.String(64), nullable=False)
    candidate_id = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def __repr__(self):
        return f'<VoteRecord {self.position_id}={self.candidate_id} by Voter {self.voter_id}>'


CREATE_VOTE_COUNTS_VIEW = (
    "CREATE VIEW vote_counts AS "
    "SELECT position_id, candidate_id, COUNT(*) AS vote_count "
    "FROM votes GROUP BY position_id, candidate_id"
)
DROP_VOTE_COUNTS_VIEW = "DROP VIEW IF EXISTS vote_counts"

# The view lives and dies with the votes table
event.listen(VoteRecord.__table__, 'after_create', DDL(CREATE_VOTE_COUNTS_VIEW))
event.listen(VoteRecord.__table__, 'before_drop', DDL(DROP_VOTE_COUNTS_VIEW))
