# ballotbox/voting/workflow.py

# Eligibility and vote-submission workflow.
#
# Stateless between calls: every operation works on the request-scoped
# db.session and commits (or rolls back) before returning. Uniqueness of
# registrations and single-shot submission are enforced by the database
# (unique constraints plus a conditional has_voted update), never by a
# read-then-write check alone.

import logging
import time
from collections import namedtuple
from datetime import datetime, timezone

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from ballotbox import catalog, db
from ballotbox.database.models import Voter, VoterId, VoteRecord
from ballotbox.errors import ConflictError, ErrorCode, StoreError, ValidationError
from ballotbox.notifications.dispatcher import VoteSubmission
from ballotbox.security.input_validator import InputValidator

logger = logging.getLogger(__name__)

IdValidation = namedtuple("IdValidation", ["is_valid", "is_available", "message"])

MSG_NOT_FOUND = "Invalid ID - not found in voter registry"
MSG_ALREADY_USED = "This ID has already been used"


class ElectionWorkflow:
    def __init__(self, notifier=None, feed=None, audit=None,
                 max_attempts=3, retry_delay=0.2, recheck_eligibility_on_submit=False):
        self.notifier = notifier
        self.feed = feed
        self.audit = audit
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = retry_delay
        self.recheck_eligibility_on_submit = recheck_eligibility_on_submit
        self.validator = InputValidator()

    # -- transactions -------------------------------------------------------

    def _run_unit(self, action, unit):
        """
        Run `unit` and commit it as one transaction.

        Transient store errors roll back and re-run the whole unit, up to
        max_attempts. Domain errors and integrity errors roll back and propagate.
        Anything else from the store becomes StoreError.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = unit()
                db.session.commit()
                return result
            except (ValidationError, ConflictError, IntegrityError):
                db.session.rollback()
                raise
            except OperationalError as e:
                db.session.rollback()
                if attempt >= self.max_attempts:
                    logger.error("%s failed after %d attempts: %s", action, attempt, e)
                    raise StoreError() from e
                logger.warning("%s hit a transient store error (attempt %d/%d): %s",
                               action, attempt, self.max_attempts, e)
                time.sleep(self.retry_delay * attempt)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.exception("%s failed", action)
                raise StoreError() from e

    def _read(self, action, query):
        try:
            return query()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("%s failed", action)
            raise StoreError() from e

    def _audit(self, event_type, data, actor=None):
        if self.audit is not None:
            self.audit.log_event(event_type, data, actor=actor)

    def _publish_tally(self):
        if self.feed is None or not self.feed.has_subscribers():
            return
        try:
            self.feed.publish(self.get_tally())
        except StoreError:
            # subscribers recompute on their own refresh timer
            logger.warning("Skipped tally push, tally query failed")

    # -- eligibility --------------------------------------------------------

    def _find_voter_id(self, unique_id):
        return db.session.get(VoterId, unique_id)

    def _find_voter_by_unique_id(self, unique_id):
        return db.session.execute(
            select(Voter).where(Voter.unique_id == unique_id)
        ).scalar_one_or_none()

    def validate_unique_id(self, unique_id):
        def query():
            voter_id = self._find_voter_id(unique_id)
            if voter_id is None or not voter_id.is_active:
                return IdValidation(False, False, MSG_NOT_FOUND)
            if self._find_voter_by_unique_id(unique_id) is not None:
                return IdValidation(True, False, MSG_ALREADY_USED)
            return IdValidation(True, True, None)

        if not self.validator.validate_unique_id(unique_id):
            return IdValidation(False, False, MSG_NOT_FOUND)
        return self._read("validate_unique_id", query)

    def check_unique_id_usage(self, unique_id, current_email=None):
        """True when no voter other than `current_email` holds `unique_id`."""
        def query():
            stmt = select(Voter.email).where(Voter.unique_id == unique_id)
            if current_email:
                stmt = stmt.where(Voter.email != self.validator.normalize_email(current_email))
            return db.session.execute(stmt).first() is None

        return self._read("check_unique_id_usage", query)

    def login_or_register(self, email, unique_id):
        """
        Return the voter for (email, unique_id), creating it on first login.

        Raises ValidationError (INVALID_EMAIL, INVALID_ID) or
        ConflictError (ID_ALREADY_USED) or StoreError.
        """
        email = self.validator.normalize_email(email)
        if not self.validator.validate_email(email):
            raise ValidationError(ErrorCode.INVALID_EMAIL, "Please enter a valid email address")

        validation = self.validate_unique_id(unique_id)
        if not validation.is_valid:
            raise ValidationError(ErrorCode.INVALID_ID, validation.message)

        if not validation.is_available:
            existing = self._read("login_or_register", lambda: self._find_voter_by_unique_id(unique_id))
            if existing is not None and existing.email == email:
                return existing
            if existing is not None:
                raise ConflictError(ErrorCode.ID_ALREADY_USED, MSG_ALREADY_USED)

        def create():
            voter = Voter(email=email, unique_id=unique_id, has_voted=False)
            db.session.add(voter)
            db.session.flush()
            return voter

        try:
            voter = self._run_unit("login_or_register", create)
        except IntegrityError:
            # lost a first-login race; the winner's row is authoritative
            winner = self._read("login_or_register", lambda: self._find_voter_by_unique_id(unique_id))
            if winner is not None and winner.email == email:
                return winner
            raise ConflictError(ErrorCode.ID_ALREADY_USED, MSG_ALREADY_USED)

        logger.info("Registered voter %s for id %s", voter.id, unique_id)
        self._audit("voter_registered", {"voter_id": voter.id, "unique_id": unique_id})
        return voter

    # -- voting -------------------------------------------------------------

    def validate_ballot(self, votes):
        if not isinstance(votes, dict):
            raise ValidationError(ErrorCode.INVALID_BALLOT, "Ballot must map positions to candidates")
        missing, invalid = catalog.find_ballot_problems(votes)
        if invalid:
            raise ValidationError(ErrorCode.INVALID_BALLOT,
                                  "Unknown position or candidate: " + ", ".join(invalid))
        if missing:
            raise ConflictError(ErrorCode.INCOMPLETE_BALLOT,
                                "Please vote for every position. Missing: " + ", ".join(missing))

    def submit_votes(self, voter_id, votes):
        """
        Record a full-slate ballot for `voter_id`.

        The vote rows and the has_voted flip commit together or not at all.
        Notifications are queued after the commit and cannot fail the call.
        """
        self.validate_ballot(votes)

        def record():
            voter = db.session.get(Voter, voter_id)
            if voter is None:
                raise ValidationError(ErrorCode.UNKNOWN_VOTER, "Voter not found, please log in again")
            if self.recheck_eligibility_on_submit:
                voter_id_row = self._find_voter_id(voter.unique_id)
                if voter_id_row is None or not voter_id_row.is_active:
                    raise ValidationError(ErrorCode.INVALID_ID, MSG_NOT_FOUND)

            flipped = db.session.execute(
                update(Voter)
                .where(Voter.id == voter_id, Voter.has_voted.is_(False))
                .values(has_voted=True)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                raise ConflictError(ErrorCode.ALREADY_VOTED, "You have already voted")

            db.session.add_all([
                VoteRecord(voter_id=voter_id, position_id=position_id, candidate_id=candidate_id)
                for position_id, candidate_id in votes.items()
            ])
            db.session.flush()
            return voter.email, voter.unique_id

        try:
            email, unique_id = self._run_unit("submit_votes", record)
        except ConflictError:
            self._audit("duplicate_vote_attempt", {"voter_id": voter_id})
            raise
        except IntegrityError:
            self._audit("duplicate_vote_attempt", {"voter_id": voter_id})
            raise ConflictError(ErrorCode.ALREADY_VOTED, "You have already voted")

        submitted_at = datetime.now(timezone.utc)
        logger.info("Recorded ballot for voter %s", voter_id)
        self._audit("vote_cast", {"voter_id": voter_id, "positions": len(votes)})
        self._publish_tally()
        self._notify(VoteSubmission(email, unique_id, dict(votes), submitted_at))
        return True

    def resend_confirmation(self, unique_id, actor=None):
        """
        Queue the thank-you email again for the voter holding `unique_id`.

        Returns whether the message was queued (False when notifications are off).
        """
        def query():
            voter = self._require_voter(unique_id)
            rows = db.session.execute(
                select(VoteRecord.position_id, VoteRecord.candidate_id, VoteRecord.created_at)
                .where(VoteRecord.voter_id == voter.id)
            ).all()
            return voter, rows

        voter, rows = self._read("resend_confirmation", query)
        if not voter.has_voted or not rows:
            raise ConflictError(ErrorCode.NOT_VOTED, f"ID {unique_id} has not voted yet")

        submitted_at = max(created_at for _, _, created_at in rows)
        submission = VoteSubmission(
            voter.email, voter.unique_id,
            {position_id: candidate_id for position_id, candidate_id, _ in rows},
            submitted_at,
        )
        queued = bool(self.notifier and self.notifier.dispatch_confirmation(submission))
        self._audit("confirmation_resent", {"unique_id": unique_id, "queued": queued}, actor=actor)
        return queued

    def _notify(self, submission):
        if self.notifier is None:
            return
        try:
            self.notifier.dispatch(submission)
        except Exception:
            logger.exception("Vote notifications failed for %s", submission.unique_id)

    def get_tally(self):
        """positionId -> candidateId -> count, with every catalog position present."""
        def query():
            rows = db.session.execute(
                text("SELECT position_id, candidate_id, vote_count FROM vote_counts")
            ).all()
            tally = {position_id: {} for position_id in catalog.position_ids()}
            for position_id, candidate_id, vote_count in rows:
                tally.setdefault(position_id, {})[candidate_id] = int(vote_count)
            return tally

        return self._read("get_tally", query)

    # -- admin --------------------------------------------------------------

    def reset_all_votes(self, actor=None):
        def reset():
            deleted = db.session.execute(
                VoteRecord.__table__.delete()
            ).rowcount
            db.session.execute(
                update(Voter).values(has_voted=False).execution_options(synchronize_session=False)
            )
            return deleted

        deleted = self._run_unit("reset_all_votes", reset)
        logger.warning("All votes reset (%s rows removed)", deleted)
        self._audit("votes_reset", {"votes_deleted": deleted}, actor=actor)
        self._publish_tally()
        return deleted

    def _require_voter(self, unique_id):
        voter = self._find_voter_by_unique_id(unique_id)
        if voter is None:
            raise ValidationError(ErrorCode.UNKNOWN_VOTER, f"No voter registered with ID {unique_id}")
        return voter

    def delete_voter_votes(self, unique_id, actor=None):
        def delete_votes():
            voter = self._require_voter(unique_id)
            deleted = db.session.execute(
                VoteRecord.__table__.delete().where(VoteRecord.voter_id == voter.id)
            ).rowcount
            voter.has_voted = False
            return deleted

        deleted = self._run_unit("delete_voter_votes", delete_votes)
        logger.warning("Votes deleted for id %s (%s rows)", unique_id, deleted)
        self._audit("voter_votes_deleted", {"unique_id": unique_id, "votes_deleted": deleted}, actor=actor)
        self._publish_tally()
        return deleted

    def delete_voter_account(self, unique_id, actor=None):
        def delete_account():
            voter = self._require_voter(unique_id)
            deleted = db.session.execute(
                VoteRecord.__table__.delete().where(VoteRecord.voter_id == voter.id)
            ).rowcount
            db.session.delete(voter)
            return deleted

        deleted = self._run_unit("delete_voter_account", delete_account)
        logger.warning("Voter account deleted for id %s", unique_id)
        self._audit("voter_account_deleted", {"unique_id": unique_id, "votes_deleted": deleted}, actor=actor)
        self._publish_tally()
        return deleted

    def set_voter_id_active(self, unique_id, active, actor=None):
        def toggle():
            voter_id = self._find_voter_id(unique_id)
            if voter_id is None:
                raise ValidationError(ErrorCode.INVALID_ID, MSG_NOT_FOUND)
            voter_id.is_active = bool(active)
            return voter_id

        self._run_unit("set_voter_id_active", toggle)
        self._audit("voter_id_toggled", {"unique_id": unique_id, "is_active": bool(active)}, actor=actor)
        return True

    def add_voter_id(self, unique_id, voter_name=None, issued_by=None, notes=None, actor=None):
        if not self.validator.validate_unique_id(unique_id):
            raise ValidationError(ErrorCode.INVALID_ID,
                                  "IDs are 3-64 letters, digits, '-' or '_'")
        for name, value in (("voter_name", voter_name), ("issued_by", issued_by), ("notes", notes)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(ErrorCode.INVALID_REQUEST, f"'{name}' must be text")

        def add():
            voter_id = VoterId(
                unique_id=unique_id,
                is_active=True,
                voter_name=self.validator.sanitize_optional(voter_name, max_length=120),
                issued_by=self.validator.sanitize_optional(issued_by, max_length=64),
                notes=self.validator.sanitize_optional(notes, max_length=1000),
            )
            db.session.add(voter_id)
            db.session.flush()
            return voter_id

        try:
            voter_id = self._run_unit("add_voter_id", add)
        except IntegrityError:
            raise ConflictError(ErrorCode.DUPLICATE_ID, f"ID {unique_id} already exists in the registry")
        self._audit("voter_id_added", {"unique_id": unique_id}, actor=actor)
        return voter_id

    def get_voter_status(self):
        def query():
            rows = db.session.execute(
                select(VoterId, Voter)
                .outerjoin(Voter, Voter.unique_id == VoterId.unique_id)
                .order_by(VoterId.unique_id)
            ).all()
            return [
                {
                    "unique_id": voter_id.unique_id,
                    "voter_name": voter_id.voter_name,
                    "is_active": voter_id.is_active,
                    "issued_by": voter_id.issued_by,
                    "notes": voter_id.notes,
                    "email": voter.email if voter else None,
                    "has_registered": voter is not None,
                    "has_voted": bool(voter and voter.has_voted),
                }
                for voter_id, voter in rows
            ]

        return self._read("get_voter_status", query)
