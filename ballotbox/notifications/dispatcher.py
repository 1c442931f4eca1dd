# ballotbox/notifications/dispatcher.py

# Vote confirmation and admin notification emails, delivered off the request
# path. Delivery problems are logged and never reach the voter.

import html
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from queue import Queue, Full, Empty
from typing import Dict, Optional

import requests

from ballotbox import catalog
from ballotbox.errors import NotificationError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass
class VoteSubmission:
    voter_email: str
    unique_id: str
    votes: Dict[str, str]
    submitted_at: datetime


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    reply_to: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)


class EmailClient:
    def __init__(self, api_key=None, sender="Election <noreply@example.com>",
                 api_url=RESEND_API_URL, timeout=10):
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url
        self.timeout = timeout

    @property
    def configured(self):
        return bool(self.api_key)

    def send(self, message: EmailMessage) -> bool:
        """
        Send one message through the Resend HTTP API.

        Returns False when no API key is configured (the message is only logged).
        Raises NotificationError on transport or API failure.
        """
        if not self.configured:
            logger.info("Email (dev) to=%s subject=%s", message.to, message.subject)
            return False

        payload = {
            "from": self.sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        if message.reply_to:
            payload["reply_to"] = message.reply_to
        try:
            response = requests.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NotificationError(f"Email transport failed: {e}") from e
        if response.status_code >= 400:
            raise NotificationError(f"Email API returned {response.status_code}: {response.text[:200]}")
        return True


def _ballot_rows(votes):
    rows = []
    for position in catalog.ELECTION_POSITIONS:
        candidate_id = votes.get(position.id)
        name = catalog.candidate_name(position.id, candidate_id) or "No vote recorded"
        rows.append((position.title, name, candidate_id or "none"))
    return rows


def build_voter_confirmation(submission: VoteSubmission, reply_to=None) -> EmailMessage:
    items = "".join(
        f"<tr><td>{html.escape(title)}</td><td>{html.escape(name)}</td></tr>"
        for title, name, _ in _ballot_rows(submission.votes)
    )
    body = (
        "<h2>Thank you for voting</h2>"
        f"<p>Your ballot for ID <strong>{html.escape(submission.unique_id)}</strong> "
        f"was recorded on {submission.submitted_at:%Y-%m-%d %H:%M:%S %Z}.</p>"
        f"<table>{items}</table>"
    )
    return EmailMessage(
        to=submission.voter_email,
        subject="Your vote has been submitted",
        html=body,
        reply_to=reply_to,
    )


def build_admin_summary(submission: VoteSubmission, admin_email) -> EmailMessage:
    items = "".join(
        f"<tr><td>{html.escape(title)}</td><td>{html.escape(name)}</td><td>{html.escape(cid)}</td></tr>"
        for title, name, cid in _ballot_rows(submission.votes)
    )
    body = (
        "<h2>New vote submitted</h2>"
        f"<p>Voter: {html.escape(submission.voter_email)}<br>"
        f"ID: {html.escape(submission.unique_id)}<br>"
        f"Submitted: {submission.submitted_at.isoformat()}</p>"
        f"<table>{items}</table>"
    )
    return EmailMessage(
        to=admin_email,
        subject=f"New vote submitted - {submission.voter_email}",
        html=body,
    )


TEST_UNIQUE_ID = "TEST-123"
TEST_VOTES = {"president": "raphael-iyama", "vice-president": "usman-ali"}

DELIVER_ALL = "all"
DELIVER_CONFIRMATION = "confirmation"


class NotificationDispatcher:
    def __init__(self,
                 email_client: EmailClient,
                 admin_email: Optional[str] = None,
                 enabled: bool = True,
                 max_queue_size: int = 1000):
        self.email_client = email_client
        self.admin_email = admin_email
        self.enabled = enabled
        self.queue: Queue = Queue(maxsize=max_queue_size)

        self.metrics = {
            "queued": 0,
            "dropped": 0,
            "voter_emails_sent": 0,
            "admin_emails_sent": 0,
            "failures": 0,
        }

        self.running = False
        self.worker = None
        self._start_lock = threading.Lock()

    def start(self):
        with self._start_lock:
            if self.running:
                return
            self.running = True
            self.worker = threading.Thread(target=self._process_queue, name="vote-notifications")
            self.worker.daemon = True
            self.worker.start()

    def status(self) -> Dict[str, bool]:
        return {
            "enabled": self.enabled,
            "resend_configured": self.email_client.configured,
            "admin_email_configured": bool(self.admin_email),
        }

    def dispatch(self, submission: VoteSubmission) -> bool:
        """Queue notifications for `submission`. Never blocks, never raises."""
        return self._enqueue(DELIVER_ALL, submission)

    def dispatch_confirmation(self, submission: VoteSubmission) -> bool:
        """Queue only the voter confirmation (admin resend)."""
        return self._enqueue(DELIVER_CONFIRMATION, submission)

    def _enqueue(self, kind, submission):
        if not self.enabled:
            return False
        try:
            self.start()
            self.queue.put_nowait((kind, submission))
            self.metrics["queued"] += 1
            return True
        except Full:
            logger.warning("Notification queue full - dropping emails for %s", submission.unique_id)
            self.metrics["dropped"] += 1
            return False
        except Exception:
            logger.exception("Could not queue notifications for %s", submission.unique_id)
            return False

    def deliver(self, submission: VoteSubmission) -> Dict[str, bool]:
        """Send the voter confirmation and the admin summary; report each outcome."""
        results = {"voter_email_sent": self.deliver_confirmation(submission), "admin_email_sent": False}

        if self.admin_email:
            results["admin_email_sent"] = self._send(
                build_admin_summary(submission, self.admin_email), "admin summary")
        else:
            logger.warning("No admin email configured, skipping admin summary")

        if results["admin_email_sent"]:
            self.metrics["admin_emails_sent"] += 1
        return results

    def deliver_confirmation(self, submission: VoteSubmission) -> bool:
        sent = self._send(build_voter_confirmation(submission, reply_to=self.admin_email), "voter confirmation")
        if sent:
            self.metrics["voter_emails_sent"] += 1
        return sent

    def send_test_email(self, to) -> bool:
        """Send a sample confirmation to `to` right away, bypassing the queue."""
        submission = VoteSubmission(
            voter_email=to,
            unique_id=TEST_UNIQUE_ID,
            votes=dict(TEST_VOTES),
            submitted_at=datetime.now(timezone.utc),
        )
        return self._send(build_voter_confirmation(submission, reply_to=self.admin_email), "test email")

    def _send(self, message, label):
        try:
            return self.email_client.send(message)
        except NotificationError as e:
            self.metrics["failures"] += 1
            logger.error("Failed to send %s: %s", label, e.message)
            return False

    def _process_queue(self):
        while self.running:
            try:
                kind, submission = self.queue.get(timeout=0.5)
            except Empty:
                continue
            try:
                if kind == DELIVER_CONFIRMATION:
                    self.deliver_confirmation(submission)
                else:
                    self.deliver(submission)
            except Exception:
                logger.exception("Error delivering vote notifications")
            finally:
                self.queue.task_done()

    def shutdown(self, timeout=5.0):
        self.running = False
        if self.worker:
            self.worker.join(timeout=timeout)
