# ballotbox/services.py

# Per-app service wiring. Views reach services through current_app so that
# tests can build isolated apps.

from types import SimpleNamespace

from flask import current_app

from ballotbox.audit.audit_logger import AuditLogger
from ballotbox.notifications.dispatcher import EmailClient, NotificationDispatcher
from ballotbox.security.input_validator import InputValidator
from ballotbox.security.intrusion_detection import IntrusionDetection
from ballotbox.voting.vote_feed import VoteFeed
from ballotbox.voting.workflow import ElectionWorkflow

EXTENSION_KEY = 'ballotbox'


def init_services(app):
    config = app.config
    audit = AuditLogger(log_dir=config['AUDIT_LOG_DIR'])
    feed = VoteFeed()
    notifier = NotificationDispatcher(
        EmailClient(
            api_key=config.get('RESEND_API_KEY'),
            sender=config['EMAIL_FROM'],
            api_url=config['RESEND_API_URL'],
        ),
        admin_email=config.get('ADMIN_EMAIL'),
        enabled=config['NOTIFICATIONS_ENABLED'],
    )
    workflow = ElectionWorkflow(
        notifier=notifier,
        feed=feed,
        audit=audit,
        max_attempts=config['STORE_MAX_ATTEMPTS'],
        retry_delay=config['STORE_RETRY_DELAY_SECONDS'],
        recheck_eligibility_on_submit=config['RECHECK_ELIGIBILITY_ON_SUBMIT'],
    )
    services = SimpleNamespace(
        audit=audit,
        feed=feed,
        notifier=notifier,
        workflow=workflow,
        validator=InputValidator(),
        admin_guard=IntrusionDetection(),
    )
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services():
    return current_app.extensions[EXTENSION_KEY]


def get_workflow():
    return get_services().workflow
