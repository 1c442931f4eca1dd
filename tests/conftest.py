import pytest

from ballotbox import create_app, db
from ballotbox.authentication.rbac import UserRole, issue_token
from ballotbox.catalog import ELECTION_POSITIONS
from ballotbox.database.models import VoterId
from ballotbox.services import get_services

ADMIN_PASSWORD = "correct-horse-battery-staple"
REGISTERED_IDS = ["GCN001", "GCN002", "GCN003", "GCN004", "GCN005"]


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SECRET_KEY': 'test-secret',
        'JWT_SECRET_KEY': 'test-jwt-secret-key-with-enough-length-for-hs256',
        'ADMIN_USERNAME': 'admin',
        'ADMIN_PASSWORD': ADMIN_PASSWORD,
        'ADMIN_EMAIL': 'admin@example.com',
        'NOTIFICATIONS_ENABLED': False,
        'RESEND_API_KEY': None,
        'RATELIMIT_ENABLED': False,
        'AUDIT_LOG_DIR': str(tmp_path / 'audit'),
        'STORE_RETRY_DELAY_SECONDS': 0,
        'RESULTS_REFRESH_SECONDS': 0.05,
        'LOG_LEVEL': 'WARNING',
    })
    with app.app_context():
        db.create_all()
        for unique_id in REGISTERED_IDS:
            db.session.add(VoterId(unique_id=unique_id, is_active=True, issued_by='seed'))
        db.session.add(VoterId(unique_id='GCN999', is_active=False, issued_by='seed'))
        db.session.commit()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return get_services()


@pytest.fixture
def workflow(services):
    return services.workflow


@pytest.fixture
def full_ballot():
    """First candidate for every position."""
    return {position.id: position.candidates[0].id for position in ELECTION_POSITIONS}


@pytest.fixture
def admin_headers(app):
    token = issue_token('admin', UserRole.ADMIN)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def make_ballot():
    def build(**overrides):
        votes = {position.id: position.candidates[0].id for position in ELECTION_POSITIONS}
        votes.update({key.replace("_", "-"): value for key, value in overrides.items()})
        return votes
    return build


@pytest.fixture
def admin_password():
    return ADMIN_PASSWORD
