import os

os.environ["FLASK_SECRET_KEY"] = "test-secret-key"
os.environ["RUN_SCHEDULER"] = "false"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["WTF_CSRF_ENABLED"] = "false"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("BREVO_API_KEY", None)

import pytest

import attachments as attachment_store
import backend
import booking_db

PROFILES = {
    'user-1': {'id': 'user-1', 'email': 'alice@example.com', 'full_name': 'Alice Player', 'role': 'user'},
    'org-1': {'id': 'org-1', 'email': 'arbiter@example.com', 'full_name': 'Olga Organizer', 'role': 'organizer'},
    'org-2': {'id': 'org-2', 'email': 'other@example.com', 'full_name': 'Oscar Other', 'role': 'organizer'},
    'admin-1': {'id': 'admin-1', 'email': 'admin@example.com', 'full_name': 'Ada Admin', 'role': 'admin'},
}


@pytest.fixture
def app():
    backend.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
    return backend.app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def profiles(monkeypatch):
    monkeypatch.setattr(booking_db, 'get_profile', lambda profile_id: PROFILES.get(str(profile_id)))
    return PROFILES


@pytest.fixture
def login(client, profiles):
    def _login(profile_id):
        with client.session_transaction() as sess:
            sess['profile_id'] = profile_id
        return profiles[profile_id]
    return _login


@pytest.fixture
def store_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(attachment_store, 'ATTACHMENT_STORE_DIR', str(tmp_path))
    return tmp_path


@pytest.fixture
def event():
    return {
        'id': 'event-1',
        'title': 'Spring Rapid Open',
        'alias': 'spring-rapid',
        'start_date': '2099-03-01T09:00:00Z',
        'location': 'Town Hall',
        'organizer_id': 'org-1',
        'timeline': {'refund': [
            {'from_date': None, 'to_date': '2099-02-01T00:00:00Z', 'type': 'percentage', 'value': 100},
            {'from_date': '2099-02-01T00:00:00Z', 'to_date': None, 'type': 'percentage', 'value': 50},
        ]},
    }
