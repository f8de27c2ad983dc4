"""
Pytest fixtures for Sollar tests.
"""
import os
import tempfile

# CRITICAL: Disable rate limiting BEFORE any other imports
# This must be set before extensions is imported anywhere
os.environ['RATELIMIT_ENABLED'] = 'false'
os.environ.setdefault('LOG_DIR', tempfile.mkdtemp(prefix='sollar-test-logs-'))

import functools
import sys

import bcrypt
import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from audit import init_audit_tables
from config import reset_thresholds
from conformance import (
    Fixtures, provision_organization, provision_department, provision_questionnaire,
    provision_assessment,
)
from db import init_db
from roles import Role


# Cheap hashes keep provisioning fast; verify_password accepts any cost
_gensalt = bcrypt.gensalt


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    monkeypatch.setattr(bcrypt, 'gensalt', functools.partial(_gensalt, rounds=4))


@pytest.fixture(autouse=True)
def db_path():
    """Fresh database file per test, selected through DB_PATH."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    previous = os.environ.get('DB_PATH')
    os.environ['DB_PATH'] = path

    init_db()
    init_audit_tables()
    reset_thresholds()

    yield path

    reset_thresholds()
    if previous is None:
        os.environ.pop('DB_PATH', None)
    else:
        os.environ['DB_PATH'] = previous
    for suffix in ('', '-wal', '-shm'):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


_cached_app = None


@pytest.fixture
def app():
    """Application in testing mode. Created once; the database is per test."""
    global _cached_app

    if _cached_app is None:
        from app_factory import create_app
        _cached_app = create_app('testing')

    yield _cached_app


@pytest.fixture
def client(app):
    """Create a test client."""
    return app.test_client()


@pytest.fixture
def login(client):
    """Sign a principal in on the test client (only the user id goes in the session)."""
    def _login(principal):
        with client.session_transaction() as sess:
            sess['user_id'] = principal.user_id
        return client
    return _login


# ========================================
# PROVISIONED DATA
# ========================================

@pytest.fixture
def fixtures():
    """Conformance fixtures; every organization is torn down after the test."""
    fixtures = Fixtures()
    yield fixtures
    fixtures.teardown()


@pytest.fixture
def tenant(fixtures):
    """Organization with an admin, manager, member and viewer."""
    return provision_organization(fixtures, name='Acme Care')


@pytest.fixture
def other_tenant(fixtures):
    return provision_organization(fixtures, name='Globex Health')


def _survey_for(tenant, questions=None):
    department_id = provision_department(tenant, 'Support')
    if questions is None:
        questionnaire_id, question_ids = provision_questionnaire(tenant)
    else:
        questionnaire_id, question_ids = provision_questionnaire(tenant, questions=questions)
    assessment_id = provision_assessment(tenant, questionnaire_id, department_id=department_id)
    return {
        'tenant': tenant,
        'department_id': department_id,
        'questionnaire_id': questionnaire_id,
        'question_ids': question_ids,
        'assessment_id': assessment_id,
    }


@pytest.fixture
def survey(tenant):
    """Active assessment with the default three questions, targeting one department."""
    return _survey_for(tenant)


@pytest.fixture
def single_question_survey(tenant):
    """Active assessment with one risk-inverted likert question."""
    return _survey_for(tenant, questions=(('My workload is too high', 'demands_and_pace', True),))


@pytest.fixture
def other_survey(other_tenant):
    return _survey_for(other_tenant)


@pytest.fixture
def viewer(tenant):
    return tenant.as_role(Role.VIEWER)
