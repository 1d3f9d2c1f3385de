# interview_billing/conftest.py
import base64
import os
from datetime import datetime, timezone

import pytest

TEST_CLERK_SECRET = "test-clerk-secret-key"
TEST_WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"test-webhook-signing-secret").decode()

# Settings are read at import time; pin the test environment first.
os.environ["ENV"] = "test"
os.environ["CLERK_SECRET_KEY"] = TEST_CLERK_SECRET
os.environ["CLERK_WEBHOOK_SECRET"] = TEST_WEBHOOK_SECRET
os.environ["ALLOW_DEV_USER_HEADER"] = "true"
os.environ.pop("CLERK_JWKS_URL", None)
os.environ.pop("CLERK_ISSUER", None)
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("DATABASE_URL", os.environ["TEST_DATABASE_URL"])


@pytest.fixture(scope="session")
def db_url():
    """Database used by the suite (in-memory SQLite unless TEST_DATABASE_URL says otherwise)."""
    return os.environ["TEST_DATABASE_URL"]


@pytest.fixture(scope="session", autouse=True)
def engine(db_url):
    from interview_billing.core.database import dispose_engine, init_engine

    eng = init_engine(db_url)
    yield eng
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_db(engine):
    """Fresh schema for every test."""
    from interview_billing.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from interview_billing.main import app

    return TestClient(app)


@pytest.fixture
def user_headers():
    """Headers authenticating as ``user_id`` through the dev header."""
    def _headers(user_id: str = "user_test_123"):
        return {"X-User-Id": user_id}
    return _headers


@pytest.fixture
def jwt_headers():
    """Bearer headers for a signed test token carrying optional plan claims."""
    from interview_billing.core.clerk_auth import create_test_jwt

    def _headers(user_id: str = "user_test_123", plans=None, email="test@example.com"):
        token = create_test_jwt(sub=user_id, email=email, plans=plans, secret=TEST_CLERK_SECRET)
        return {"Authorization": f"Bearer {token}"}
    return _headers
