import pytest
from mongomock_motor import AsyncMongoMockClient

from tests.helpers import seed


@pytest.fixture
def db():
    database = AsyncMongoMockClient()["agencydesk_test"]
    seed(database)
    return database


@pytest.fixture
def mailer():
    from email_service import EmailService
    return EmailService(transport="mock", timeout=5)


@pytest.fixture
def api(db, mailer):
    """TestClient on the real app, wired to the in-memory database."""
    from fastapi.testclient import TestClient
    from config import get_db
    from email_service import get_email_service
    from server import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_email_service] = lambda: mailer
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
