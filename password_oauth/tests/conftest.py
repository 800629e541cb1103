"""
Pytest configuration. Every test gets its own app backed by a fresh in-memory SQLite DB.
"""
import pytest
from fastapi.testclient import TestClient

from password_oauth.config import OAuthSettings
from password_oauth.main import create_app
from password_oauth.passwords import hash_password

TEST_PASSWORD = "correct horse battery staple"


@pytest.fixture(scope="session")
def password_hash():
    return hash_password(TEST_PASSWORD)


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def settings(password_hash):
    return OAuthSettings(
        client_id="static-client",
        client_secret="static-client-secret",
        session_secret="test-session-secret",
        api_key="test-api-key",
        server_url="http://testserver",
        database_url="sqlite:///:memory:",
        password_hash=password_hash,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def logged_in(client, password):
    """TestClient whose session cookie carries authenticated=True."""
    response = client.post(
        "/login",
        data={"password": password, "original_url": "/oauth/authorize"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    return client
