"""
tests/conftest.py -- Shared test fixtures for AuthCore unit and integration tests.

This module provides:
  - settings / store / hasher / notifier: isolated building blocks for unit tests
  - tokens / two_factor / oauth / auth_service: services wired like production
  - _make_test_store(): named shared-memory store for TestClient tests
  - _patch_lifespan(): wires the test store into app.state, bypassing real startup
  - api: ApiHarness (TestClient, store, notifier, mocked provider HTTP session)

Design: Unit-test stores use plain sqlite:///:memory: (one thread, one
connection). TestClient runs route handlers in a thread pool, so API stores
use named shared-memory URIs (file:name?mode=memory&cache=shared&uri=true)
which share one in-memory instance across all connections in the process.

DEBUG must be set before any core/auth/api import so get_settings()
auto-generates signing secrets in dev mode instead of raising
ConfigurationError. bcrypt rounds drop to 4 to keep the suite fast.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import so get_settings() can
# auto-generate secrets in dev mode instead of raising ConfigurationError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")

import pytest
import requests
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_services
from auth.oauth import GOOGLE_TOKENINFO_URL, OAuthService
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import TokenService
from auth.two_factor import TwoFactorService
from core.config import Settings, get_settings

TEST_JWT_SECRET = "test-access-secret-0123456789abcdef0123456789"
TEST_JWT_REFRESH_SECRET = "test-refresh-secret-0123456789abcdef012345678"
TEST_SESSION_SECRET = "test-session-secret-0123456789abcdef012345678"
STRONG_PASSWORD = "P@ssw0rd1"


# ---------------------------------------------------------------------------
# Notifier double
# ---------------------------------------------------------------------------


@dataclass
class SentMessage:
    kind: str
    email: str
    secret: str | None = None


class RecordingNotifier:
    """Keeps every outgoing message so tests can read the codes a user would receive."""

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []

    def send_verification_code(self, email: str, code: str) -> bool:
        self.sent.append(SentMessage("verification", email, code))
        return True

    def send_password_reset(self, email: str, token: str) -> bool:
        self.sent.append(SentMessage("password_reset", email, token))
        return True

    def send_welcome(self, email: str, name: str) -> bool:
        self.sent.append(SentMessage("welcome", email))
        return True

    def last(self, kind: str, email: str | None = None) -> str:
        for message in reversed(self.sent):
            if message.kind == kind and (email is None or message.email == email):
                return message.secret
        raise AssertionError(f"no {kind} message sent")


def fake_response(payload: dict, status_code: int = 200) -> MagicMock:
    """requests.Response stand-in: .json() returns payload, raise_for_status() honours status_code."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.json.return_value = payload
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    else:
        resp.raise_for_status.return_value = None
    return resp


def google_responses(profile: dict, audience: str = "test-google-client"):
    """http.get side_effect for the Google access-token path.

    tokeninfo reports the token as issued to `audience`; every other URL
    (userinfo) answers with `profile`.
    """

    def respond(url, **kwargs):
        if url == GOOGLE_TOKENINFO_URL:
            return fake_response({"aud": audience, "azp": audience, "sub": profile.get("sub")})
        return fake_response(profile)

    return respond


# ---------------------------------------------------------------------------
# Unit-test fixtures (function scoped, fresh in-memory DB each)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        jwt_secret=TEST_JWT_SECRET,
        jwt_refresh_secret=TEST_JWT_REFRESH_SECRET,
        session_secret=TEST_SESSION_SECRET,
        password_hash_rounds=4,
        google_client_id="test-google-client",
        google_client_secret="test-google-secret",
        facebook_app_id="1234567890",
        facebook_app_secret="test-facebook-secret",
    )


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def http() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def tokens(store, hasher, settings) -> TokenService:
    return TokenService(store, hasher, settings)


@pytest.fixture
def two_factor(store, hasher, settings) -> TwoFactorService:
    return TwoFactorService(store, hasher, settings)


@pytest.fixture
def oauth(store, hasher, settings, http) -> OAuthService:
    return OAuthService(store, hasher, settings, http=http)


@pytest.fixture
def auth_service(store, hasher, tokens, two_factor, oauth, notifier, settings) -> AuthService:
    return AuthService(store, hasher, tokens, two_factor, oauth, notifier, settings)


# ---------------------------------------------------------------------------
# TestClient fixtures
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> CredentialStore:
    """Create an isolated named shared-memory SQLite store.

    Named URIs allow multiple connections (from different threads in TestClient)
    to access the same in-memory database. Plain ':memory:' would give each
    thread a blank schema, causing 'no such table' errors on the first query.
    """
    return CredentialStore(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: CredentialStore, settings: Settings, http, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Uses the same build_services() as production so routes see a fully wired
    graph, only with the test store, a recording notifier and a mocked
    provider HTTP session.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, settings, store, http, notifier)
        yield

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    store: CredentialStore
    notifier: RecordingNotifier
    http: MagicMock


@pytest.fixture(scope="module")
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    One TestClient per test module for speed. Rate limiting is switched off
    here; test_rate_limit.py turns it back on for its own assertions.
    """
    store = _make_test_store(os.urandom(4).hex())
    notifier = RecordingNotifier()
    http = MagicMock(spec=requests.Session)
    api_settings = get_settings().model_copy(
        update={"google_client_id": "test-google-client", "google_client_secret": "test-google-secret"}
    )
    app.router.lifespan_context = _patch_lifespan(store, api_settings, http, notifier)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, notifier=notifier, http=http)

    limiter.enabled = True
    store.close()


def register_and_login(api: ApiHarness, email: str, password: str = STRONG_PASSWORD) -> dict:
    """Register a user through the API and return the login response body."""
    resp = api.client.post("/api/v1/auth/register", json={"email": email, "password": password, "name": "Test User"})
    assert resp.status_code == 201, resp.text
    resp = api.client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
