"""
Pytest configuration for verify_server. In-memory SQLite, fixed token secret, in-process sandbox provider.
"""
import os

# Must be set before verify_server.config is imported
os.environ["VERIFY_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["VERIFY_TOKEN_SECRET"] = "test-token-secret"
os.environ["VERIFY_FLOW_STORE_URL"] = "memory://"
os.environ.pop("VERIFY_SEED_WIDGET_ID", None)
os.environ.pop("VERIFY_PUBLIC_BASE_URL", None)

import json
import time
from datetime import date, datetime, timezone
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from fastapi.testclient import TestClient

from sandbox_provider.main import app as sandbox_app
from verify_server.config import PLATFORM_JWT_AUDIENCE, PLATFORM_JWT_SECRET
from verify_server.database import SessionLocal, init_db
from verify_server.flow_store import InMemoryFlowStore
from verify_server.identity_provider import IdentityProviderClient, get_provider_client
from verify_server.main import app
from verify_server.models import AccountVerification, AuditLog, VerificationSession, WidgetConfig
from verify_server.rate_limit import SlidingWindowRateLimiter

WIDGET_ID = "W1"
DOMAIN_WIDGET_ID = "W-SHOP"
DISABLED_WIDGET_ID = "W-OFF"


def _seed_widgets(db):
    widgets = [
        WidgetConfig(widget_id=WIDGET_ID, require_age_verification=True, age_verification_threshold=18, verification_validity_days=365),
        WidgetConfig(widget_id=DOMAIN_WIDGET_ID, domain="shop.example", require_age_verification=True, age_verification_threshold=21, verification_validity_days=30),
        WidgetConfig(widget_id=DISABLED_WIDGET_ID, require_age_verification=False),
    ]
    for w in widgets:
        if db.query(WidgetConfig).filter(WidgetConfig.widget_id == w.widget_id).first() is None:
            db.add(w)
    db.commit()


@pytest.fixture
def db():
    """Tables created and widgets seeded; per-test rows removed afterwards."""
    init_db()
    session = SessionLocal()
    try:
        _seed_widgets(session)
        yield session
    finally:
        session.rollback()
        for model in (VerificationSession, AccountVerification, AuditLog):
            session.query(model).delete()
        session.commit()
        session.close()


@pytest.fixture
def flow_store():
    store = InMemoryFlowStore()
    app.state.flow_store = store
    yield store
    app.state.flow_store = None


@pytest.fixture
def client(db, flow_store):
    """App client with a fresh rate limiter and the sandbox provider mounted in-process."""
    app.state.rate_limiter = SlidingWindowRateLimiter()
    provider = IdentityProviderClient(TestClient(sandbox_app), base_url="http://testserver")
    app.dependency_overrides[get_provider_client] = lambda: provider
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sandbox():
    return TestClient(sandbox_app)


def dob_for_age(years: int) -> date:
    """A date of birth that is `years` old today (birthday already passed this year)."""
    today = datetime.now(timezone.utc).date()
    return date(today.year - years, 1, 1)


def platform_token(user_id: str = "user-1", expires_in: int = 300) -> str:
    now = int(time.time())
    return jwt.encode(
        {"sub": user_id, "aud": PLATFORM_JWT_AUDIENCE, "iat": now, "exp": now + expires_in},
        PLATFORM_JWT_SECRET,
        algorithm="HS256",
    )


def approve_at_sandbox(sandbox: TestClient, auth_url: str, dob: date) -> tuple[str, str]:
    """Play the visitor at the provider: submit the consent form, return (code, state) from the redirect."""
    query = parse_qs(urlparse(auth_url).query)
    r = sandbox.post(
        "/public/oauth2/1/authorize",
        data={
            "client_id": query["client_id"][0],
            "redirect_uri": query["redirect_uri"][0],
            "state": query["state"][0],
            "code_challenge": query["code_challenge"][0],
            "decision": "allow",
            "dob": dob.isoformat(),
        },
        follow_redirects=False,
    )
    assert r.status_code == 302
    redirect = parse_qs(urlparse(r.headers["location"]).query)
    return redirect["code"][0], redirect["state"][0]


def handshake_message(html_text: str) -> dict:
    """The message the callback page posts to the opener."""
    marker = '<script type="application/json" id="verification-result">'
    start = html_text.index(marker) + len(marker)
    end = html_text.index("</script>", start)
    return json.loads(html_text[start:end])
