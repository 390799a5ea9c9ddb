"""Tests for flow initiation (widget and logged-in account)."""
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

from sqlalchemy.exc import OperationalError

from conftest import DISABLED_WIDGET_ID, DOMAIN_WIDGET_ID, WIDGET_ID, platform_token
from verify_server.audit import EVENT_FLOW_INITIATED, flow_ref
from verify_server.flow_store import AccountSubject, FlowStoreUnavailable, WidgetSubject
from verify_server.models import AuditLog
from verify_server.pkce import derive_challenge


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["service"] == "verify_server"


def test_init_returns_auth_url_and_stores_flow(client, flow_store):
    r = client.post("/api/verify-age/init", json={"widgetId": WIDGET_ID})
    assert r.status_code == 200
    data = r.json()
    query = parse_qs(urlparse(data["authUrl"]).query)
    assert query["state"] == [data["state"]]
    assert query["code_challenge_method"] == ["S256"]
    assert query["redirect_uri"] == ["http://127.0.0.1:8000/api/verify-age/callback"]
    assert query["purpose"] == ["verification"]

    flow = flow_store.take_once(data["state"])
    assert isinstance(flow.subject, WidgetSubject)
    assert flow.subject.age_threshold == 18
    assert flow.subject.validity_days == 365
    assert derive_challenge(flow.code_verifier) == query["code_challenge"][0]


def test_init_states_are_unique(client):
    a = client.post("/api/verify-age/init", json={"widgetId": WIDGET_ID}).json()
    b = client.post("/api/verify-age/init", json={"widgetId": WIDGET_ID}).json()
    assert a["state"] != b["state"]


def test_init_writes_audit_event_without_state(client, db):
    state = client.post("/api/verify-age/init", json={"widgetId": WIDGET_ID}).json()["state"]
    row = db.query(AuditLog).filter(AuditLog.event_type == EVENT_FLOW_INITIATED).one()
    assert row.widget_id == WIDGET_ID
    assert row.flow_ref == flow_ref(state)
    assert row.flow_ref != state


def test_init_unknown_widget(client):
    r = client.post("/api/verify-age/init", json={"widgetId": "nope"})
    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "widget_not_found"


def test_init_verification_disabled(client):
    r = client.post("/api/verify-age/init", json={"widgetId": DISABLED_WIDGET_ID})
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "verification_not_enabled"


def test_init_missing_widget_id(client):
    r = client.post("/api/verify-age/init", json={})
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_request"


def test_init_malformed_body(client):
    r = client.post("/api/verify-age/init", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_request"


def test_init_opener_origin_bound_to_widget_domain(client, flow_store):
    r = client.post("/api/verify-age/init", json={"widgetId": DOMAIN_WIDGET_ID, "openerOrigin": "https://www.shop.example"})
    assert r.status_code == 200
    flow = flow_store.take_once(r.json()["state"])
    assert flow.opener_origin == "https://www.shop.example"
    assert flow.subject.age_threshold == 21


def test_init_opener_origin_outside_domain_rejected(client):
    r = client.post("/api/verify-age/init", json={"widgetId": DOMAIN_WIDGET_ID, "openerOrigin": "https://evil.example"})
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_origin"


def test_init_opener_origin_must_be_bare_origin(client):
    r = client.post("/api/verify-age/init", json={"widgetId": WIDGET_ID, "openerOrigin": "javascript:alert(1)"})
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_origin"


def test_init_store_unavailable(client, flow_store):
    with patch.object(flow_store, "put", side_effect=FlowStoreUnavailable("down")):
        r = client.post("/api/verify-age/init", json={"widgetId": WIDGET_ID})
    assert r.status_code == 503
    assert r.json()["detail"]["error"] == "service_unavailable"


def test_init_unregistered_redirect_is_server_error(client):
    with patch("verify_server.initiate.ALLOWED_REDIRECT_URIS", frozenset({"https://elsewhere.example/cb"})):
        r = client.post("/api/verify-age/init", json={"widgetId": WIDGET_ID})
    assert r.status_code == 500
    assert r.json()["detail"]["error"] == "server_error"


def test_account_init_requires_login(client):
    r = client.post("/api/account-verification/init")
    assert r.status_code == 401
    assert r.headers["www-authenticate"] == "Bearer"


def test_account_init_rejects_bad_token(client):
    r = client.post("/api/account-verification/init", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_account_init_rejects_expired_token(client):
    token = platform_token(expires_in=-60)
    r = client.post("/api/account-verification/init", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert r.json()["detail"]["error_description"] == "Session expired"


def test_account_init_binds_user(client, flow_store):
    r = client.post(
        "/api/account-verification/init",
        params={"purpose": "kyc"},
        headers={"Authorization": f"Bearer {platform_token('user-42')}"},
    )
    assert r.status_code == 200
    assert "purpose=kyc" in r.json()["authUrl"]
    flow = flow_store.take_once(r.json()["state"])
    assert isinstance(flow.subject, AccountSubject)
    assert flow.subject.user_id == "user-42"


def test_account_init_unknown_purpose(client):
    r = client.post(
        "/api/account-verification/init",
        params={"purpose": "marketing"},
        headers={"Authorization": f"Bearer {platform_token()}"},
    )
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_request"


def test_init_succeeds_when_audit_write_fails(client, flow_store):
    with patch("verify_server.initiate.log_audit", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
        r = client.post("/api/verify-age/init", json={"widgetId": WIDGET_ID})
    assert r.status_code == 200
    assert flow_store.take_once(r.json()["state"]) is not None
