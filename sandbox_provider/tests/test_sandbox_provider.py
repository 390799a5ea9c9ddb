"""Tests for the sandbox identity provider (authorize + token with PKCE)."""
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from fastapi.testclient import TestClient

from sandbox_provider.config import CLIENT_ID, CLIENT_SECRET, ID_TOKEN_SECRET
from sandbox_provider.main import _pkce_verify, app

REDIRECT_URI = "http://127.0.0.1:8000/api/verify-age/callback"
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

client = TestClient(app)


def _authorize_params(**overrides):
    params = {
        "response_type": "code",
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "state": "state-1",
        "code_challenge": CHALLENGE,
        "code_challenge_method": "S256",
        "scope": "openid",
        "purpose": "verification",
    }
    params.update(overrides)
    return params


def _issue_code(dob="1990-05-17", state="state-1"):
    r = client.post(
        "/public/oauth2/1/authorize",
        data={
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URI,
            "state": state,
            "code_challenge": CHALLENGE,
            "decision": "allow",
            "dob": dob,
        },
        follow_redirects=False,
    )
    assert r.status_code == 302
    query = parse_qs(urlparse(r.headers["location"]).query)
    assert query["state"] == [state]
    return query["code"][0]


def _token(code, verifier=VERIFIER, **overrides):
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
        "redirect_uri": REDIRECT_URI,
        "code_verifier": verifier,
    }
    data.update(overrides)
    return client.post("/public/oauth2/2/token", data=data)


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["service"] == "sandbox_provider"


def test_pkce_verify_rfc_vector():
    assert _pkce_verify(VERIFIER, CHALLENGE)
    assert not _pkce_verify("wrong-verifier", CHALLENGE)


def test_authorize_get_renders_form():
    r = client.get("/public/oauth2/1/authorize", params=_authorize_params())
    assert r.status_code == 200
    assert 'name="dob"' in r.text
    assert 'value="state-1"' in r.text


@pytest.mark.parametrize(
    "overrides",
    [
        {"response_type": "token"},
        {"client_id": "other"},
        {"redirect_uri": "https://evil.example/cb"},
        {"state": ""},
        {"code_challenge_method": "plain"},
    ],
)
def test_authorize_get_rejects_invalid_request(overrides):
    r = client.get("/public/oauth2/1/authorize", params=_authorize_params(**overrides))
    assert r.status_code == 400


def test_authorize_get_escapes_state():
    r = client.get("/public/oauth2/1/authorize", params=_authorize_params(state='"><script>x</script>'))
    assert r.status_code == 200
    assert "<script>x</script>" not in r.text


def test_deny_redirects_with_access_denied():
    r = client.post(
        "/public/oauth2/1/authorize",
        data={
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URI,
            "state": "s-deny",
            "code_challenge": CHALLENGE,
            "decision": "deny",
        },
        follow_redirects=False,
    )
    assert r.status_code == 302
    query = parse_qs(urlparse(r.headers["location"]).query)
    assert query["error"] == ["access_denied"]
    assert query["state"] == ["s-deny"]


def test_allow_with_bad_dob_is_rejected():
    r = client.post(
        "/public/oauth2/1/authorize",
        data={
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URI,
            "state": "s",
            "code_challenge": CHALLENGE,
            "decision": "allow",
            "dob": "17/05/1990",
        },
        follow_redirects=False,
    )
    assert r.status_code == 400


def test_token_exchange_returns_dob_and_id_token():
    code = _issue_code(dob="1990-05-17")
    r = _token(code)
    assert r.status_code == 200
    data = r.json()
    assert data["dob"] == "17051990"
    assert data["token_type"] == "Bearer"
    assert data["consent_valid_till"]
    claims = jwt.decode(data["id_token"], ID_TOKEN_SECRET, algorithms=["HS256"], audience=CLIENT_ID)
    assert claims["dob"] == "17051990"


def test_token_code_is_single_use():
    code = _issue_code()
    assert _token(code).status_code == 200
    r = _token(code)
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_grant"


def test_token_wrong_verifier_fails_pkce():
    code = _issue_code()
    r = _token(code, verifier="a" * 43)
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_grant"
    assert "PKCE" in r.json()["detail"]["error_description"]


def test_token_redirect_mismatch():
    code = _issue_code()
    r = _token(code, redirect_uri="http://127.0.0.1:8000/other")
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_grant"


def test_token_bad_client_secret():
    code = _issue_code()
    r = _token(code, client_secret="nope")
    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "invalid_client"


def test_token_missing_verifier():
    code = _issue_code()
    r = _token(code, code_verifier="")
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "invalid_request"
