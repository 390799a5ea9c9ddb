"""
Sandbox identity provider.
Speaks the DigiLocker authorize/token protocol (authorization code + PKCE S256) for local development
and tests: the visitor types a date of birth instead of signing in. Port 9000.
"""
import hashlib
import hmac
import html
import logging
import secrets
import threading
import time
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from urllib.parse import urlencode

import jwt
from fastapi import FastAPI, Form, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse

from sandbox_provider.config import (
    ACCESS_TOKEN_EXPIRES,
    CLIENT_ID,
    CLIENT_SECRET,
    CODE_TTL_SECONDS,
    CONSENT_DAYS,
    ID_TOKEN_SECRET,
    ISSUER,
    REDIRECT_URIS,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Sandbox Identity Provider", version="1.0.0")


@dataclass
class IssuedCode:
    client_id: str
    redirect_uri: str
    code_challenge: str
    dob: str  # DDMMYYYY
    name: str
    expires_at: float


_codes: dict[str, IssuedCode] = {}
_codes_lock = threading.Lock()


def _pkce_verify(code_verifier: str, code_challenge: str) -> bool:
    """S256 only: base64url(SHA256(verifier)) == challenge."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    computed = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return hmac.compare_digest(computed, code_challenge)


def _redirect(redirect_uri: str, params: dict) -> RedirectResponse:
    return RedirectResponse(url=f"{redirect_uri}?{urlencode(params)}", status_code=302)


def _invalid(description: str) -> HTMLResponse:
    return HTMLResponse(f"<h1>Invalid request</h1><p>{html.escape(description)}</p>", status_code=400)


def _token_error(error: str, description: str, status_code: int = 400) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": error, "error_description": description})


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "sandbox_provider"}


@app.get("/public/oauth2/1/authorize", response_class=HTMLResponse)
def authorize_get(
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    scope: str | None = None,
    purpose: str | None = None,
):
    """Validate the authorization request and show the sandbox consent form."""
    if response_type != "code":
        return _invalid("response_type must be 'code'.")
    if client_id != CLIENT_ID:
        return _invalid("Unknown client_id.")
    if not redirect_uri or redirect_uri not in REDIRECT_URIS:
        return _invalid("redirect_uri not allowed.")
    if not state:
        return _invalid("state is required.")
    if not code_challenge or code_challenge_method != "S256":
        return _invalid("PKCE with code_challenge_method=S256 is required.")

    def e(s: str | None) -> str:
        return html.escape(s or "")

    hidden = f"""
    <input type="hidden" name="client_id" value="{e(client_id)}"/>
    <input type="hidden" name="redirect_uri" value="{e(redirect_uri)}"/>
    <input type="hidden" name="state" value="{e(state)}"/>
    <input type="hidden" name="code_challenge" value="{e(code_challenge)}"/>"""
    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Sandbox DigiLocker</title></head>
<body>
  <h1>Sandbox DigiLocker</h1>
  <p>Purpose: <strong>{e(purpose or "kyc")}</strong>. Scope: <code>{e(scope)}</code></p>
  <form method="post" action="/public/oauth2/1/authorize">
    {hidden}
    <label>Name: <input type="text" name="name" value="Sandbox User"/></label><br/>
    <label>Date of birth: <input type="date" name="dob" required/></label><br/>
    <button type="submit" name="decision" value="allow">Allow</button>
    <button type="submit" name="decision" value="deny" formnovalidate>Deny</button>
  </form>
</body>
</html>"""
    return HTMLResponse(body)


@app.post("/public/oauth2/1/authorize")
def authorize_post(
    client_id: str = Form(...),
    redirect_uri: str = Form(...),
    state: str = Form(...),
    code_challenge: str = Form(...),
    decision: str = Form(...),
    dob: str | None = Form(None),
    name: str = Form("Sandbox User"),
):
    """Allow: issue a one-time code bound to the challenge and DOB. Deny: access_denied."""
    if client_id != CLIENT_ID or redirect_uri not in REDIRECT_URIS:
        return _invalid("Unknown client or redirect_uri.")
    if decision != "allow":
        return _redirect(redirect_uri, {"error": "access_denied", "error_description": "User denied consent", "state": state})
    try:
        birth_date = date.fromisoformat(dob or "")
    except ValueError:
        return _invalid("dob must be YYYY-MM-DD.")

    code = secrets.token_urlsafe(32)
    with _codes_lock:
        _codes[code] = IssuedCode(
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            dob=birth_date.strftime("%d%m%Y"),
            name=name,
            expires_at=time.monotonic() + CODE_TTL_SECONDS,
        )
    logger.info("Sandbox code issued for client_id=%s", client_id)
    return _redirect(redirect_uri, {"code": code, "state": state})


@app.post("/public/oauth2/2/token")
def token(
    grant_type: str = Form(...),
    code: str | None = Form(None),
    client_id: str = Form(...),
    client_secret: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
):
    """Exchange a code for the subject's attributes. Codes are single use and PKCE is mandatory."""
    if grant_type != "authorization_code":
        raise _token_error("unsupported_grant_type", "Only authorization_code is supported")
    if client_id != CLIENT_ID or not client_secret or not hmac.compare_digest(client_secret, CLIENT_SECRET):
        raise _token_error("invalid_client", "Client authentication failed", status_code=401)
    if not code or not redirect_uri or not code_verifier:
        raise _token_error("invalid_request", "code, redirect_uri, and code_verifier are required")

    with _codes_lock:
        issued = _codes.pop(code, None)
    if issued is None:
        raise _token_error("invalid_grant", "Invalid or already used authorization code")
    if time.monotonic() > issued.expires_at:
        raise _token_error("invalid_grant", "Authorization code expired")
    if issued.client_id != client_id:
        raise _token_error("invalid_grant", "Client mismatch")
    if issued.redirect_uri != redirect_uri:
        raise _token_error("invalid_grant", "redirect_uri mismatch")
    if not _pkce_verify(code_verifier, issued.code_challenge):
        raise _token_error("invalid_grant", "PKCE verification failed")

    now = datetime.now(timezone.utc)
    consent_valid_till = (now + timedelta(days=CONSENT_DAYS)).isoformat()
    digilockerid = secrets.token_hex(8)
    id_token = jwt.encode(
        {
            "iss": ISSUER,
            "sub": digilockerid,
            "aud": client_id,
            "iat": int(now.timestamp()),
            "exp": int(now.timestamp()) + ACCESS_TOKEN_EXPIRES,
            "name": issued.name,
            "dob": issued.dob,
            "consent_valid_till": consent_valid_till,
        },
        ID_TOKEN_SECRET,
        algorithm="HS256",
    )
    return {
        "access_token": secrets.token_urlsafe(32),
        "token_type": "Bearer",
        "expires_in": ACCESS_TOKEN_EXPIRES,
        "scope": "openid",
        "id_token": id_token,
        "digilockerid": digilockerid,
        "name": issued.name,
        "dob": issued.dob,
        "consent_valid_till": consent_valid_till,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "sandbox_provider.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
