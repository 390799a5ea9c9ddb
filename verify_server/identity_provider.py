"""
Token exchange with the identity provider (authorization_code + PKCE verifier).
One attempt per callback; failures surface as ProviderError and are never retried.
"""
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone

import httpx
import jwt

from verify_server.config import (
    CLIENT_ID,
    CLIENT_SECRET,
    PROVIDER_BASE_URL,
    PROVIDER_TIMEOUT_SECONDS,
    PROVIDER_TOKEN_PATH,
)

logger = logging.getLogger(__name__)

_DOB_RE = re.compile(r"^\d{8}$")


class ProviderError(Exception):
    def __init__(self, code: str, description: str):
        super().__init__(f"{code}: {description}")
        self.code = code
        self.description = description


@dataclass(frozen=True)
class ProviderAttributes:
    dob: str | None
    consent_valid_till: str | int | float | None = None


def parse_dob(value: str) -> date:
    """Parse a provider DOB in DDMMYYYY format."""
    if not isinstance(value, str) or not _DOB_RE.match(value):
        raise ProviderError("invalid_dob", "DOB is not in DDMMYYYY format")
    try:
        dob = datetime.strptime(value, "%d%m%Y").date()
    except ValueError:
        raise ProviderError("invalid_dob", "DOB is not a calendar date")
    if dob.year < 1900 or dob > datetime.now(timezone.utc).date():
        raise ProviderError("invalid_dob", "DOB is out of range")
    return dob


def _id_token_claims(id_token: str) -> dict:
    """Payload of the id_token. Signature is not checked: it comes straight from the token endpoint over TLS."""
    try:
        return jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.warning("Could not decode id_token from provider: %s", e)
        return {}


class IdentityProviderClient:
    def __init__(
        self,
        http: httpx.Client | None = None,
        *,
        base_url: str = PROVIDER_BASE_URL,
        token_path: str = PROVIDER_TOKEN_PATH,
        client_id: str = CLIENT_ID,
        client_secret: str = CLIENT_SECRET,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ):
        self._http = http
        self.token_url = f"{base_url}{token_path}"
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

    def _post(self, url: str, **kwargs) -> httpx.Response:
        if self._http is None:
            return httpx.post(url, **kwargs)
        return self._http.post(url, **kwargs)

    def exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> ProviderAttributes:
        try:
            r = self._post(
                self.token_url,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": redirect_uri,
                    "code_verifier": code_verifier,
                },
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise ProviderError("transport_error", str(e)) from e

        if not r.headers.get("content-type", "").startswith("application/json"):
            raise ProviderError("invalid_response", f"Non-JSON response from provider (status {r.status_code})")
        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError("parse_error", "Could not parse provider response") from e
        if not isinstance(data, dict):
            raise ProviderError("invalid_response", "Provider response is not a JSON object")

        if r.status_code != 200:
            err = data.get("detail") if isinstance(data.get("detail"), dict) else data
            raise ProviderError(
                str(err.get("error") or "token_error"),
                str(err.get("error_description") or "Token exchange failed"),
            )

        dob = data.get("dob")
        consent_valid_till = data.get("consent_valid_till")
        if (not dob or not consent_valid_till) and data.get("id_token"):
            claims = _id_token_claims(data["id_token"])
            dob = dob or claims.get("dob")
            consent_valid_till = consent_valid_till or claims.get("consent_valid_till")
        return ProviderAttributes(dob=dob or None, consent_valid_till=consent_valid_till or None)


def get_provider_client() -> IdentityProviderClient:
    """Dependency: provider client with configured credentials."""
    return IdentityProviderClient()
