"""
PKCE (RFC 7636) and authorization request helpers for the identity provider redirect.
S256 only; state generation.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from urllib.parse import urlencode

PKCE_METHOD = "S256"

# Purposes accepted by the provider's authorize endpoint
PURPOSES = frozenset({"kyc", "verification", "compliance", "availing_services", "educational"})


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str
    method: str = PKCE_METHOD


def generate_state() -> str:
    """Opaque single-use value for CSRF protection; also the flow store key."""
    return secrets.token_urlsafe(32)


def derive_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> PKCEPair:
    """
    Generate code_verifier and code_challenge (S256).
    Verifier is 43 chars (256 bits entropy).
    """
    # 32 bytes -> 43 chars base64url (RFC 7636 recommendation)
    code_verifier = secrets.token_urlsafe(32)
    return PKCEPair(code_verifier=code_verifier, code_challenge=derive_challenge(code_verifier))


def build_authorize_url(
    *,
    base_url: str,
    authorize_path: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
    purpose: str,
    allowed_redirect_uris: frozenset[str] | set[str],
) -> str:
    """Build the provider /authorize URL. redirect_uri must be one of the registered callbacks."""
    if redirect_uri not in allowed_redirect_uris:
        raise ValueError("redirect_uri is not in the allowed list")
    if purpose not in PURPOSES:
        raise ValueError(f"Unsupported purpose: {purpose}")
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "code_challenge": code_challenge,
        "code_challenge_method": PKCE_METHOD,
        "state": state,
        "scope": scope,
        "purpose": purpose,
    }
    return f"{base_url}{authorize_path}?{urlencode(params)}"
