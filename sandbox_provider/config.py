"""
Sandbox identity provider configuration. Development credentials only.
"""
import os

ISSUER = os.environ.get("SANDBOX_ISSUER", "http://127.0.0.1:9000").rstrip("/")

CLIENT_ID = os.environ.get("SANDBOX_CLIENT_ID", "sandbox-client")
CLIENT_SECRET = os.environ.get("SANDBOX_CLIENT_SECRET", "sandbox-secret")

# Exact-match redirect URIs, comma-separated
REDIRECT_URIS = frozenset(
    u.strip()
    for u in os.environ.get("SANDBOX_REDIRECT_URIS", "http://127.0.0.1:8000/api/verify-age/callback").split(",")
    if u.strip()
)

# Authorization code lifetime (seconds)
CODE_TTL_SECONDS = int(os.environ.get("SANDBOX_CODE_TTL_SECONDS", "60"))

# Access token lifetime reported to the client (seconds)
ACCESS_TOKEN_EXPIRES = 3600

# Consent lifetime reported as consent_valid_till (days)
CONSENT_DAYS = 31

# HMAC key for the sandbox id_token
ID_TOKEN_SECRET = os.environ.get("SANDBOX_ID_TOKEN_SECRET", "sandbox-id-token-secret-not-for-production")
