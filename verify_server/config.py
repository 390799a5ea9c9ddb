"""
Age verification service configuration.
Every value can be overridden from the environment; defaults target the local sandbox provider.
"""
import os

# Public origin of this service (popup pages and the callback live here)
PUBLIC_BASE_URL = os.environ.get("VERIFY_PUBLIC_BASE_URL", "http://127.0.0.1:8000").rstrip("/")

# Identity provider (DigiLocker / MeriPehchaan). Defaults point at sandbox_provider on port 9000.
PROVIDER_BASE_URL = os.environ.get("DIGILOCKER_BASE_URL", "http://127.0.0.1:9000").rstrip("/")
PROVIDER_AUTHORIZE_PATH = "/public/oauth2/1/authorize"
PROVIDER_TOKEN_PATH = "/public/oauth2/2/token"
PROVIDER_SCOPE = os.environ.get("DIGILOCKER_SCOPE", "openid")
PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("DIGILOCKER_TIMEOUT_SECONDS", "10"))
CLIENT_ID = os.environ.get("DIGILOCKER_CLIENT_ID", "sandbox-client")
CLIENT_SECRET = os.environ.get("DIGILOCKER_CLIENT_SECRET", "sandbox-secret")

# Callback registered at the provider. Never taken from request input.
REDIRECT_URI = os.environ.get("DIGILOCKER_REDIRECT_URI", f"{PUBLIC_BASE_URL}/api/verify-age/callback")
ALLOWED_REDIRECT_URIS = frozenset(
    u.strip()
    for u in os.environ.get("DIGILOCKER_ALLOWED_REDIRECT_URIS", REDIRECT_URI).split(",")
    if u.strip()
)

# Flow state (PKCE verifier + subject) lifetime between init and callback
FLOW_TTL_SECONDS = int(os.environ.get("VERIFY_FLOW_TTL_SECONDS", "600"))
# memory:// (single process) or redis://host:6379/0
FLOW_STORE_URL = os.environ.get("VERIFY_FLOW_STORE_URL", "memory://")

DATABASE_URL = os.environ.get("VERIFY_DATABASE_URL", "sqlite:///./verify_server.db")

# Verification token signing. If VERIFY_TOKEN_SECRET is unset a secret is generated and saved to the path.
TOKEN_SECRET = os.environ.get("VERIFY_TOKEN_SECRET", "").strip() or None
TOKEN_SECRET_PATH = os.environ.get("VERIFY_TOKEN_SECRET_PATH", ".verify_token_secret")
TOKEN_ISSUER = os.environ.get("VERIFY_TOKEN_ISSUER", PUBLIC_BASE_URL)
# Audience of tokens issued to logged-in platform accounts (widget tokens use the widget id)
ACCOUNT_TOKEN_AUDIENCE = "platform-account"

# Widget defaults when the configuration row leaves them empty
DEFAULT_AGE_THRESHOLD = 18
DEFAULT_VALIDITY_DAYS = 365

# Logged-in account path
ACCOUNT_AGE_THRESHOLD = int(os.environ.get("VERIFY_ACCOUNT_AGE_THRESHOLD", "18"))
ACCOUNT_VALIDITY_DAYS = int(os.environ.get("VERIFY_ACCOUNT_VALIDITY_DAYS", "365"))
# Provider consent lifetime when the token response does not carry consent_valid_till
ACCOUNT_CONSENT_DAYS = int(os.environ.get("VERIFY_ACCOUNT_CONSENT_DAYS", "31"))

# Platform login tokens (Bearer) for the account endpoints
PLATFORM_JWT_SECRET = os.environ.get("PLATFORM_JWT_SECRET", "dev-platform-secret-change-me-before-deploy")
PLATFORM_JWT_AUDIENCE = os.environ.get("PLATFORM_JWT_AUDIENCE", "authenticated")

# Rate limiting, per caller identity
RATE_LIMIT_INIT = int(os.environ.get("VERIFY_RATE_LIMIT_INIT", "5"))
RATE_LIMIT_INIT_WINDOW = int(os.environ.get("VERIFY_RATE_LIMIT_INIT_WINDOW", "300"))
RATE_LIMIT_COMPLETE = int(os.environ.get("VERIFY_RATE_LIMIT_COMPLETE", "10"))
RATE_LIMIT_COMPLETE_WINDOW = int(os.environ.get("VERIFY_RATE_LIMIT_COMPLETE_WINDOW", "60"))
# Reverse proxies in front of the service. X-Forwarded-For is read this many hops from the right;
# 0 ignores forwarding headers and uses the socket peer.
TRUSTED_PROXY_HOPS = int(os.environ.get("VERIFY_TRUSTED_PROXY_HOPS", "1"))

# Popup handshake
MESSAGE_TYPE = "age-verification-result"
POPUP_CLOSE_DELAY_MS = 1500
OPENER_TIMEOUT_MS = int(os.environ.get("VERIFY_OPENER_TIMEOUT_MS", "300000"))
