"""
Secret for verification token signing.
Loaded from VERIFY_TOKEN_SECRET, or from a file that is generated on first use; no key material in code.
The HMAC key is derived from the secret with HKDF so the raw secret is never used directly.
"""
import logging
import secrets
from pathlib import Path

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

_HKDF_SALT = b"age-verification"
_HKDF_INFO = b"age-token-v1"


def derive_token_key(secret: str) -> bytes:
    """HKDF-SHA256 -> 32-byte HMAC key, distinct from any other use of the same secret."""
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_HKDF_SALT,
        info=_HKDF_INFO,
    ).derive(secret.encode("utf-8"))


def load_or_create_secret(path: str) -> str:
    """Read the secret from path, or generate and save one."""
    p = Path(path)
    if p.exists():
        value = p.read_text(encoding="utf-8").strip()
        if value:
            return value
        logger.warning("Token secret file %s is empty; generating a new secret", path)
    value = secrets.token_urlsafe(48)
    try:
        p.write_text(value, encoding="utf-8")
        logger.info("Generated and saved token secret to %s", path)
    except OSError as e:
        logger.warning("Could not save token secret to %s: %s", path, e)
    return value


_token_key: bytes | None = None


def get_token_key() -> bytes:
    """Dependency: HMAC key for signing and verifying verification tokens."""
    global _token_key
    if _token_key is None:
        from verify_server.config import TOKEN_SECRET, TOKEN_SECRET_PATH

        _token_key = derive_token_key(TOKEN_SECRET or load_or_create_secret(TOKEN_SECRET_PATH))
    return _token_key
