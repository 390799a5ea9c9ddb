"""
Verification tokens: HS256 JWTs asserting the outcome of an age check for one widget.

Signing and verification are pure functions of (claims, key, now). Expiry is fixed at
signing time from the widget's validity period and is never recomputed by verifiers.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from jwt.utils import base64url_decode, base64url_encode

from verify_server.age_check import VerificationOutcome

ALGORITHM = "HS256"


class InvalidVerificationToken(Exception):
    pass


class ExpiredVerificationToken(InvalidVerificationToken):
    pass


@dataclass(frozen=True)
class VerificationClaims:
    is_adult: bool
    age_threshold: int
    widget_id: str
    issued_at: datetime
    expires_at: datetime


def _utc(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def sign_verification_token(
    outcome: VerificationOutcome,
    widget_id: str,
    validity_days: int,
    *,
    key: bytes,
    issuer: str,
    now: datetime | None = None,
) -> str:
    """Issue a token for the outcome, scoped to widget_id (aud) and valid for validity_days."""
    iat = int(_utc(now).timestamp())
    exp = iat + int(timedelta(days=validity_days).total_seconds())
    payload = {
        "iss": issuer,
        "aud": widget_id,
        "iat": iat,
        "exp": exp,
        "isAdult": outcome.is_adult,
        "ageThreshold": outcome.age_threshold,
    }
    token = jwt.encode(payload, key, algorithm=ALGORITHM, headers={"typ": "JWT"})
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def _check_canonical(token: str) -> None:
    """Each segment must be canonical base64url, so no two strings decode to the same token."""
    segments = token.split(".")
    if len(segments) != 3:
        raise InvalidVerificationToken("Malformed token")
    for segment in segments:
        try:
            raw = base64url_decode(segment)
        except (ValueError, TypeError):
            raise InvalidVerificationToken("Malformed token")
        if base64url_encode(raw).decode("ascii") != segment:
            raise InvalidVerificationToken("Malformed token")


def verify_verification_token(
    token: str,
    widget_id: str,
    *,
    key: bytes,
    issuer: str,
    now: datetime | None = None,
) -> VerificationClaims:
    """
    Return the signed claims or raise InvalidVerificationToken / ExpiredVerificationToken.
    Age status comes only from the signed payload.
    """
    _check_canonical(token)
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[ALGORITHM],
            audience=widget_id,
            issuer=issuer,
            options={
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
                "require": ["iss", "aud", "iat", "exp"],
            },
        )
    except jwt.PyJWTError as e:
        raise InvalidVerificationToken(str(e)) from e

    is_adult = payload.get("isAdult")
    threshold = payload.get("ageThreshold")
    if not isinstance(is_adult, bool) or not isinstance(threshold, int):
        raise InvalidVerificationToken("Missing verification claims")
    exp = payload["exp"]
    if not isinstance(exp, int) or not isinstance(payload["iat"], int):
        raise InvalidVerificationToken("Invalid time claims")
    if _utc(now).timestamp() >= exp:
        raise ExpiredVerificationToken("Token expired")
    return VerificationClaims(
        is_adult=is_adult,
        age_threshold=threshold,
        widget_id=widget_id,
        issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
    )
