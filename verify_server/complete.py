"""
Completion recorder (POST /api/verify-age/complete) and token validation (POST /api/verify-age/validate).
Called by the embedding page after the popup delivered its result.
"""
import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from verify_server.audit import EVENT_VERIFICATION_RECORDED, log_audit
from verify_server.config import RATE_LIMIT_COMPLETE, RATE_LIMIT_COMPLETE_WINDOW, TOKEN_ISSUER
from verify_server.database import get_db
from verify_server.keys import get_token_key
from verify_server.models import VerificationSession
from verify_server.rate_limit import client_ip, rate_limit
from verify_server.tokens import InvalidVerificationToken, verify_verification_token
from verify_server.widgets import get_widget_config

logger = logging.getLogger(__name__)
router = APIRouter()

OUTCOME_VERIFIED_ADULT = "verified_adult"
OUTCOME_BLOCKED_MINOR = "blocked_minor"
OUTCOME_LIMITED_ACCESS = "limited_access"
VALID_OUTCOMES = frozenset({OUTCOME_VERIFIED_ADULT, OUTCOME_BLOCKED_MINOR, OUTCOME_LIMITED_ACCESS})

SESSION_STATUS_VERIFIED = "verified"


class CompleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    widget_id: str = Field(alias="widgetId", min_length=1, max_length=255)
    visitor_id: str = Field(alias="visitorId", min_length=1, max_length=255)
    verification_outcome: str = Field(alias="verificationOutcome", min_length=1, max_length=32)
    verified_age: int | None = Field(default=None, alias="verifiedAge", ge=0, le=150)
    token: str | None = Field(default=None, max_length=4096)


class ValidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(min_length=1, max_length=4096)
    widget_id: str = Field(alias="widgetId", min_length=1, max_length=255)


def _error(status_code: int, error: str, description: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": error, "error_description": description})


def _outcome_matches_token(outcome: str, is_adult: bool) -> bool:
    if outcome == OUTCOME_VERIFIED_ADULT:
        return is_adult
    if outcome == OUTCOME_BLOCKED_MINOR:
        return not is_adult
    return True


@router.post(
    "/api/verify-age/complete",
    dependencies=[rate_limit("verify-age-complete", RATE_LIMIT_COMPLETE, RATE_LIMIT_COMPLETE_WINDOW)],
)
def complete_verification(
    body: CompleteRequest,
    request: Request,
    db: Session = Depends(get_db),
    token_key: bytes = Depends(get_token_key),
):
    """
    Record the visitor's outcome for the widget. Upserts on (widget_id, visitor_id);
    expiry comes from the widget's validity period at write time.
    """
    if body.verification_outcome not in VALID_OUTCOMES:
        raise _error(status.HTTP_400_BAD_REQUEST, "invalid_outcome", "Invalid verification outcome")

    try:
        widget = get_widget_config(db, body.widget_id)
    except SQLAlchemyError as e:
        logger.error("Widget configuration lookup failed for %s: %s", body.widget_id, e)
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, "service_unavailable", "Widget configuration unavailable")
    if widget is None:
        raise _error(status.HTTP_404_NOT_FOUND, "widget_not_found", "Widget not found")
    if not widget.verification_enabled:
        raise _error(status.HTTP_400_BAD_REQUEST, "verification_not_enabled", "Age verification not enabled for this widget")

    now = datetime.now(timezone.utc)
    if body.token:
        try:
            claims = verify_verification_token(body.token, widget.widget_id, key=token_key, issuer=TOKEN_ISSUER, now=now)
        except InvalidVerificationToken as e:
            logger.info("Rejected verification token for widget %s: %s", widget.widget_id, e)
            raise _error(status.HTTP_400_BAD_REQUEST, "invalid_token", "Verification token is invalid or expired")
        if not _outcome_matches_token(body.verification_outcome, claims.is_adult):
            raise _error(status.HTTP_400_BAD_REQUEST, "outcome_mismatch", "Outcome does not match the verification token")

    expires_at = now + timedelta(days=widget.validity_days)
    try:
        row = (
            db.query(VerificationSession)
            .filter(
                VerificationSession.widget_id == widget.widget_id,
                VerificationSession.visitor_id == body.visitor_id,
            )
            .first()
        )
        if row is None:
            row = VerificationSession(widget_id=widget.widget_id, visitor_id=body.visitor_id)
            db.add(row)
        row.status = SESSION_STATUS_VERIFIED
        row.verification_outcome = body.verification_outcome
        row.verified_age = body.verified_age
        row.verification_token = body.token
        row.verified_at = now
        row.expires_at = expires_at
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Error saving verification session for widget %s: %s", widget.widget_id, e)
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "server_error", "Failed to save verification session")

    try:
        log_audit(
            db,
            EVENT_VERIFICATION_RECORDED,
            widget_id=widget.widget_id,
            ip=client_ip(request),
            reason=body.verification_outcome,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to write audit event for widget %s: %s", widget.widget_id, e)
    logger.info(
        "Age verification recorded widget_id=%s visitor=%s... outcome=%s",
        widget.widget_id,
        body.visitor_id[:10],
        body.verification_outcome,
    )
    return {
        "success": True,
        "message": "Age verification recorded successfully",
        "expiresAt": expires_at.isoformat(),
    }


@router.post("/api/verify-age/validate")
def validate_token(body: ValidateRequest, token_key: bytes = Depends(get_token_key)):
    """Check a stored verification token server-side. Invalid or expired tokens are not errors."""
    try:
        claims = verify_verification_token(body.token, body.widget_id, key=token_key, issuer=TOKEN_ISSUER)
    except InvalidVerificationToken:
        return {"valid": False, "isAdult": False, "expiresAt": None}
    return {"valid": True, "isAdult": claims.is_adult, "expiresAt": claims.expires_at.isoformat()}
