"""
GET /api/account-verification/status: the caller's latest account verification.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from verify_server.auth import Principal, get_principal
from verify_server.database import get_db
from verify_server.models import AccountVerification

logger = logging.getLogger(__name__)
router = APIRouter()


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@router.get("/api/account-verification/status")
def verification_status(
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    """Not yet verified is a normal response (verified=false)."""
    try:
        row = (
            db.query(AccountVerification)
            .filter(AccountVerification.user_id == principal.user_id)
            .order_by(AccountVerification.created_at.desc(), AccountVerification.id.desc())
            .first()
        )
    except SQLAlchemyError as e:
        logger.error("Failed to fetch verification status for user %s: %s", principal.user_id, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "database_error", "error_description": "Failed to fetch verification status"},
        )
    if row is None:
        return {
            "verified": False,
            "isAdult": None,
            "consentValid": False,
            "consentValidTill": None,
            "verifiedAt": None,
        }
    consent_valid_till = _as_utc(row.consent_valid_till)
    verified_at = _as_utc(row.created_at)
    return {
        "verified": True,
        "isAdult": row.is_adult,
        "consentValid": consent_valid_till is not None and consent_valid_till > datetime.now(timezone.utc),
        "consentValidTill": consent_valid_till.isoformat() if consent_valid_till else None,
        "verifiedAt": verified_at.isoformat() if verified_at else None,
    }
