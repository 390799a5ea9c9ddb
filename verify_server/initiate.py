"""
Flow initiation: PKCE pair + state, flow state stored with TTL, provider authorize URL returned.
POST /api/verify-age/init for anonymous widget visitors, POST /api/account-verification/init for
logged-in platform accounts. Both feed the same callback.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from verify_server.audit import EVENT_FLOW_INITIATED, log_audit
from verify_server.auth import Principal, get_principal
from verify_server.config import (
    ACCOUNT_AGE_THRESHOLD,
    ACCOUNT_VALIDITY_DAYS,
    ALLOWED_REDIRECT_URIS,
    CLIENT_ID,
    FLOW_TTL_SECONDS,
    PROVIDER_AUTHORIZE_PATH,
    PROVIDER_BASE_URL,
    PROVIDER_SCOPE,
    PUBLIC_BASE_URL,
    RATE_LIMIT_INIT,
    RATE_LIMIT_INIT_WINDOW,
    REDIRECT_URI,
)
from verify_server.database import get_db
from verify_server.flow_store import (
    AccountSubject,
    FlowState,
    FlowStore,
    FlowStoreUnavailable,
    WidgetSubject,
    get_flow_store,
)
from verify_server.pkce import PURPOSES, build_authorize_url, generate_pkce, generate_state
from verify_server.rate_limit import (
    SlidingWindowRateLimiter,
    client_ip,
    enforce_rate_limit,
    get_rate_limiter,
    rate_limit,
)
from verify_server.widgets import get_widget_config, origin_allowed, parse_origin

logger = logging.getLogger(__name__)
router = APIRouter()


class WidgetInitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    widget_id: str = Field(alias="widgetId", min_length=1, max_length=255)
    opener_origin: str | None = Field(default=None, alias="openerOrigin", max_length=255)


def _error(status_code: int, error: str, description: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": error, "error_description": description})


def _start_flow(
    request: Request,
    db: Session,
    store: FlowStore,
    *,
    subject: WidgetSubject | AccountSubject,
    purpose: str,
    opener_origin: str | None,
) -> dict:
    """Generate PKCE + state, persist the flow, and return the provider URL for the popup."""
    pkce = generate_pkce()
    state = generate_state()
    try:
        auth_url = build_authorize_url(
            base_url=PROVIDER_BASE_URL,
            authorize_path=PROVIDER_AUTHORIZE_PATH,
            client_id=CLIENT_ID,
            redirect_uri=REDIRECT_URI,
            scope=PROVIDER_SCOPE,
            state=state,
            code_challenge=pkce.code_challenge,
            purpose=purpose,
            allowed_redirect_uris=ALLOWED_REDIRECT_URIS,
        )
    except ValueError as e:
        logger.error("Age verification is misconfigured: %s", e)
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "server_error", "Age verification not configured")

    flow = FlowState(
        code_verifier=pkce.code_verifier,
        subject=subject,
        purpose=purpose,
        opener_origin=opener_origin,
    )
    try:
        store.put(state, flow, FLOW_TTL_SECONDS)
    except FlowStoreUnavailable:
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, "service_unavailable", "Session storage is not available")

    widget_id = subject.widget_id if isinstance(subject, WidgetSubject) else None
    user_id = subject.user_id if isinstance(subject, AccountSubject) else None
    try:
        log_audit(db, EVENT_FLOW_INITIATED, widget_id=widget_id, user_id=user_id, state=state, ip=client_ip(request))
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to write audit event %s: %s", EVENT_FLOW_INITIATED, e)
    logger.info("Verification flow initiated widget_id=%s user_id=%s purpose=%s", widget_id, user_id, purpose)
    return {"authUrl": auth_url, "state": state}


@router.post(
    "/api/verify-age/init",
    dependencies=[rate_limit("verify-age-init", RATE_LIMIT_INIT, RATE_LIMIT_INIT_WINDOW)],
)
def init_widget_verification(
    body: WidgetInitRequest,
    request: Request,
    db: Session = Depends(get_db),
    store: FlowStore = Depends(get_flow_store),
):
    """
    Start verification for an anonymous widget visitor. The widget must exist, be active and
    have age verification enabled; its threshold and validity period are bound into the flow.
    """
    try:
        widget = get_widget_config(db, body.widget_id)
    except SQLAlchemyError as e:
        logger.error("Widget configuration lookup failed for %s: %s", body.widget_id, e)
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, "service_unavailable", "Widget configuration unavailable")
    if widget is None:
        raise _error(status.HTTP_404_NOT_FOUND, "widget_not_found", "Widget not found")
    if not widget.verification_enabled:
        raise _error(status.HTTP_400_BAD_REQUEST, "verification_not_enabled", "Age verification not enabled for this widget")

    opener_origin = None
    if body.opener_origin:
        opener_origin = parse_origin(body.opener_origin)
        if opener_origin is None or not origin_allowed(opener_origin, widget.domain):
            raise _error(status.HTTP_400_BAD_REQUEST, "invalid_origin", "Opener origin is not allowed for this widget")

    subject = WidgetSubject(
        widget_id=widget.widget_id,
        age_threshold=widget.age_threshold,
        validity_days=widget.validity_days,
    )
    return _start_flow(request, db, store, subject=subject, purpose="verification", opener_origin=opener_origin)


@router.post("/api/account-verification/init")
def init_account_verification(
    request: Request,
    purpose: str = "kyc",
    principal: Principal = Depends(get_principal),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
    db: Session = Depends(get_db),
    store: FlowStore = Depends(get_flow_store),
):
    """Start verification for the logged-in account. The result is recorded against the account."""
    enforce_rate_limit(
        limiter,
        f"account-verification-init:user:{principal.user_id}",
        RATE_LIMIT_INIT,
        RATE_LIMIT_INIT_WINDOW,
    )
    if purpose not in PURPOSES:
        raise _error(status.HTTP_400_BAD_REQUEST, "invalid_request", f"purpose must be one of: {', '.join(sorted(PURPOSES))}")
    subject = AccountSubject(
        user_id=principal.user_id,
        age_threshold=ACCOUNT_AGE_THRESHOLD,
        validity_days=ACCOUNT_VALIDITY_DAYS,
    )
    return _start_flow(request, db, store, subject=subject, purpose=purpose, opener_origin=PUBLIC_BASE_URL)
