"""
Provider callback (GET /api/verify-age/callback), rendered inside the popup.

Start -> ParamsValidated -> StateConsumed -> TokenExchanged -> AgeComputed -> TokenSigned -> Delivered.
Any step may end in Errored, which is still delivered to the opener as one error message.
"""
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from verify_server.age_check import VerificationOutcome, evaluate_age
from verify_server.audit import EVENT_FLOW_COMPLETED, EVENT_FLOW_FAILED, OUTCOME_FAIL, log_audit
from verify_server.config import ACCOUNT_CONSENT_DAYS, ACCOUNT_TOKEN_AUDIENCE, REDIRECT_URI, TOKEN_ISSUER
from verify_server.database import get_db
from verify_server.flow_store import (
    AccountSubject,
    FlowState,
    FlowStore,
    FlowStoreUnavailable,
    WidgetSubject,
    get_flow_store,
)
from verify_server.handshake import error_message, render_handshake, success_message
from verify_server.identity_provider import (
    IdentityProviderClient,
    ProviderAttributes,
    ProviderError,
    get_provider_client,
    parse_dob,
)
from verify_server.keys import get_token_key
from verify_server.models import AccountVerification
from verify_server.rate_limit import client_ip
from verify_server.tokens import sign_verification_token, verify_verification_token

logger = logging.getLogger(__name__)
router = APIRouter()

# Provider redirect errors passed through to the opener; anything else becomes provider_error
_PROVIDER_ERRORS = {
    "access_denied": "Verification was cancelled.",
    "consent_required": "Consent to share details was not given.",
    "login_required": "Sign-in at the identity provider was not completed.",
    "temporarily_unavailable": "The identity provider is temporarily unavailable. Please try again later.",
}
_GENERIC_FAILURE = "Verification failed. Please try again."


class CallbackStage(str, Enum):
    START = "start"
    PARAMS_VALIDATED = "params_validated"
    STATE_CONSUMED = "state_consumed"
    TOKEN_EXCHANGED = "token_exchanged"
    AGE_COMPUTED = "age_computed"
    TOKEN_SIGNED = "token_signed"
    DELIVERED = "delivered"


class CallbackError(Exception):
    def __init__(self, code: str, description: str, status_code: int = 400):
        super().__init__(f"{code}: {description}")
        self.code = code
        self.description = description
        self.status_code = status_code


class VerificationCallback:
    """One callback attempt. run() always returns exactly one message for the opener."""

    def __init__(
        self,
        *,
        store: FlowStore,
        provider: IdentityProviderClient,
        token_key: bytes,
        db: Session,
        now: datetime,
        ip: str | None = None,
    ):
        self.store = store
        self.provider = provider
        self.token_key = token_key
        self.db = db
        self.now = now
        self.ip = ip
        self.stage = CallbackStage.START
        self.flow: FlowState | None = None

    @property
    def target_origin(self) -> str | None:
        return self.flow.opener_origin if self.flow else None

    def run(
        self,
        code: str | None,
        state: str | None,
        error: str | None,
        error_description: str | None,
    ) -> tuple[dict, int]:
        """Return (message, http_status)."""
        try:
            message = self._run(code, state, error, error_description)
        except CallbackError as e:
            logger.warning("Verification callback failed at %s: %s", self.stage.value, e.code)
            self._audit(EVENT_FLOW_FAILED, state, outcome=OUTCOME_FAIL, reason=e.code)
            self.stage = CallbackStage.DELIVERED
            return error_message(e.code, e.description), e.status_code
        except Exception:
            logger.exception("Verification callback crashed at %s", self.stage.value)
            self._audit(EVENT_FLOW_FAILED, state, outcome=OUTCOME_FAIL, reason="server_error")
            self.stage = CallbackStage.DELIVERED
            return error_message("server_error", "Verification failed. Please try again."), 500
        self._audit(EVENT_FLOW_COMPLETED, state)
        self.stage = CallbackStage.DELIVERED
        return message, 200

    def _run(self, code, state, error, error_description) -> dict:
        if error:
            self._discard_state(state)
            logger.warning("Provider returned error %s: %s", error, error_description)
            if error in _PROVIDER_ERRORS:
                raise CallbackError(error, _PROVIDER_ERRORS[error])
            raise CallbackError("provider_error", "Verification was cancelled or failed.")
        if not code or not state:
            raise CallbackError("invalid_request", "Missing authorization code or state.")
        self.stage = CallbackStage.PARAMS_VALIDATED

        self.flow = self._consume_state(state)
        self.stage = CallbackStage.STATE_CONSUMED

        attributes = self._exchange(code, self.flow.code_verifier)
        self.stage = CallbackStage.TOKEN_EXCHANGED

        outcome = self._compute(attributes.dob, self.flow.subject.age_threshold)
        self.stage = CallbackStage.AGE_COMPUTED

        subject = self.flow.subject
        audience = subject.widget_id if isinstance(subject, WidgetSubject) else ACCOUNT_TOKEN_AUDIENCE
        token = sign_verification_token(
            outcome,
            audience,
            subject.validity_days,
            key=self.token_key,
            issuer=TOKEN_ISSUER,
            now=self.now,
        )
        self.stage = CallbackStage.TOKEN_SIGNED

        if isinstance(subject, AccountSubject):
            self._record_account(subject, outcome, attributes)

        expires_at = verify_verification_token(
            token, audience, key=self.token_key, issuer=TOKEN_ISSUER, now=self.now
        ).expires_at
        logger.info(
            "Verification complete widget_id=%s user_id=%s is_adult=%s threshold=%s",
            getattr(subject, "widget_id", None),
            getattr(subject, "user_id", None),
            outcome.is_adult,
            outcome.age_threshold,
        )
        return success_message(
            token=token,
            isAdult=outcome.is_adult,
            ageThreshold=outcome.age_threshold,
            expiresAt=expires_at.isoformat(),
        )

    def _discard_state(self, state: str | None) -> None:
        """Invalidate the flow when the provider reports an error, keeping its opener origin."""
        if not state:
            return
        try:
            self.flow = self.store.take_once(state)
        except FlowStoreUnavailable:
            logger.error("Could not discard flow state after provider error")

    def _consume_state(self, state: str) -> FlowState:
        try:
            flow = self.store.take_once(state)
        except FlowStoreUnavailable:
            raise CallbackError("server_error", "Failed to validate session. Please try again.", 503)
        if flow is None:
            raise CallbackError("session_expired", "Verification session expired or invalid. Please start again.")
        return flow

    def _exchange(self, code: str, code_verifier: str) -> ProviderAttributes:
        try:
            attributes = self.provider.exchange_code(code, code_verifier, REDIRECT_URI)
        except ProviderError as e:
            logger.error("Token exchange failed: %s - %s", e.code, e.description)
            raise CallbackError("verification_failed", _GENERIC_FAILURE, 502)
        if not attributes.dob:
            logger.error("Provider token response has no date of birth")
            raise CallbackError("missing_attribute", "Could not retrieve date of birth from the identity provider.", 502)
        return attributes

    def _compute(self, dob_value: str, threshold: int) -> VerificationOutcome:
        try:
            dob = parse_dob(dob_value)
        except ProviderError as e:
            logger.error("Provider returned an unusable date of birth: %s", e.description)
            raise CallbackError("verification_failed", _GENERIC_FAILURE, 502)
        return evaluate_age(dob, threshold, self.now)

    def _record_account(
        self,
        subject: AccountSubject,
        outcome: VerificationOutcome,
        attributes: ProviderAttributes,
    ) -> None:
        consent_valid_till = _parse_consent_valid_till(attributes.consent_valid_till) or (
            self.now + timedelta(days=ACCOUNT_CONSENT_DAYS)
        )
        try:
            self.db.add(
                AccountVerification(
                    user_id=subject.user_id,
                    is_adult=outcome.is_adult,
                    age_at_verification=outcome.subject_age,
                    age_threshold=outcome.age_threshold,
                    consent_valid_till=consent_valid_till,
                    created_at=self.now,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to save account verification for user %s: %s", subject.user_id, e)
            raise CallbackError("server_error", "Failed to save verification. Please try again.", 503)

    def _audit(self, event_type: str, state: str | None, **kwargs) -> None:
        subject = self.flow.subject if self.flow else None
        try:
            log_audit(
                self.db,
                event_type,
                widget_id=getattr(subject, "widget_id", None),
                user_id=getattr(subject, "user_id", None),
                state=state,
                ip=self.ip,
                **kwargs,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to write audit event %s: %s", event_type, e)


def _parse_consent_valid_till(value: str | int | float | None) -> datetime | None:
    """ISO 8601 string or a Unix epoch (seconds, or milliseconds above 1e11)."""
    if not value or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000 if value > 1e11 else value, tz=timezone.utc)
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("Ignoring unparseable consent_valid_till from provider")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@router.get("/api/verify-age/callback")
def verify_age_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    db: Session = Depends(get_db),
    store: FlowStore = Depends(get_flow_store),
    provider: IdentityProviderClient = Depends(get_provider_client),
    token_key: bytes = Depends(get_token_key),
):
    """
    Exchange the code, compute the age outcome, sign the verification token and hand the
    result to the opener window. Every outcome renders the same handshake page.
    """
    callback = VerificationCallback(
        store=store,
        provider=provider,
        token_key=token_key,
        db=db,
        now=datetime.now(timezone.utc),
        ip=client_ip(request),
    )
    message, status_code = callback.run(code, state, error, error_description)
    return render_handshake(message, target_origin=callback.target_origin, status_code=status_code)
