"""
Audit logging for verification flows. No tokens, state values, or dates of birth are recorded.
A flow is referenced by a hash prefix of its state so init and callback events can be paired.
"""
import hashlib
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from verify_server.models import AuditLog

EVENT_FLOW_INITIATED = "flow_initiated"
EVENT_FLOW_COMPLETED = "flow_completed"
EVENT_FLOW_FAILED = "flow_failed"
EVENT_VERIFICATION_RECORDED = "verification_recorded"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

_TERMINAL_EVENTS = (EVENT_FLOW_COMPLETED, EVENT_FLOW_FAILED)


def flow_ref(state: str) -> str:
    return hashlib.sha256(state.encode("utf-8")).hexdigest()[:32]


def log_audit(
    db: Session,
    event_type: str,
    *,
    widget_id: str | None = None,
    user_id: str | None = None,
    state: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
    reason: str | None = None,
) -> None:
    """Append one audit record."""
    db.add(
        AuditLog(
            event_type=event_type,
            widget_id=widget_id,
            user_id=user_id,
            flow_ref=flow_ref(state) if state else None,
            ip=ip,
            outcome=outcome,
            reason=reason,
        )
    )
    db.commit()


def list_unresolved_flows(db: Session, older_than_seconds: int, now: datetime | None = None) -> list[dict]:
    """
    Initiated flows older than the cutoff with no callback outcome: the visitor closed the
    popup or never came back from the provider. Most recent first.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = (now - timedelta(seconds=older_than_seconds)).replace(tzinfo=None)
    resolved = select(AuditLog.flow_ref).where(
        AuditLog.event_type.in_(_TERMINAL_EVENTS),
        AuditLog.flow_ref.is_not(None),
    )
    rows = (
        db.query(AuditLog)
        .filter(
            AuditLog.event_type == EVENT_FLOW_INITIATED,
            AuditLog.created_at < cutoff,
            AuditLog.flow_ref.not_in(resolved),
        )
        .order_by(AuditLog.created_at.desc())
        .all()
    )
    return [
        {
            "flow_ref": r.flow_ref,
            "widget_id": r.widget_id,
            "user_id": r.user_id,
            "initiated_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]
