"""
SQLAlchemy models for the age verification service.
No date of birth is stored anywhere; only derived outcomes.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class WidgetConfig(Base):
    """Consent widget settings relevant to age verification (owned by the widget configuration system)."""
    __tablename__ = "widget_configs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    widget_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    require_age_verification: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    age_verification_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    verification_validity_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class VerificationSession(Base):
    """Completed widget verification for one (widget, visitor); upserted by /complete."""
    __tablename__ = "age_verification_sessions"
    __table_args__ = (UniqueConstraint("widget_id", "visitor_id", name="uq_age_verification_widget_visitor"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    widget_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    visitor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    verification_outcome: Mapped[str] = mapped_column(String(32), nullable=False)  # verified_adult | blocked_minor | limited_access
    verified_age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    verification_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    verified_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AccountVerification(Base):
    """Verification for a logged-in platform account; read by /account-verification/status."""
    __tablename__ = "account_verifications"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    is_adult: Mapped[bool] = mapped_column(Boolean, nullable=False)
    age_at_verification: Mapped[int] = mapped_column(Integer, nullable=False)
    age_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    consent_valid_till: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class AuditLog(Base):
    """Security-relevant flow events. No tokens, state values or dates of birth."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    widget_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)  # None = anonymous visitor
    flow_ref: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
