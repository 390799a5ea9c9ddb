"""
Widget configuration lookup (age threshold, validity period, allowed domain) and env seeding.
"""
import logging
import os
from dataclasses import dataclass
from urllib.parse import urlsplit

from sqlalchemy.orm import Session

from verify_server.config import DEFAULT_AGE_THRESHOLD, DEFAULT_VALIDITY_DAYS
from verify_server.models import WidgetConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WidgetSettings:
    widget_id: str
    verification_enabled: bool
    age_threshold: int
    validity_days: int
    domain: str | None


def get_widget_config(db: Session, widget_id: str) -> WidgetSettings | None:
    """Active widget settings, or None if the widget is unknown or inactive."""
    row = (
        db.query(WidgetConfig)
        .filter(WidgetConfig.widget_id == widget_id, WidgetConfig.is_active.is_(True))
        .first()
    )
    if row is None:
        return None
    return WidgetSettings(
        widget_id=row.widget_id,
        verification_enabled=bool(row.require_age_verification),
        age_threshold=row.age_verification_threshold or DEFAULT_AGE_THRESHOLD,
        validity_days=row.verification_validity_days or DEFAULT_VALIDITY_DAYS,
        domain=row.domain,
    )


def parse_origin(value: str) -> str | None:
    """Normalized scheme://host[:port], or None if value is not a bare web origin."""
    parts = urlsplit(value.strip())
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    if parts.path not in ("", "/") or parts.query or parts.fragment or parts.username or parts.password:
        return None
    return f"{parts.scheme}://{parts.netloc}".lower()


def origin_allowed(origin: str, domain: str | None) -> bool:
    """True if origin is on the widget's domain or one of its subdomains (any origin when no domain is set)."""
    if not domain:
        return True
    host = (urlsplit(origin).hostname or "").lower()
    domain = domain.lower().strip().lstrip(".")
    return host == domain or host.endswith("." + domain)


def seed_from_env(db: Session) -> None:
    """Create one age-verification widget from env if set (local development)."""
    widget_id = os.environ.get("VERIFY_SEED_WIDGET_ID", "").strip()
    if not widget_id:
        return
    if db.query(WidgetConfig).filter(WidgetConfig.widget_id == widget_id).first() is not None:
        return
    db.add(
        WidgetConfig(
            widget_id=widget_id,
            domain=os.environ.get("VERIFY_SEED_WIDGET_DOMAIN", "").strip() or None,
            require_age_verification=True,
            age_verification_threshold=int(os.environ.get("VERIFY_SEED_AGE_THRESHOLD", str(DEFAULT_AGE_THRESHOLD))),
            verification_validity_days=int(os.environ.get("VERIFY_SEED_VALIDITY_DAYS", str(DEFAULT_VALIDITY_DAYS))),
        )
    )
    db.commit()
    logger.info("Seeded widget %s with age verification enabled", widget_id)
