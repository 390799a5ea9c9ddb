"""
Store for pending verification flows (state -> PKCE verifier + subject).
Written by init, consumed exactly once by the callback. Entries expire after a short TTL.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import redis
from fastapi import Request

from verify_server.config import FLOW_STORE_URL

logger = logging.getLogger(__name__)

_REDIS_KEY_PREFIX = "verify-age:state:"


class FlowStoreUnavailable(Exception):
    """Backing store could not be reached; callers must fail closed."""


@dataclass(frozen=True)
class WidgetSubject:
    widget_id: str
    age_threshold: int
    validity_days: int


@dataclass(frozen=True)
class AccountSubject:
    user_id: str
    age_threshold: int
    validity_days: int


@dataclass
class FlowState:
    code_verifier: str
    subject: WidgetSubject | AccountSubject
    purpose: str = "verification"
    opener_origin: str | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        if isinstance(self.subject, WidgetSubject):
            subject = {
                "kind": "widget",
                "widget_id": self.subject.widget_id,
                "age_threshold": self.subject.age_threshold,
                "validity_days": self.subject.validity_days,
            }
        else:
            subject = {
                "kind": "account",
                "user_id": self.subject.user_id,
                "age_threshold": self.subject.age_threshold,
                "validity_days": self.subject.validity_days,
            }
        return {
            "code_verifier": self.code_verifier,
            "subject": subject,
            "purpose": self.purpose,
            "opener_origin": self.opener_origin,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FlowState":
        raw = data["subject"]
        if raw["kind"] == "widget":
            subject = WidgetSubject(
                widget_id=raw["widget_id"],
                age_threshold=int(raw["age_threshold"]),
                validity_days=int(raw["validity_days"]),
            )
        elif raw["kind"] == "account":
            subject = AccountSubject(
                user_id=raw["user_id"],
                age_threshold=int(raw["age_threshold"]),
                validity_days=int(raw["validity_days"]),
            )
        else:
            raise ValueError(f"Unknown subject kind: {raw['kind']}")
        return cls(
            code_verifier=data["code_verifier"],
            subject=subject,
            purpose=data.get("purpose", "verification"),
            opener_origin=data.get("opener_origin"),
            created_at=float(data.get("created_at", 0)),
        )


class InMemoryFlowStore:
    """
    Single-process store. The lock makes take_once atomic: concurrent callers racing
    on one state get exactly one winner.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[FlowState, float]] = {}  # state -> (flow, expires_at)
        self._lock = threading.Lock()

    def put(self, state: str, flow: FlowState, ttl: int) -> None:
        with self._lock:
            self._clean_expired()
            self._entries[state] = (flow, self._clock() + ttl)

    def take_once(self, state: str) -> FlowState | None:
        with self._lock:
            entry = self._entries.pop(state, None)
        if entry is None:
            return None
        flow, expires_at = entry
        if self._clock() >= expires_at:
            return None
        return flow

    def _clean_expired(self) -> None:
        now = self._clock()
        expired = [s for s, (_, exp) in self._entries.items() if now >= exp]
        for s in expired:
            del self._entries[s]


class RedisFlowStore:
    """Shared store for multi-process deployments. GETDEL gives the one-time read."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisFlowStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def put(self, state: str, flow: FlowState, ttl: int) -> None:
        try:
            self._client.set(_REDIS_KEY_PREFIX + state, json.dumps(flow.to_dict()), ex=ttl)
        except redis.RedisError as e:
            logger.error("Flow store write failed: %s", e)
            raise FlowStoreUnavailable("flow store write failed") from e

    def take_once(self, state: str) -> FlowState | None:
        try:
            raw = self._client.getdel(_REDIS_KEY_PREFIX + state)
        except redis.RedisError as e:
            logger.error("Flow store read failed: %s", e)
            raise FlowStoreUnavailable("flow store read failed") from e
        if raw is None:
            return None
        try:
            return FlowState.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable flow state entry: %s", e)
            return None


FlowStore = InMemoryFlowStore | RedisFlowStore


def create_flow_store(url: str) -> FlowStore:
    if url.startswith("memory://"):
        return InMemoryFlowStore()
    if url.startswith(("redis://", "rediss://")):
        return RedisFlowStore.from_url(url)
    raise ValueError(f"Unsupported flow store URL scheme: {url}")


def get_flow_store(request: Request) -> FlowStore:
    """Dependency: the app-wide flow store, created on first use."""
    store = getattr(request.app.state, "flow_store", None)
    if store is None:
        store = create_flow_store(FLOW_STORE_URL)
        request.app.state.flow_store = store
    return store
