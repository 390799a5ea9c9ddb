"""Tests for the pending flow store (memory and Redis backends)."""
import threading

import pytest
import redis

from verify_server.flow_store import (
    AccountSubject,
    FlowState,
    FlowStoreUnavailable,
    InMemoryFlowStore,
    RedisFlowStore,
    WidgetSubject,
    create_flow_store,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """Just enough of redis.Redis for the flow store."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex
        return True

    def getdel(self, key):
        return self.data.pop(key, None)


class BrokenRedis:
    def set(self, key, value, ex=None):
        raise redis.ConnectionError("connection refused")

    def getdel(self, key):
        raise redis.ConnectionError("connection refused")


def _flow(**kwargs):
    return FlowState(
        code_verifier="verifier-123",
        subject=WidgetSubject(widget_id="W1", age_threshold=18, validity_days=365),
        **kwargs,
    )


def test_take_once_returns_flow_then_nothing():
    store = InMemoryFlowStore()
    store.put("s1", _flow(opener_origin="https://shop.example"), ttl=600)
    flow = store.take_once("s1")
    assert flow is not None
    assert flow.code_verifier == "verifier-123"
    assert flow.opener_origin == "https://shop.example"
    assert store.take_once("s1") is None


def test_unknown_state():
    assert InMemoryFlowStore().take_once("never-stored") is None


def test_entry_expires_after_ttl():
    clock = FakeClock()
    store = InMemoryFlowStore(clock=clock)
    store.put("s1", _flow(), ttl=600)
    clock.now += 600
    assert store.take_once("s1") is None


def test_entry_valid_just_before_ttl():
    clock = FakeClock()
    store = InMemoryFlowStore(clock=clock)
    store.put("s1", _flow(), ttl=600)
    clock.now += 599
    assert store.take_once("s1") is not None


def test_concurrent_take_once_has_single_winner():
    store = InMemoryFlowStore()
    store.put("race", _flow(), ttl=600)
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(store.take_once("race"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sum(1 for r in results if r is not None) == 1


def test_flow_state_dict_keeps_subject_kind():
    account = FlowState(
        code_verifier="v",
        subject=AccountSubject(user_id="u1", age_threshold=18, validity_days=365),
        purpose="kyc",
    )
    restored = FlowState.from_dict(account.to_dict())
    assert isinstance(restored.subject, AccountSubject)
    assert restored.subject.user_id == "u1"
    assert restored.purpose == "kyc"


def test_flow_state_unknown_subject_kind():
    data = _flow().to_dict()
    data["subject"]["kind"] = "robot"
    with pytest.raises(ValueError):
        FlowState.from_dict(data)


def test_redis_store_put_sets_ttl_and_take_once_deletes():
    fake = FakeRedis()
    store = RedisFlowStore(fake)
    store.put("s1", _flow(), ttl=600)
    (key,) = fake.data.keys()
    assert key.endswith("s1")
    assert fake.ttls[key] == 600
    flow = store.take_once("s1")
    assert isinstance(flow.subject, WidgetSubject)
    assert flow.subject.widget_id == "W1"
    assert store.take_once("s1") is None


def test_redis_store_discards_unreadable_entry():
    fake = FakeRedis()
    store = RedisFlowStore(fake)
    store.put("s1", _flow(), ttl=600)
    key = next(iter(fake.data))
    fake.data[key] = "not json"
    assert store.take_once("s1") is None


def test_redis_store_unavailable_fails_closed():
    store = RedisFlowStore(BrokenRedis())
    with pytest.raises(FlowStoreUnavailable):
        store.put("s1", _flow(), ttl=600)
    with pytest.raises(FlowStoreUnavailable):
        store.take_once("s1")


def test_create_flow_store_by_url():
    assert isinstance(create_flow_store("memory://"), InMemoryFlowStore)
    assert isinstance(create_flow_store("redis://localhost:6379/0"), RedisFlowStore)
    with pytest.raises(ValueError):
        create_flow_store("ftp://nowhere")
