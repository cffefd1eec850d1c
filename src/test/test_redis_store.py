import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest
import redis

from security.abuse import AbuseGuard
from security.attempt_store import AbuseRecord, Decision, Transition
from security.config import AbuseConfig
from security.errors import StoreUnavailable
from security.keyspace import k_attempt, k_banned
from security.redis_store import RedisAttemptStore, get_redis

# Dùng db riêng cho test, mỗi test được dọn sạch trước khi chạy
REDIS_TEST_URL = os.getenv("REDIS_TEST_URL", "redis://localhost:6379/15")


@pytest.fixture
def client():
    """
    Đảm bảo có kết nối Redis, không có thì bỏ qua cả nhóm test
    """
    conn = get_redis(REDIS_TEST_URL)
    try:
        conn.ping()
    except redis.RedisError:
        pytest.skip(f"Không kết nối được Redis tại {REDIS_TEST_URL}")
    conn.flushdb()
    yield conn
    conn.flushdb()


@pytest.fixture
def store(client):
    return RedisAttemptStore(client, expire_seconds=3600)


def _increment(record):
    if record is None:
        record = AbuseRecord(window_start=0.0, request_count=0, violation_count=0, last_violation_at=0.0)
    return Transition(replace(record, request_count=record.request_count + 1), Decision.ALLOW)


def test_apply_stores_hash_with_ttl(store, client):
    store.apply("1.2.3.4", _increment)
    assert store.records()["1.2.3.4"].request_count == 1
    assert 0 < client.ttl(k_attempt("1.2.3.4")) <= 3600


def test_concurrent_apply_loses_no_update(store):
    """
    100 request đồng thời cùng 1 IP: WATCH/MULTI chạy lại khi xung đột -> đủ 100 lần đếm
    """
    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(lambda _: store.apply("1.2.3.4", _increment), range(100)))
    assert store.records()["1.2.3.4"].request_count == 100


def test_ban_removes_counter(store, client):
    store.apply("1.2.3.4", _increment)
    assert store.ban("1.2.3.4")
    assert not store.ban("1.2.3.4")

    assert store.is_banned("1.2.3.4")
    assert client.exists(k_attempt("1.2.3.4")) == 0
    assert store.apply("1.2.3.4", _increment) is None
    assert store.banned_ips() == ["1.2.3.4"]

    assert store.unban("1.2.3.4")
    assert client.scard(k_banned()) == 0


def test_guard_bans_through_redis(store):
    """
    Chạy đủ máy trạng thái trên Redis: 3 lần vượt ngưỡng -> BAN
    """
    config = AbuseConfig()
    guard = AbuseGuard(store, config)
    t = 1000.0
    decisions = []
    while len(decisions) < 200 and (not decisions or decisions[-1] is not Decision.BANNED):
        decisions.append(guard.check("1.2.3.4", now=t).decision)
        t += 2.0
    assert decisions[-1] is Decision.BANNED
    assert store.is_banned("1.2.3.4")


def test_unreachable_redis_fails_open():
    """
    Redis chết: thao tác kho ném StoreUnavailable, còn bộ kiểm soát vẫn cho request đi qua
    """
    store = RedisAttemptStore(get_redis("redis://127.0.0.1:1/0"), expire_seconds=60)
    with pytest.raises(StoreUnavailable):
        store.is_banned("1.2.3.4")
    assert store.ping() is False

    guard = AbuseGuard(store, AbuseConfig())
    started = time.time()
    assert guard.check("1.2.3.4").allowed
    # Circuit breaker đang mở -> không chờ timeout kết nối lần nữa
    assert time.time() - started < 1.0
