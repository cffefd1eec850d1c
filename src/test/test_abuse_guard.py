import pytest

from security.abuse import AbuseGuard, advance
from security.attempt_store import AbuseRecord, Decision, MemoryAttemptStore, Transition
from security.config import AbuseConfig
from security.errors import StoreUnavailable

IP = "203.0.113.10"
T0 = 1_000_000.0
STEP = 2.0          # Nằm giữa time_safe (1.5s) và time_window (3s) -> mỗi request đều được đếm


@pytest.fixture
def config():
    return AbuseConfig()


@pytest.fixture
def guard(config):
    return AbuseGuard(MemoryAttemptStore(), config, clock=lambda: T0)


def _overflow(guard, start):
    """
    Gửi 1 request mở cửa sổ (không đếm) + 9 request được đếm (tổng 10 request được cho qua),
    trả về thời điểm của request tiếp theo (request thứ 11)
    """
    t = start
    for _ in range(10):
        assert guard.check(IP, now=t).allowed
        t += STEP
    return t


def test_first_request_creates_record(guard):
    assert guard.check(IP, now=T0).allowed
    record = guard.store.records()[IP]
    assert record == AbuseRecord(window_start=T0, request_count=0, violation_count=0, last_violation_at=T0)


def test_rapid_requests_are_not_counted(guard):
    """
    Request dồn dập hơn time_safe (tài nguyên tĩnh) không làm tăng bộ đếm
    """
    guard.check(IP, now=T0)
    for i in range(50):
        assert guard.check(IP, now=T0 + 0.01 * i).allowed
    assert guard.store.records()[IP].request_count == 0


def test_counter_resets_after_window(guard):
    t = T0
    guard.check(IP, now=t)
    for _ in range(5):
        t += STEP
        guard.check(IP, now=t)
    assert guard.store.records()[IP].request_count == 5

    t += 5.0            # > time_window
    guard.check(IP, now=t)
    assert guard.store.records()[IP].request_count == 0


def test_wait_then_violation_then_ban(guard, config):
    # Lần vượt ngưỡng thứ 1: request thứ 11 phải chờ
    t = _overflow(guard, T0)
    verdict = guard.check(IP, now=t)
    assert verdict.decision is Decision.WAIT
    assert verdict.retry_after == pytest.approx(config.time_wait)

    # Vẫn trong thời gian chờ: tiếp tục WAIT, không tăng số lần vi phạm
    verdict = guard.check(IP, now=t + 4)
    assert verdict.decision is Decision.WAIT
    assert verdict.retry_after == pytest.approx(config.time_wait - 4)
    assert guard.store.records()[IP].violation_count == 0

    # Hết thời gian chờ: request thứ 12 được cho qua, ghi nhận 1 lần vi phạm
    t += config.time_wait + 1
    assert guard.check(IP, now=t).allowed
    record = guard.store.records()[IP]
    assert record.violation_count == 1
    assert record.request_count == 0

    # Lần vượt ngưỡng thứ 2: chờ rồi vi phạm lần 2
    t = _overflow(guard, t)
    assert guard.check(IP, now=t).decision is Decision.WAIT
    t += config.time_wait + 1
    assert guard.check(IP, now=t).allowed
    assert guard.store.records()[IP].violation_count == 2

    # Lần vượt ngưỡng tiếp theo: BAN vĩnh viễn
    t = _overflow(guard, t)
    assert guard.check(IP, now=t).decision is Decision.BANNED
    assert guard.store.is_banned(IP)
    assert IP not in guard.store.records()

    # Mọi request sau đó đều bị từ chối, kể cả rất lâu sau
    assert guard.check(IP, now=t + 10 * config.time_expire).decision is Decision.BANNED


def test_other_ips_are_not_affected(guard):
    t = _overflow(guard, T0)
    assert guard.check(IP, now=t).decision is Decision.WAIT
    assert guard.check("198.51.100.1", now=t).allowed


def test_unban_restores_access(guard):
    guard.ban(IP)
    assert guard.check(IP, now=T0).decision is Decision.BANNED
    assert guard.unban(IP)
    assert guard.check(IP, now=T0 + 1).allowed


def test_expired_record_starts_fresh(config):
    old = AbuseRecord(window_start=T0, request_count=10, violation_count=1, last_violation_at=T0)
    outcome = advance(old, T0 + config.time_expire + 1, config)
    assert outcome.decision is Decision.ALLOW
    assert outcome.record.request_count == 0
    assert outcome.record.violation_count == 0


def test_old_violation_expires_even_with_recent_window(config):
    record = AbuseRecord(window_start=T0 + 3000, request_count=5, violation_count=1, last_violation_at=T0)
    outcome = advance(record, T0 + config.time_expire + 1, config)
    assert outcome.record.violation_count == 0
    assert outcome.record.request_count == 0


def test_active_client_forgets_old_violation(config):
    """
    Client vẫn hoạt động đều đặn (30 phút 1 request) sau lần vi phạm:
    quá time_expire kể từ lần vi phạm thì violation_count về 0, không bị BAN ở lần vượt ngưỡng sau
    """
    guard = AbuseGuard(MemoryAttemptStore(), config)
    record = AbuseRecord(window_start=T0, request_count=0, violation_count=1, last_violation_at=T0)
    guard.store.apply(IP, lambda _: Transition(record, Decision.ALLOW))

    t = T0
    for _ in range(8):
        t += 1800
        assert guard.check(IP, now=t).allowed
    assert guard.store.records()[IP].violation_count == 0


def test_prune_removes_expired_records(config):
    store = MemoryAttemptStore()
    guard = AbuseGuard(store, config, clock=lambda: T0)
    guard.check("192.0.2.1", now=T0)
    guard.check("192.0.2.2", now=T0 + config.time_expire)

    # Lần kiểm tra kế tiếp sau prune_interval sẽ dọn bản ghi của 192.0.2.1
    guard.check("192.0.2.2", now=T0 + config.time_expire + config.prune_interval + 1)
    assert "192.0.2.1" not in store.records()
    assert "192.0.2.2" in store.records()


def test_uses_injected_clock(config):
    now = [T0]
    guard = AbuseGuard(MemoryAttemptStore(), config, clock=lambda: now[0])
    guard.check(IP)
    now[0] += STEP
    guard.check(IP)
    assert guard.store.records()[IP].request_count == 1


class _BrokenStore(MemoryAttemptStore):
    def is_banned(self, ip):
        raise StoreUnavailable("down")


def test_store_outage_fails_open(config):
    guard = AbuseGuard(_BrokenStore(), config)
    assert guard.check(IP).allowed
