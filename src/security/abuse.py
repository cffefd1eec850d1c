import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from log.system_log import system_logger
from security.attempt_store import AbuseRecord, AttemptStore, Decision, Transition
from security.config import AbuseConfig
from security.errors import StoreUnavailable

"""
Máy trạng thái chống DOS theo IP.
Mỗi IP có 1 bản ghi (windowStart, requestCount, violationCount, lastViolationAt):

    COUNTING --(đủ request_limit)--> WAITING --(hết time_wait)--> COUNTING (violation + 1)
    WAITING  --(đã vi phạm đủ ban_after_violations lần, lại đủ ngưỡng)--> BANNED (vĩnh viễn)

- Request cách request được đếm trước < time_safe: không đếm (tài nguyên tĩnh tải cùng trang)
- Request cách >= time_safe và < time_window: +1
- Request cách >= time_window: bộ đếm về 0
- Đầu cửa sổ HOẶC lần vi phạm cuối cũ hơn time_expire: bản ghi được coi như mới (vi phạm cũ được bỏ qua)
"""


@dataclass(frozen=True)
class RateVerdict:
    decision: Decision
    retry_after: float = 0.0

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOW


ALLOWED = RateVerdict(Decision.ALLOW)
BANNED = RateVerdict(Decision.BANNED)


def is_expired(record: AbuseRecord, now: float, config: AbuseConfig) -> bool:
    return record.expired_before(now - config.time_expire)


def advance(record: Optional[AbuseRecord], now: float, config: AbuseConfig) -> Transition:
    """
    1 bước của máy trạng thái (hàm thuần, không I/O).
    Kho lưu gọi hàm này bên trong lock/transaction của IP tương ứng.
    """
    if record is None or is_expired(record, now, config):
        fresh = AbuseRecord(window_start=now, request_count=0, violation_count=0, last_violation_at=now)
        return Transition(fresh, Decision.ALLOW)

    changed = False
    limit = config.request_limit

    # COUNTING: chỉ đếm khi chưa chạm ngưỡng
    if record.request_count < limit:
        elapsed = now - record.window_start
        if elapsed >= config.time_safe:
            count = record.request_count + 1 if elapsed < config.time_window else 0
            record = replace(record, window_start=now, request_count=count)
            changed = True

    if record.request_count < limit:
        return Transition(record, Decision.ALLOW, changed=changed)

    if record.violation_count < config.ban_after_violations:
        # Mốc chờ = thời điểm chạm ngưỡng
        wait_until = max(record.window_start, record.last_violation_at) + config.time_wait
        if now < wait_until:
            return Transition(record, Decision.WAIT, retry_after=wait_until - now, changed=changed)

        # Hết thời gian chờ: ghi nhận 1 lần vi phạm, quay lại COUNTING
        record = AbuseRecord(
            window_start=now,
            request_count=0,
            violation_count=record.violation_count + 1,
            last_violation_at=now,
        )
        return Transition(record, Decision.ALLOW)

    return Transition(None, Decision.BANNED, ban=True)


class AbuseGuard:
    """
    Bộ kiểm soát lạm dụng: gắn máy trạng thái với kho lưu.
    - clock: hàm trả epoch giây (test truyền đồng hồ giả)
    - Kho lỗi (Redis down) -> fail-open: cho request đi qua và ghi log
    """
    def __init__(self, store: AttemptStore, config: AbuseConfig, clock: Callable[[], float] = time.time):
        self.store = store
        self.config = config
        self.clock = clock
        self._prune_lock = threading.Lock()
        self._last_prune_ts = 0.0

    def _maybe_prune(self, now: float) -> None:
        """Dọn bản ghi hết hạn, tối đa 1 lần mỗi prune_interval giây."""
        with self._prune_lock:
            if now - self._last_prune_ts < self.config.prune_interval:
                return
            self._last_prune_ts = now
        removed = self.store.prune(now - self.config.time_expire)
        if removed:
            system_logger.info(f"Đã dọn {removed} bản ghi DOS hết hạn")

    def check(self, ip: str, now: Optional[float] = None) -> RateVerdict:
        now = self.clock() if now is None else now
        try:
            # IP bị BAN được kiểm tra trước mọi thứ khác
            if self.store.is_banned(ip):
                return BANNED

            self._maybe_prune(now)
            outcome = self.store.apply(ip, lambda record: advance(record, now, self.config))
        except StoreUnavailable as e:
            system_logger.warning(f"Kho chống DOS không khả dụng, cho phép request từ {ip}: {e}")
            return ALLOWED

        if outcome is None:
            return BANNED

        if outcome.ban:
            system_logger.warning(f"IP {ip} bị BAN vĩnh viễn sau {self.config.ban_after_violations} lần vi phạm")
        elif outcome.decision is Decision.WAIT and outcome.changed:
            system_logger.info(f"IP {ip} vượt ngưỡng {self.config.request_limit} request, phải chờ {outcome.retry_after:.1f}s")

        return RateVerdict(outcome.decision, outcome.retry_after)

    def ban(self, ip: str) -> bool:
        return self.store.ban(ip)

    def unban(self, ip: str) -> bool:
        return self.store.unban(ip)
