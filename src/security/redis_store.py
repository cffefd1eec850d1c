import math
import threading
import time
from typing import Dict, Optional

import redis              # Thư viện redis-py (pip install redis)

from log.system_log import system_logger
from security.attempt_store import AbuseRecord, AttemptStore, Transition
from security.errors import StoreUnavailable
from security.keyspace import ATTEMPT_PREFIX, ip_from_attempt_key, k_attempt, k_banned

"""
Kho chống DOS trên Redis, dùng chung giữa nhiều worker/instance.
Đầu tiên cần chạy Redis server (có thể chạy local hoặc Docker).
Với Docker: `docker run -p 6379:6379 -it redis:latest`

- Bộ đếm của 1 IP là 1 HASH (xem keyspace.py), đọc-sửa-ghi trong WATCH/MULTI/EXEC:
  nếu IP bị request khác sửa giữa chừng, redis-py tự chạy lại toàn bộ bước (step là hàm thuần).
- IP bị BAN nằm trong 1 SET; kiểm tra BAN nằm chung transaction với bộ đếm.
- Redis lỗi -> bật circuit breaker, ném StoreUnavailable; bên gọi quyết định fail-open.
Lưu ý: redis-py mặc định trả về bytes (decode_responses=False), ta tự decode khi cần.
"""

REDIS_SCAN_COUNT = 1000              # Số key mỗi vòng scan_iter
REDIS_COOLDOWN_SECONDS = 5.0         # Redis down -> bỏ qua Redis trong khoảng này
_LOG_EVERY_SECONDS = 1.0             # Throttle log: tối đa 1 log/giây


def get_redis(url: str) -> redis.Redis:
    """
    Tạo client Redis từ url (ví dụ: redis://redis:6379/0).
    Dùng connection pool để tái sử dụng kết nối TCP.
    """
    pool = redis.ConnectionPool.from_url(
        url,
        socket_keepalive=True,                                # Giữ kết nối lâu dài
        socket_timeout=2.0,                                   # Timeout thao tác (giây)
        socket_connect_timeout=2.0,                           # Timeout kết nối (giây)
        max_connections=200,                                  # Giới hạn số kết nối đồng thời
        health_check_interval=30,                             # Ping định kỳ phát hiện kết nối chết
        decode_responses=False,
    )
    return redis.Redis(connection_pool=pool)


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _decode_record(raw: Dict) -> Optional[AbuseRecord]:
    """HASH rỗng/thiếu trường -> coi như chưa có bản ghi."""
    if not raw:
        return None
    data = {_text(k): _text(v) for k, v in raw.items()}
    try:
        return AbuseRecord(
            window_start=float(data["ws"]),
            request_count=int(data["rc"]),
            violation_count=int(data["vc"]),
            last_violation_at=float(data["lv"]),
        )
    except (KeyError, ValueError):
        return None


def _encode_record(record: AbuseRecord) -> Dict[str, str]:
    return {
        "ws": repr(record.window_start),
        "vc": str(record.violation_count),
        "rc": str(record.request_count),
        "lv": repr(record.last_violation_at),
    }


class RedisAttemptStore(AttemptStore):
    def __init__(self, client: redis.Redis, expire_seconds: float):
        self.client = client
        self.expire_seconds = max(1, int(math.ceil(expire_seconds)))

        # Trạng thái circuit breaker
        self._state_lock = threading.Lock()
        self._skip_until_ts = 0.0
        self._last_log_ts = 0.0

    # ----- circuit breaker -----

    def _should_skip(self) -> bool:
        with self._state_lock:
            return time.time() < self._skip_until_ts

    def _mark_down(self, ex: Exception, op: str) -> None:
        now = time.time()
        with self._state_lock:
            self._skip_until_ts = now + REDIS_COOLDOWN_SECONDS
            should_log = now - self._last_log_ts >= _LOG_EVERY_SECONDS
            if should_log:
                self._last_log_ts = now
        if should_log:
            system_logger.warning("AttemptStore Redis error at %s (skip %.1fs): %s", op, REDIS_COOLDOWN_SECONDS, ex)

    def _call(self, op: str, func):
        """
        Chạy 1 thao tác Redis:
        - Đang trong thời gian skip -> StoreUnavailable ngay (không chờ timeout)
        - Redis lỗi -> bật skip và ném StoreUnavailable
        """
        if self._should_skip():
            raise StoreUnavailable(f"Redis tạm thời bị bỏ qua ({op})")
        try:
            return func()
        except redis.RedisError as ex:
            self._mark_down(ex, op)
            raise StoreUnavailable(f"Redis lỗi tại {op}: {ex}") from ex

    # ----- AttemptStore -----

    def apply(self, ip, step):
        key = k_attempt(ip)
        banned_key = k_banned()

        def _tx(pipe) -> Optional[Transition]:
            # Sau WATCH pipeline ở chế độ chạy lệnh ngay -> đọc được giá trị hiện tại
            if pipe.sismember(banned_key, ip):
                pipe.multi()
                return None

            outcome = step(_decode_record(pipe.hgetall(key)))

            pipe.multi()
            if outcome.ban:
                pipe.delete(key)
                pipe.sadd(banned_key, ip)
            elif outcome.record is None:
                pipe.delete(key)
            elif outcome.changed:
                pipe.hset(key, mapping=_encode_record(outcome.record))
                pipe.expire(key, self.expire_seconds)
            return outcome

        return self._call(
            "APPLY",
            lambda: self.client.transaction(_tx, key, banned_key, value_from_callable=True),
        )

    def is_banned(self, ip):
        return bool(self._call("SISMEMBER", lambda: self.client.sismember(k_banned(), ip)))

    def ban(self, ip):
        def _ban():
            pipe = self.client.pipeline(transaction=True)
            pipe.sadd(k_banned(), ip)
            pipe.delete(k_attempt(ip))
            added, _ = pipe.execute()
            return bool(added)
        return self._call("BAN", _ban)

    def unban(self, ip):
        return bool(self._call("UNBAN", lambda: self.client.srem(k_banned(), ip)))

    def banned_ips(self):
        members = self._call("SMEMBERS", lambda: self.client.smembers(k_banned()))
        return sorted(_text(m) for m in members)

    def records(self):
        def _collect() -> Dict[str, AbuseRecord]:
            keys = [_text(k) for k in self.client.scan_iter(match=f"{ATTEMPT_PREFIX}*", count=REDIS_SCAN_COUNT)]
            if not keys:
                return {}
            pipe = self.client.pipeline(transaction=False)
            for k in keys:
                pipe.hgetall(k)
            out = {}
            for k, raw in zip(keys, pipe.execute()):
                record = _decode_record(raw)
                if record is not None:
                    out[ip_from_attempt_key(k)] = record
            return out
        return self._call("SCAN", _collect)

    def prune(self, older_than):
        # Redis tự xoá bản ghi theo TTL (EXPIRE) -> không cần dọn thủ công
        return 0

    def ping(self):
        try:
            return bool(self._call("PING", self.client.ping))
        except StoreUnavailable:
            return False

