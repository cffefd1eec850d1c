import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from log.system_log import system_logger
from security.errors import StoreUnavailable

"""
Kho lưu bộ đếm chống DOS theo IP + danh sách IP bị BAN.
- Mọi thao tác đọc-sửa-ghi trên 1 IP phải atomic (apply), tránh 2 request đồng thời
  cùng thấy mình là "request đầu tiên của cửa sổ" hoặc cùng vượt ngưỡng mà không ai ghi nhận vi phạm.
- MemoryAttemptStore: dict + threading.Lock (1 tiến trình).
- FileAttemptStore: như trên + ghi ra 2 tệp văn bản sau mỗi lần thay đổi (định dạng tương thích .htaccess).
- RedisAttemptStore (redis_store.py): nhiều worker/tiến trình dùng chung.
"""

ATTEMPTS_BEGIN = "### BEGIN: DOS Attempts ###"
ATTEMPTS_END = "### END: DOS Attempts ###"
BANNED_BEGIN = "### BEGIN: BANNED IPs ###"
BANNED_END = "### END: BANNED IPs ###"
_LOG_EVERY_SECONDS = 1.0             # Throttle log lỗi ghi tệp: tối đa 1 log/giây

_NUMBER = r"\d+(?:\.\d+)?"
_ATTEMPT_LINE = re.compile(rf"^#\s*(\S+)\s*=>\s*({_NUMBER}):(\d+):(\d+):({_NUMBER})\s*$")
_DENY_LINE = re.compile(r"^Deny from\s+(\S+)\s*$", re.IGNORECASE)


class Decision(str, Enum):
    ALLOW = "allow"
    WAIT = "wait"
    BANNED = "banned"


@dataclass(frozen=True)
class AbuseRecord:
    window_start: float
    request_count: int
    violation_count: int
    last_violation_at: float

    def expired_before(self, cutoff: float) -> bool:
        """Hết hạn khi 1 trong 2 mốc (đầu cửa sổ, lần vi phạm cuối) cũ hơn cutoff."""
        return min(self.window_start, self.last_violation_at) < cutoff


@dataclass(frozen=True)
class Transition:
    """
    Kết quả 1 bước của máy trạng thái:
    - record: bản ghi mới (None -> xoá bản ghi)
    - ban: True -> đưa IP vào danh sách BAN (cùng lúc xoá bản ghi)
    - changed: False -> không cần ghi lại kho
    """
    record: Optional[AbuseRecord]
    decision: Decision
    retry_after: float = 0.0
    ban: bool = False
    changed: bool = True


# ===== Định dạng văn bản (tương thích tệp .ddos / .htaccess) =====

def format_number(value: float) -> str:
    if float(value).is_integer():
        return "%d" % value
    return ("%.3f" % value).rstrip("0").rstrip(".")


def format_attempt(ip: str, record: AbuseRecord) -> str:
    # Thứ tự trường: windowStart:violationCount:requestCount:lastViolationAt
    return "# %s => %s:%d:%d:%s" % (
        ip,
        format_number(record.window_start),
        record.violation_count,
        record.request_count,
        format_number(record.last_violation_at),
    )


def _find_block(text: str, begin: str, end: str):
    start = text.find(begin)
    if start < 0:
        return None
    stop = text.find(end, start + len(begin))
    if stop < 0:
        return None
    return start, stop + len(end)


def block_lines(text: str, begin: str, end: str) -> List[str]:
    """Các dòng nằm giữa 2 dòng đánh dấu begin/end (rỗng nếu không có khối)."""
    span = _find_block(text, begin, end)
    if span is None:
        return []
    inner = text[span[0] + len(begin):span[1] - len(end)]
    return [line.strip() for line in inner.splitlines() if line.strip()]


def replace_block(text: str, begin: str, end: str, lines: Iterable[str]) -> str:
    """
    Thay nội dung khối begin/end, giữ nguyên phần văn bản bên ngoài khối.
    Chưa có khối -> thêm vào cuối.
    """
    block = "\n".join([begin, *lines, end])
    span = _find_block(text, begin, end)
    if span is None:
        if text and not text.endswith("\n"):
            text += "\n"
        return text + block + "\n"
    return text[:span[0]] + block + text[span[1]:]


def render_attempts(records: Dict[str, AbuseRecord], text: str = "") -> str:
    return replace_block(text, ATTEMPTS_BEGIN, ATTEMPTS_END,
                         (format_attempt(ip, rec) for ip, rec in sorted(records.items())))


def parse_attempts(text: str) -> Dict[str, AbuseRecord]:
    """
    Đọc khối DOS Attempts. Dòng sai định dạng bị bỏ qua; đọc lại nhiều lần cho cùng kết quả.
    """
    out: Dict[str, AbuseRecord] = {}
    for line in block_lines(text, ATTEMPTS_BEGIN, ATTEMPTS_END):
        m = _ATTEMPT_LINE.match(line)
        if not m:
            continue
        ip, window_start, violations, count, last_violation = m.groups()
        out[ip] = AbuseRecord(
            window_start=float(window_start),
            request_count=int(count),
            violation_count=int(violations),
            last_violation_at=float(last_violation),
        )
    return out


def render_banned(ips: Iterable[str], text: str = "") -> str:
    lines = ["Order Allow,Deny"] + ["Deny from %s" % ip for ip in sorted(ips)]
    return replace_block(text, BANNED_BEGIN, BANNED_END, lines)


def parse_banned(text: str) -> Set[str]:
    out = set()
    for line in block_lines(text, BANNED_BEGIN, BANNED_END):
        m = _DENY_LINE.match(line)
        if m:
            out.add(m.group(1))
    return out


# ===== Kho lưu =====

class AttemptStore:
    """
    Interface kho lưu bộ đếm + danh sách BAN
    """
    def apply(self, ip: str, step: Callable[[Optional[AbuseRecord]], Transition]) -> Optional[Transition]:
        """
        Atomic: đọc bản ghi của ip, gọi step(record), ghi kết quả.
        Trả None nếu ip đang bị BAN (step không được gọi).
        """
        raise NotImplementedError

    def is_banned(self, ip: str) -> bool:
        raise NotImplementedError

    def ban(self, ip: str) -> bool:
        raise NotImplementedError

    def unban(self, ip: str) -> bool:
        raise NotImplementedError

    def banned_ips(self) -> List[str]:
        raise NotImplementedError

    def records(self) -> Dict[str, AbuseRecord]:
        raise NotImplementedError

    def prune(self, older_than: float) -> int:
        raise NotImplementedError

    def ping(self) -> bool:
        return True


class MemoryAttemptStore(AttemptStore):
    """
    Kho trong bộ nhớ, mọi thao tác được tuần tự hoá bằng 1 lock
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, AbuseRecord] = {}
        self._banned: Set[str] = set()

    def _on_change(self, attempts: bool, bans: bool) -> None:
        """Gọi bên trong lock sau mỗi lần thay đổi (lớp con dùng để ghi ra đĩa)."""

    def apply(self, ip, step):
        with self._lock:
            if ip in self._banned:
                return None

            outcome = step(self._records.get(ip))
            if outcome.ban:
                self._records.pop(ip, None)
                self._banned.add(ip)
                self._on_change(attempts=True, bans=True)
            elif outcome.record is None:
                if self._records.pop(ip, None) is not None:
                    self._on_change(attempts=True, bans=False)
            elif outcome.changed:
                self._records[ip] = outcome.record
                self._on_change(attempts=True, bans=False)
            return outcome

    def is_banned(self, ip):
        with self._lock:
            return ip in self._banned

    def ban(self, ip):
        with self._lock:
            if ip in self._banned:
                return False
            self._banned.add(ip)
            self._records.pop(ip, None)
            self._on_change(attempts=True, bans=True)
            return True

    def unban(self, ip):
        with self._lock:
            if ip not in self._banned:
                return False
            self._banned.discard(ip)
            self._on_change(attempts=False, bans=True)
            return True

    def banned_ips(self):
        with self._lock:
            return sorted(self._banned)

    def records(self):
        with self._lock:
            return dict(self._records)

    def prune(self, older_than):
        with self._lock:
            expired = [ip for ip, rec in self._records.items() if rec.expired_before(older_than)]
            for ip in expired:
                del self._records[ip]
            if expired:
                self._on_change(attempts=True, bans=False)
            return len(expired)


def _read_text(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return ""


def _write_atomic(path: str, content: str) -> None:
    """Ghi ra tệp tạm cùng thư mục rồi os.replace -> không bao giờ để lại tệp ghi dở."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


class FileAttemptStore(MemoryAttemptStore):
    """
    Kho trong bộ nhớ được lưu bền vào 2 tệp:
    - attempts_path: khối '### BEGIN: DOS Attempts ###'
    - banned_path: khối '### BEGIN: BANNED IPs ###' (giữ nguyên nội dung khác trong tệp, vd .htaccess)
    Chỉ an toàn khi 1 tiến trình ghi; nhiều worker -> dùng RedisAttemptStore.
    """
    def __init__(self, attempts_path: str, banned_path: str):
        super().__init__()
        self.attempts_path = attempts_path
        self.banned_path = banned_path
        self._log_lock = threading.Lock()
        self._last_log_ts = 0.0
        self._records = parse_attempts(_read_text(attempts_path))
        self._banned = parse_banned(_read_text(banned_path))
        system_logger.info(
            f"Đã nạp {len(self._records)} bản ghi DOS từ {attempts_path} và {len(self._banned)} IP bị BAN từ {banned_path}"
        )

    def _on_change(self, attempts, bans):
        """
        Ghi lại tệp sau khi trạng thái trong bộ nhớ đã đổi.
        Lỗi I/O (đĩa đầy, mất quyền ghi, ...) -> StoreUnavailable để bộ kiểm soát fail-open.
        """
        try:
            if attempts:
                _write_atomic(self.attempts_path, render_attempts(self._records, _read_text(self.attempts_path)))
            if bans:
                _write_atomic(self.banned_path, render_banned(self._banned, _read_text(self.banned_path)))
        except OSError as e:
            self._log_write_error(e)
            raise StoreUnavailable(f"Không ghi được tệp chống DOS: {e}") from e

    def _log_write_error(self, ex: OSError) -> None:
        now = time.time()
        with self._log_lock:
            should_log = now - self._last_log_ts >= _LOG_EVERY_SECONDS
            if should_log:
                self._last_log_ts = now
        if should_log:
            system_logger.error("AttemptStore file error (%s, %s): %s", self.attempts_path, self.banned_path, ex)
