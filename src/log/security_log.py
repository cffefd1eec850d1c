import logging
import datetime as _dt
import os
import time
import threading
import shutil
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


# Đường dẫn thư mục lưu trữ log sự kiện bảo mật (mỗi request bị chặn/nghi vấn là 1 dòng)
SECURITY_LOG_DIRECTORY = os.getenv("SECURITY_LOG_DIRECTORY", "log/security_log")

Path(SECURITY_LOG_DIRECTORY).mkdir(parents=True, exist_ok=True)


class SecurityEventFilter(logging.Filter):
    def filter(self, record):
        # Các trường sẽ có trong log, nếu không có giá trị thì mặc định là "None"
        record.ip = getattr(record, "ip", "None")
        record.method = getattr(record, "method", "None")
        record.path = getattr(record, "path", "None")
        record.verdict = getattr(record, "verdict", "None")
        record.reason = getattr(record, "reason", "None")
        record.user_agent = getattr(record, "user_agent", "None")
        return True


def _today_str():
    # Định dạng thư mục theo ngày: DD-MM-YY
    return _dt.datetime.now().strftime("%d-%m-%y")


def _log_file_path(day_str=None):
    """
    Tạo thư mục <SECURITY_LOG_DIRECTORY>/<DD-MM-YY>/ nếu chưa có và trả về đường dẫn 'security_log.log'.
    Lỗi IO -> ghi vào thư mục fallback.
    """
    try:
        day = day_str or _today_str()
        log_dir = os.path.join(SECURITY_LOG_DIRECTORY, day)
        os.makedirs(log_dir, exist_ok=True)
        return os.path.join(log_dir, "security_log.log")

    except OSError:
        fb_dir = os.path.join(SECURITY_LOG_DIRECTORY, "fallback")
        os.makedirs(fb_dir, exist_ok=True)
        return os.path.join(fb_dir, "security_log.log")


def _remove_old_logs(logs_root=SECURITY_LOG_DIRECTORY, max_days=30):
    """
    Xoá thư mục ngày cũ hơn max_days, bỏ qua thư mục không đúng định dạng DD-MM-YY.
    """
    if not os.path.exists(logs_root):
        return

    now = _dt.datetime.now()
    for entry in os.listdir(logs_root):
        entry_path = os.path.join(logs_root, entry)
        if not os.path.isdir(entry_path):
            continue
        try:
            folder_date = _dt.datetime.strptime(entry, "%d-%m-%y")
        except ValueError:
            continue

        if (now - folder_date).days > max_days:
            shutil.rmtree(entry_path, ignore_errors=True)


# Formatter: mỗi sự kiện bảo mật gồm IP, method, path, kết luận và lý do
_formatter = logging.Formatter(
    "%(asctime)s - %(levelname)s - %(ip)s - %(method)s %(path)s - "
    "verdict: %(verdict)s - reason: %(reason)s - ua: %(user_agent)s - %(message)s",
    datefmt="%d-%m-%Y %H:%M:%S",
)

# Logger sự kiện bảo mật
security_logger = logging.getLogger("security_logger")
security_logger.setLevel(logging.INFO)
security_logger.propagate = False  # Không đẩy lên root

_file_handler_lock = threading.Lock()
_current_day = _today_str()
_file_handler = logging.FileHandler(_log_file_path(_current_day), encoding="utf-8")
_file_handler.addFilter(SecurityEventFilter())
_file_handler.setFormatter(_formatter)
security_logger.addHandler(_file_handler)


def log_security_event(verdict: str, reason: str, ip: str, method: str, path: str, user_agent: str, message: str = "") -> None:
    """
    Ghi 1 dòng sự kiện bảo mật (request bị chặn, payload bị bỏ, session bị huỷ ...)
    """
    security_logger.warning(
        message,
        extra={
            "ip": ip,
            "method": method,
            "path": path,
            "verdict": verdict,
            "reason": reason,
            "user_agent": user_agent or "-",
        },
    )


def _rotate_if_new_day():
    """
    Sang ngày mới: gỡ handler cũ, dọn rác thư mục cũ, tạo handler mới.
    Dùng lock để thay handler an toàn giữa các thread.
    """
    global _current_day, _file_handler
    day_now = _today_str()
    if day_now == _current_day:
        return

    with _file_handler_lock:
        # Kiểm tra lại trong lock để tránh race
        if day_now == _current_day:
            return

        security_logger.removeHandler(_file_handler)
        _file_handler.close()

        _remove_old_logs(max_days=30)

        _current_day = day_now
        new_handler = logging.FileHandler(_log_file_path(_current_day), encoding="utf-8")
        new_handler.addFilter(SecurityEventFilter())
        new_handler.setFormatter(_formatter)
        security_logger.addHandler(new_handler)
        _file_handler = new_handler


def _rotation_thread():
    """
    Thread nền: mỗi 1 tiếng kiểm tra xem có sang ngày mới chưa.
    """
    while True:
        try:
            _rotate_if_new_day()
        except Exception:
            logging.getLogger("system_logger").exception("Lỗi khi xoay tệp log bảo mật")

        time.sleep(3600)
