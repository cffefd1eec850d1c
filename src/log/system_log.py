import logging
import shutil
import time
import os
from datetime import datetime
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


# Đường dẫn thư mục lưu trữ file log hệ thống
SYSTEM_LOG_DIRECTORY = os.getenv("SYSTEM_LOG_DIRECTORY", "log/system_log")

Path(SYSTEM_LOG_DIRECTORY).mkdir(parents=True, exist_ok=True)

# Số ngày giữ lại thư mục log
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", 30))


def _remove_old_logs(logs_root=SYSTEM_LOG_DIRECTORY, max_days=LOG_RETENTION_DAYS):
    """
    Xoá các thư mục log cũ hơn max_days ngày.
    """
    try:
        if not os.path.exists(logs_root):
            return

        now = datetime.now()
        # Duyệt các thư mục log theo ngày
        for entry in os.listdir(logs_root):
            entry_path = os.path.join(logs_root, entry)
            if not os.path.isdir(entry_path):
                continue
            try:
                folder_date = datetime.strptime(entry, "%d-%m-%y")  # Tên thư mục theo định dạng ngày (DD-MM-YY)
            except ValueError:
                # Không phải thư mục ngày -> bỏ qua
                continue

            if (now - folder_date).days > max_days:
                shutil.rmtree(entry_path)
                system_logger.info(f"Đã xóa thư mục chứa log hệ thống: {entry_path}")
    except OSError as e:
        system_logger.error(f"Gặp lỗi trong quá trình xóa thư mục chứa log hệ thống: {e}")


# Formatter: Định dạng log với đầy đủ các thông tin
_formatter = logging.Formatter(
    '%(asctime)s %(levelname)s:\t %(filename)s - Line: %(lineno)d message: %(message)s',
    datefmt='%d/%m/%Y %H:%M:%S %p'
)


def _log_file_path(day_str=None):
    """Tạo đường dẫn tệp log theo ngày: <SYSTEM_LOG_DIRECTORY>/<DD-MM-YY>/system_log.log"""
    day_str = day_str or datetime.now().strftime("%d-%m-%y")
    log_dir = os.path.join(SYSTEM_LOG_DIRECTORY, day_str)
    os.makedirs(log_dir, exist_ok=True)
    return os.path.join(log_dir, "system_log.log")


# Logger hệ thống (dùng thread để tự tạo tệp cho ngày mới)
system_logger = logging.getLogger("system_logger")
system_logger.setLevel(logging.INFO)

_current_day = datetime.now().strftime("%d-%m-%y")
_file_handler = logging.FileHandler(_log_file_path(_current_day), encoding="utf-8")
_file_handler.setFormatter(_formatter)
system_logger.addHandler(_file_handler)


def _rotate_if_new_day():
    """
    Sang ngày mới: tháo handler cũ, dọn thư mục log quá hạn, gắn handler cho ngày mới
    """
    global _current_day, _file_handler
    day_now = datetime.now().strftime("%d-%m-%y")
    if day_now == _current_day:
        return

    _current_day = day_now
    _remove_old_logs()

    system_logger.removeHandler(_file_handler)
    _file_handler.close()

    new_handler = logging.FileHandler(_log_file_path(_current_day), encoding="utf-8")
    new_handler.setFormatter(_formatter)
    system_logger.addHandler(new_handler)
    _file_handler = new_handler


def _rotation_thread():
    """Thread nền kiểm tra ngày mới (mỗi 1 tiếng)."""
    while True:
        try:
            _rotate_if_new_day()
        except Exception:
            # Thread xoay log không được chết vì exception
            system_logger.exception("Lỗi khi xoay tệp log hệ thống")
        time.sleep(3600)
