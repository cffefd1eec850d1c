from dataclasses import dataclass
from typing import Callable, Optional
import time

from log.system_log import system_logger
from security.abuse import AbuseGuard
from security.attempt_store import AttemptStore, FileAttemptStore, MemoryAttemptStore
from security.config import Settings
from security.csrf import CSRFProtector
from security.errors import ErrorHandler, TemplateErrorHandler
from security.file_scanner import FileScanner
from security.inspection import ThreatSignatureEngine
from security.session_binding import SessionBinder


@dataclass
class DefenseEngine:
    """
    Gom các thành phần phòng thủ đã được cấu hình, tạo 1 lần khi khởi động ứng dụng
    và dùng chung cho middleware + các API quản trị.
    """
    settings: Settings
    store: AttemptStore
    abuse: AbuseGuard
    signatures: ThreatSignatureEngine
    scanner: FileScanner
    csrf: CSRFProtector
    binder: SessionBinder
    error_handler: ErrorHandler


def build_store(settings: Settings) -> AttemptStore:
    """
    Chọn kho lưu theo settings.abuse_store: memory | file | redis
    """
    kind = settings.abuse_store
    if kind == "memory":
        return MemoryAttemptStore()
    if kind == "file":
        return FileAttemptStore(settings.attempts_file, settings.banned_file)
    if kind == "redis":
        # Chỉ import redis khi thực sự dùng
        from security.redis_store import RedisAttemptStore, get_redis
        return RedisAttemptStore(get_redis(settings.redis_url), settings.abuse.time_expire)
    raise ValueError(f"ABUSE_STORE không hợp lệ: {kind!r} (memory | file | redis)")


def build_engine(settings: Settings,
                 store: Optional[AttemptStore] = None,
                 error_handler: Optional[ErrorHandler] = None,
                 clock: Callable[[], float] = time.time) -> DefenseEngine:
    store = store or build_store(settings)
    signatures = ThreatSignatureEngine()
    engine = DefenseEngine(
        settings=settings,
        store=store,
        abuse=AbuseGuard(store, settings.abuse, clock=clock),
        signatures=signatures,
        scanner=FileScanner(signatures, settings.scanner),
        csrf=CSRFProtector(settings.csrf),
        binder=SessionBinder(settings.secret, settings.guard.binding_session_key),
        error_handler=error_handler or TemplateErrorHandler(settings.guard.error_template),
    )
    system_logger.info(
        f"Khởi tạo bộ phòng thủ: store={type(store).__name__}, {len(signatures.signatures)} chữ ký"
    )
    return engine
