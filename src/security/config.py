import os
from dataclasses import dataclass, field  # # Dùng dataclass (frozen) cho cấu hình bất biến
from typing import Tuple
from dotenv import load_dotenv

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


@dataclass(frozen=True)
class AbuseConfig:
    """
    Gom các hằng số chống DOS vào 1 struct:
    - time_safe: khoảng cách tối thiểu (giây) giữa 2 lần đếm, các request dồn dập hơn (css/js) không bị đếm
    - time_window: cửa sổ đếm (giây), quá cửa sổ thì bộ đếm quay về 0
    - time_wait: thời gian (giây) client phải chờ khi vượt ngưỡng
    - time_expire: thời gian (giây) không hoạt động thì bản ghi bị dọn
    - request_limit: số request tối đa trong cửa sổ
    - ban_after_violations: số lần vi phạm trước khi BAN vĩnh viễn
    - prune_interval: tối đa 1 lần dọn rác mỗi prune_interval giây
    """
    time_safe: float = 1.5
    time_window: float = 3.0
    time_wait: float = 10.0
    time_expire: float = 3600.0
    request_limit: int = 10
    ban_after_violations: int = 2
    prune_interval: float = 60.0


@dataclass(frozen=True)
class ScannerConfig:
    """
    Cấu hình quét tệp tin:
    - whitelist: đường dẫn tệp/thư mục được bỏ qua khi quét
    - quarantine_suffix: hậu tố đổi tên cho tệp nghi nhiễm (không xoá)
    - fail_closed: True -> tệp không đọc được bị coi như nguy hiểm
    - max_read_bytes: giới hạn số byte đọc cho mỗi tệp
    """
    whitelist: Tuple[str, ...] = ()
    quarantine_suffix: str = ".bad"
    fail_closed: bool = False
    max_read_bytes: int = 16 * 1024 * 1024


@dataclass(frozen=True)
class CSRFConfig:
    session_key: str = "_CSRFTOKEN"                     # Khoá lưu token trong session
    form_field: str = "_FORMTOKEN"                      # Tên input ẩn trong form
    header_name: str = "x-csrf-token"                   # Header thay thế cho API gửi JSON
    session_id_key: str = "_SESSID"                     # Khoá lưu định danh session
    protected_methods: Tuple[str, ...] = ("POST", "PUT", "PATCH", "DELETE")


@dataclass(frozen=True)
class GuardConfig:
    """
    Cấu hình cho middleware phòng thủ (pipeline abuse -> signature -> csrf/session)
    """
    blocked_methods: Tuple[str, ...] = ("HEAD", "TRACE", "TRACK", "DEBUG", "OPTIONS")
    inspected_headers: Tuple[str, ...] = ("referer", "cookie")
    block_bad_user_agents: bool = True
    ip_headers: Tuple[str, ...] = (
        "cf-connecting-ip",
        "client-ip",
        "x-forwarded-for",
        "x-forwarded",
        "x-cluster-client-ip",
        "forwarded-for",
        "forwarded",
    )
    exempt_paths: Tuple[str, ...] = ("/healthz", "/readyz")
    csrf_exempt_prefixes: Tuple[str, ...] = ("/security/admin/",)   # API xác thực bằng header token, không dùng form
    binding_session_key: str = "HTTP_USER_TOKEN"
    max_inspect_bytes: int = 32 * 1024                  # URI/query/header dài hơn -> chặn luôn, không chạy regex
    max_csrf_body_bytes: int = 2 * 1024 * 1024          # Body lớn hơn (khi không có header token) -> coi như sai CSRF
    error_template: str = "<html><head><title>${ERROR_TITLE}</title></head><body>${ERROR_BODY}</body></html>"


@dataclass(frozen=True)
class Settings:
    """
    Cấu hình tổng, được tạo 1 lần khi khởi động và truyền vào từng thành phần
    """
    secret: str = "_SALT"                               # Secret dùng cho ràng buộc session
    session_secret: str = "change-me"                   # Khoá ký cookie session (SessionMiddleware)
    abuse_store: str = "memory"                          # memory | file | redis
    redis_url: str = "redis://localhost:6379/0"
    attempts_file: str = ".ddos"
    banned_file: str = ".htaccess"
    admin_token: str = ""
    abuse: AbuseConfig = field(default_factory=AbuseConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    csrf: CSRFConfig = field(default_factory=CSRFConfig)
    guard: GuardConfig = field(default_factory=GuardConfig)


def _split_env(name: str) -> Tuple[str, ...]:
    """Đọc biến môi trường dạng 'a,b,c' thành tuple, bỏ phần tử rỗng."""
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """
    Tạo Settings từ biến môi trường (.env).
    Các biến không khai báo sẽ dùng giá trị mặc định ở trên.
    """
    abuse = AbuseConfig(
        time_safe=float(os.getenv("DOS_TIME_SAFE", AbuseConfig.time_safe)),
        time_window=float(os.getenv("DOS_TIME_WINDOW", AbuseConfig.time_window)),
        time_wait=float(os.getenv("DOS_TIME_WAIT", AbuseConfig.time_wait)),
        time_expire=float(os.getenv("DOS_TIME_EXPIRE", AbuseConfig.time_expire)),
        request_limit=int(os.getenv("DOS_REQUEST_LIMIT", AbuseConfig.request_limit)),
        ban_after_violations=int(os.getenv("DOS_BAN_AFTER", AbuseConfig.ban_after_violations)),
    )

    scanner = ScannerConfig(
        whitelist=_split_env("SCANNER_WHITELIST"),
        quarantine_suffix=os.getenv("SCANNER_QUARANTINE_SUFFIX", ScannerConfig.quarantine_suffix),
        fail_closed=_bool_env("SCANNER_FAIL_CLOSED", False),
    )

    guard = GuardConfig(
        block_bad_user_agents=_bool_env("BLOCK_BAD_USER_AGENTS", True),
        max_inspect_bytes=int(os.getenv("GUARD_MAX_INSPECT_BYTES", GuardConfig.max_inspect_bytes)),
        max_csrf_body_bytes=int(os.getenv("GUARD_MAX_CSRF_BODY_BYTES", GuardConfig.max_csrf_body_bytes)),
    )

    return Settings(
        secret=os.getenv("SECURITY_SECRET", Settings.secret),
        session_secret=os.getenv("SESSION_SECRET", Settings.session_secret),
        abuse_store=os.getenv("ABUSE_STORE", Settings.abuse_store).lower(),
        redis_url=os.getenv("REDIS_URL", Settings.redis_url),
        attempts_file=os.getenv("DOS_ATTEMPTS_FILE", Settings.attempts_file),
        banned_file=os.getenv("BANNED_IPS_FILE", Settings.banned_file),
        admin_token=os.getenv("SECURITY_ADMIN_TOKEN", ""),
        abuse=abuse,
        scanner=scanner,
        guard=guard,
    )
