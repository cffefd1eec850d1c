import hashlib
import hmac
import time
import uuid
from enum import Enum
from typing import MutableMapping, Optional
from urllib.parse import urlsplit

from starlette.requests import HTTPConnection

from security.config import CSRFConfig

"""
Bảo vệ CSRF cho các request thay đổi dữ liệu (POST/PUT/PATCH/DELETE).
Vòng đời token: NO_TOKEN -> ISSUED -> VALIDATED -> (cấp lại token mới)
- Referer phải có và cùng host với server
- Token gửi lên (input ẩn _FORMTOKEN hoặc header X-CSRF-Token) phải trùng token trong session
- Không hợp lệ: KHÔNG chặn request, chỉ bỏ dữ liệu gửi lên + cấp token mới
- Hợp lệ: đổi token ngay (token chỉ dùng 1 lần)
"""


class CSRFStatus(str, Enum):
    SKIPPED = "skipped"                        # Method không cần kiểm tra
    VALID = "valid"
    REFERER_MISMATCH = "referer_mismatch"
    TOKEN_MISMATCH = "token_mismatch"


def referer_matches_host(referer: Optional[str], host: Optional[str]) -> bool:
    """
    So host trong Referer với header Host của request (kèm port nếu có).
    """
    if not referer or not host:
        return False
    try:
        netloc = urlsplit(referer).netloc
    except ValueError:
        return False
    netloc = netloc.rsplit("@", 1)[-1]         # Bỏ phần user:pass@ nếu có
    return bool(netloc) and netloc.lower() == host.strip().lower()


class CSRFProtector:
    def __init__(self, config: CSRFConfig):
        self.config = config

    def session_id(self, session: MutableMapping) -> str:
        """Định danh session (tạo mới nếu chưa có), dùng làm nguyên liệu sinh token."""
        sid = session.get(self.config.session_id_key)
        if not sid:
            sid = uuid.uuid4().hex
            session[self.config.session_id_key] = sid
        return sid

    def issue(self, session: MutableMapping) -> str:
        """
        Sinh token mới = sha256(uuid ngẫu nhiên + thời gian hiện tại + ':' + session id) và lưu vào session
        """
        material = f"{uuid.uuid4().hex}{time.time()}:{self.session_id(session)}"
        token = hashlib.sha256(material.encode("utf-8")).hexdigest()
        session[self.config.session_key] = token
        return token

    def token(self, session: MutableMapping) -> Optional[str]:
        return session.get(self.config.session_key)

    def ensure_token(self, session: MutableMapping) -> str:
        """Session chưa có token -> cấp token (lần đầu tạo session)."""
        return self.token(session) or self.issue(session)

    def is_protected(self, method: str) -> bool:
        return method.upper() in self.config.protected_methods

    def validate(self, session: MutableMapping, method: str, referer: Optional[str],
                 host: Optional[str], submitted: Optional[str]) -> CSRFStatus:
        """
        Kiểm tra 1 request. Mọi kết quả khác SKIPPED đều làm token thay đổi:
        - VALID: token vừa dùng bị thay bằng token mới
        - *_MISMATCH: cấp token mới, bên gọi phải bỏ dữ liệu gửi lên
        """
        if not self.is_protected(method):
            return CSRFStatus.SKIPPED

        if not referer_matches_host(referer, host):
            self.issue(session)
            return CSRFStatus.REFERER_MISMATCH

        expected = self.token(session)
        if not expected or not submitted or not hmac.compare_digest(str(expected), str(submitted)):
            self.issue(session)
            return CSRFStatus.TOKEN_MISMATCH

        self.issue(session)
        return CSRFStatus.VALID


def get_csrf_token(request: HTTPConnection, session_key: str = CSRFConfig.session_key) -> Optional[str]:
    """
    Lấy token CSRF hiện tại để đưa vào form (input ẩn) hoặc trả cho client gửi qua header.
    Middleware security_guard luôn cấp sẵn token nên giá trị chỉ None khi không có session.
    """
    if "session" not in request.scope:
        return None
    return request.session.get(session_key)
