import math
from string import Template
from typing import Callable, Dict, Optional, Union

from starlette.responses import HTMLResponse, Response

"""
Các loại lỗi bảo mật và cách hiển thị chúng cho client.
Các hàm phát hiện (signature, abuse, csrf) chỉ trả về kết quả phân loại, không raise.
Chỉ middleware security_guard mới raise các lỗi này và quyết định dừng request.
"""


class SecurityError(Exception):
    """
    Lỗi gốc: mang theo status code, tiêu đề và nội dung hiển thị
    """
    status_code: int = 403
    title: str = "Error"
    message: str = "Permission denied!"

    def __init__(self, message: Optional[str] = None, reason: str = ""):
        self.message = message or self.message
        self.reason = reason                      # Lý do chi tiết (chỉ ghi log, không trả client)
        super().__init__(self.message)

    def headers(self) -> Dict[str, str]:
        return {}


class ThreatDetected(SecurityError):
    """Request khớp 1 chữ ký tấn công."""


class Banned(SecurityError):
    """IP nằm trong danh sách BAN vĩnh viễn."""


class SessionHijackDetected(SecurityError):
    """Session bị dùng lại trên trình duyệt/IP khác."""


class CSRFMismatch(SecurityError):
    """Token CSRF hoặc Referer không khớp: không chặn, chỉ bỏ payload."""


class ScanUnavailable(SecurityError):
    """Không đọc được tệp tin cần quét: upload bị từ chối với 503."""
    status_code = 503
    message = "Scan unavailable"


class RateLimited(SecurityError):
    """
    Client gửi quá nhiều request: phải chờ retry_after giây.
    Trả 429 kèm Retry-After và Refresh để trình duyệt tự tải lại khi hết hạn.
    """
    status_code = 429

    def __init__(self, retry_after: float, url: str = "", reason: str = ""):
        self.retry_after = max(0, int(math.ceil(retry_after)))
        self.url = url
        super().__init__(
            message=f"Permission Denied!<br>You must wait {self.retry_after} seconds...",
            reason=reason,
        )

    def headers(self) -> Dict[str, str]:
        out = {"Retry-After": str(self.retry_after)}
        if self.url:
            out["Refresh"] = f"{self.retry_after}; url={self.url}"
        return out


class StoreUnavailable(Exception):
    """Kho lưu bộ đếm (Redis/file) không truy cập được."""


# ===== Chiến lược hiển thị lỗi =====

class ErrorHandler:
    """
    Interface: nhận 1 SecurityError và trả về Response (đã có status code đúng).
    """
    def render(self, error: SecurityError) -> Response:
        raise NotImplementedError


class TemplateErrorHandler(ErrorHandler):
    """
    Hiển thị lỗi bằng template HTML, thay thế ${ERROR_TITLE} và ${ERROR_BODY}
    """
    def __init__(self, template: str):
        self.template = Template(template)

    def render(self, error: SecurityError) -> Response:
        body = self.template.safe_substitute(ERROR_TITLE=error.title, ERROR_BODY=error.message)
        return HTMLResponse(body, status_code=error.status_code, headers=error.headers())


class CallbackErrorHandler(ErrorHandler):
    """
    Cho phép ứng dụng tự hiển thị lỗi qua callback.
    Callback trả về chuỗi HTML hoặc Response; status code luôn được ép theo loại lỗi.
    """
    def __init__(self, callback: Callable[[SecurityError], Union[str, Response]]):
        self.callback = callback

    def render(self, error: SecurityError) -> Response:
        result = self.callback(error)
        if isinstance(result, Response):
            result.status_code = error.status_code
            for key, value in error.headers().items():
                result.headers[key] = value
            return result
        return HTMLResponse(str(result), status_code=error.status_code, headers=error.headers())
