from typing import Optional

from starlette.concurrency import run_in_threadpool
from starlette.datastructures import Headers
from starlette.formparsers import MultiPartException
from starlette.requests import Request

from log.security_log import log_security_event
from security.attempt_store import Decision
from security.csrf import CSRFStatus
from security.engine import DefenseEngine
from security.errors import (
    Banned, CSRFMismatch, RateLimited, SecurityError, SessionHijackDetected, ThreatDetected
)
from security.inspection import InspectionTarget
from security.session_binding import BindingStatus
from utils.get_ip_client import resolve_client_ip

"""
Middleware phòng thủ (ASGI thuần), chạy cho MỌI request HTTP theo thứ tự:
1) Kiểm soát lạm dụng: IP bị BAN -> 403, đang phải chờ -> 429 (Retry-After)
2) Method bị cấm (HEAD, TRACE, ...) + chữ ký tấn công trên URI, query, header, User-Agent -> 403
3) Nếu có session (SessionMiddleware phải đứng NGOÀI middleware này):
   - Ràng buộc session với UA + IP: khác -> huỷ session + 403
   - CSRF cho POST/PUT/PATCH/DELETE: sai hoặc body quá lớn -> bỏ body (request vẫn đi tiếp với body rỗng) + cấp token mới
   - Session chưa có token -> cấp token
Không dùng BaseHTTPMiddleware vì cần thay thế body của request trước khi tới handler.
"""


def _replay(body: bytes, receive):
    """
    receive() của ASGI chỉ đọc được 1 lần: trả lại body đã đọc ở lần gọi đầu,
    các lần sau chuyển cho receive gốc (vd handler chờ http.disconnect).
    """
    sent = False

    async def replay_receive():
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay_receive


async def _read_body(receive, limit: int) -> Optional[bytes]:
    """
    Đọc body vào bộ nhớ, tối đa limit byte.
    Vượt giới hạn -> ngừng đọc và trả về None, phần còn lại không được nạp.
    """
    chunks = []
    size = 0
    while True:
        message = await receive()
        if message["type"] != "http.request":
            break                                   # http.disconnect: client ngắt giữa chừng
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
        if not message.get("more_body", False):
            break
    return b"".join(chunks)


def _declared_length(headers: Headers) -> Optional[int]:
    try:
        return int(headers["content-length"])
    except (KeyError, ValueError):
        return None


def _without_body(scope):
    """Scope mới với Content-Length: 0 (dữ liệu gửi lên đã bị bỏ)."""
    headers = [
        (k, v) for k, v in scope["headers"]
        if k.lower() not in (b"content-length", b"transfer-encoding")
    ]
    headers.append((b"content-length", b"0"))
    return {**scope, "headers": headers}


class SecurityGuardMiddleware:
    def __init__(self, app, engine: DefenseEngine):
        self.app = app
        self.engine = engine
        self.guard = engine.settings.guard
        self.csrf_config = engine.settings.csrf

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            # WebSocket/lifespan: bỏ qua
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "/")
        if path in self.guard.exempt_paths:
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        peer = scope.get("client")[0] if scope.get("client") else None
        client_ip = resolve_client_ip(headers, peer, self.guard.ip_headers)
        scope.setdefault("state", {})["client_ip"] = client_ip       # Handler đọc qua request.state.client_ip

        try:
            await self._check_abuse(scope, client_ip)
            # Regex chạy trên chuỗi do client gửi: đưa vào threadpool để không chặn event loop
            await run_in_threadpool(self._check_request, scope, headers)
        except SecurityError as error:
            await self._reject(error, scope, receive, send, headers, client_ip)
            return

        session = scope.get("session")
        if session is None:
            await self.app(scope, receive, send)
            return

        user_agent = headers.get("user-agent", "")
        if self.engine.binder.check(session, user_agent, client_ip) is BindingStatus.HIJACKED:
            error = SessionHijackDetected(reason="Giá trị ràng buộc session không khớp UA/IP hiện tại")
            await self._reject(error, scope, receive, send, headers, client_ip)
            return

        if self.engine.csrf.is_protected(scope["method"]) and not path.startswith(self.guard.csrf_exempt_prefixes):
            scope, receive = await self._enforce_csrf(scope, receive, headers, session, client_ip)

        self.engine.csrf.ensure_token(session)
        await self.app(scope, receive, send)

    async def _check_abuse(self, scope, client_ip: str) -> None:
        # Kho lưu có thể là file/Redis (I/O chặn) -> chạy trong threadpool
        verdict = await run_in_threadpool(self.engine.abuse.check, client_ip)
        if verdict.decision is Decision.BANNED:
            raise Banned(reason="IP nằm trong danh sách BAN")
        if verdict.decision is Decision.WAIT:
            raise RateLimited(verdict.retry_after, url=self._current_url(scope),
                              reason="Vượt ngưỡng số request trong cửa sổ thời gian")

    def _check_request(self, scope, headers: Headers) -> None:
        method = scope["method"].upper()
        if method in self.guard.blocked_methods:
            raise ThreatDetected(reason=f"Method bị cấm: {method}")

        raw_path = scope.get("raw_path") or scope.get("path", "").encode("latin-1")
        targets = [
            InspectionTarget.uri(raw_path),
            InspectionTarget.query(scope.get("query_string", b"")),
        ]
        for name, value in scope["headers"]:
            if name.decode("latin-1").lower() in self.guard.inspected_headers:
                targets.append(InspectionTarget.header(value))

        if self.guard.block_bad_user_agents:
            ua = headers.get("user-agent", "")
            targets.append(InspectionTarget.user_agent(ua.encode("latin-1", errors="replace")))

        for target in targets:
            if not target.raw:
                continue
            if len(target.raw) > self.guard.max_inspect_bytes:
                raise ThreatDetected(reason=f"{target.kind.value}: {len(target.raw)} byte, vượt giới hạn kiểm tra")
            result = self.engine.signatures.inspect(target)
            if not result.safe:
                raise ThreatDetected(reason=f"{target.kind.value}: {result.signature} ({result.category.value})")

    async def _enforce_csrf(self, scope, receive, headers: Headers, session, client_ip: str):
        """
        Kiểm tra CSRF, trả về (scope, receive) mà handler sẽ nhận:
        - Có header X-CSRF-Token: không đọc body, hợp lệ thì body được stream nguyên vẹn
        - Không có: đọc body (tối đa max_csrf_body_bytes) để lấy input ẩn _FORMTOKEN
        - Sai token hoặc body quá lớn: handler nhận body rỗng
        """
        header_token = headers.get(self.csrf_config.header_name)
        if header_token:
            status = self._check_csrf(scope, headers, session, header_token)
            if status is CSRFStatus.VALID:
                return scope, receive
            return self._drop_body(status.value, scope, receive, headers, client_ip)

        limit = self.guard.max_csrf_body_bytes
        declared = _declared_length(headers)
        body = await _read_body(receive, limit) if declared is None or declared <= limit else None
        if body is None:
            status = self._check_csrf(scope, headers, session, None)   # Vẫn cấp token mới
            return self._drop_body(f"{status.value} (body > {limit} bytes)", scope, receive, headers, client_ip)

        status = self._check_csrf(scope, headers, session, await self._form_token(scope, headers, body))
        if status is not CSRFStatus.VALID:
            return self._drop_body(status.value, scope, receive, headers, client_ip)
        return scope, _replay(body, receive)

    def _drop_body(self, reason: str, scope, receive, headers: Headers, client_ip: str):
        self._log(CSRFMismatch(reason=reason), scope, headers, client_ip)
        return _without_body(scope), _replay(b"", receive)

    def _check_csrf(self, scope, headers: Headers, session, submitted: Optional[str]) -> CSRFStatus:
        return self.engine.csrf.validate(
            session,
            scope["method"],
            referer=headers.get("referer"),
            host=headers.get("host"),
            submitted=submitted,
        )

    async def _form_token(self, scope, headers: Headers, body: bytes) -> Optional[str]:
        """Đọc input ẩn _FORMTOKEN trong body form (urlencoded / multipart)."""
        content_type = headers.get("content-type", "")
        if not content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            return None

        async def _no_more():
            return {"type": "http.disconnect"}

        request = Request(dict(scope), receive=_replay(body, _no_more))
        try:
            form = await request.form()
        except MultiPartException:
            return None
        try:
            value = form.get(self.csrf_config.form_field)
        finally:
            await form.close()
        return value if isinstance(value, str) else None

    @staticmethod
    def _current_url(scope) -> str:
        query = scope.get("query_string", b"").decode("latin-1")
        return scope.get("path", "/") + (f"?{query}" if query else "")

    def _log(self, error: SecurityError, scope, headers: Headers, client_ip: str) -> None:
        log_security_event(
            verdict=type(error).__name__,
            reason=error.reason,
            ip=client_ip,
            method=scope["method"],
            path=scope.get("path", "/"),
            user_agent=headers.get("user-agent", ""),
            message=error.message,
        )

    async def _reject(self, error: SecurityError, scope, receive, send, headers: Headers, client_ip: str) -> None:
        self._log(error, scope, headers, client_ip)
        response = self.engine.error_handler.render(error)
        await response(scope, receive, send)
