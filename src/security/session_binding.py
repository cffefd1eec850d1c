import hashlib
import hmac
from enum import Enum
from typing import MutableMapping


class BindingStatus(str, Enum):
    BOUND = "bound"                # Lần đầu ghi giá trị ràng buộc
    MATCHED = "matched"
    HIJACKED = "hijacked"          # Session bị dùng lại ở trình duyệt/IP khác -> đã xoá session


class SessionBinder:
    """
    Ràng buộc session với (User-Agent, IP client, secret của server).
    Giá trị ràng buộc không bao giờ được thay đổi trong suốt vòng đời session:
    khác đi dù chỉ 1 ký tự -> huỷ session, bên gọi trả 403.
    """
    def __init__(self, secret: str, session_key: str = "HTTP_USER_TOKEN"):
        self.secret = secret
        self.session_key = session_key

    def fingerprint(self, user_agent: str, client_ip: str) -> str:
        material = f"{user_agent or ''}:{client_ip}:{self.secret}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def check(self, session: MutableMapping, user_agent: str, client_ip: str) -> BindingStatus:
        expected = self.fingerprint(user_agent, client_ip)
        stored = session.get(self.session_key)

        if stored is None:
            session[self.session_key] = expected
            return BindingStatus.BOUND

        if not hmac.compare_digest(str(stored), expected):
            session.clear()
            return BindingStatus.HIJACKED

        return BindingStatus.MATCHED
