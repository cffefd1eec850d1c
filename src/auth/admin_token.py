import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from security.engine import DefenseEngine


def get_defense_engine(request: Request) -> DefenseEngine:
    """
    Lấy bộ phòng thủ đã khởi tạo trong main.py (app.state.defense)
    """
    return request.app.state.defense


def required_admin_token(request: Request, x_admin_token: Optional[str] = Header(None)) -> str:
    """
    Xác thực API quản trị bảo mật bằng header `X-Admin-Token`
    - Chưa cấu hình SECURITY_ADMIN_TOKEN -> tắt hoàn toàn API quản trị (403)
    - Token sai/thiếu -> 401
    """
    expected = get_defense_engine(request).settings.admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"Message": "API quản trị bảo mật chưa được bật (thiếu SECURITY_ADMIN_TOKEN)"},
        )

    # So sánh thời gian hằng để không lộ token qua thời gian phản hồi
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"Message": "Token quản trị không hợp lệ"},
        )
    return x_admin_token
