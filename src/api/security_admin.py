from typing import List

from fastapi import APIRouter, Depends, Query

from auth.admin_token import get_defense_engine, required_admin_token
from controllers.security_admin_controller import Security_Admin_Controller
from schemas.schemas import Attempt_Display, IP_List_Request, IP_Request, Scan_Display, Scan_Request
from security.engine import DefenseEngine


router = APIRouter(
    prefix="/security/admin",
    tags=["Security Admin"],
    dependencies=[Depends(required_admin_token)],
)


@router.post("/ban_now", summary="BAN vĩnh viễn 1 IP", response_model=dict)
def ban_now(body: IP_Request, engine: DefenseEngine = Depends(get_defense_engine)):
    """
    Đưa 1 IP vào danh sách BAN:
    - **ip**: chuỗi IPv4/IPv6
    """
    return Security_Admin_Controller.ban_now(engine, ip=body.ip)

@router.post("/unban", summary="Gỡ BAN 1 IP", response_model=dict)
def unban(body: IP_Request, engine: DefenseEngine = Depends(get_defense_engine)):
    """
    Gỡ BAN 1 IP: deleted=1 nếu IP đang bị BAN, 0 nếu không
    """
    return Security_Admin_Controller.unban(engine, ip=body.ip)

@router.post("/unban_list", summary="Gỡ BAN nhiều IP", response_model=dict)
def unban_list(body: IP_List_Request, engine: DefenseEngine = Depends(get_defense_engine)):
    return Security_Admin_Controller.unban_list(engine, ips=body.ips)

@router.get("/current_bans", summary="Danh sách IP đang bị BAN", response_model=dict)
def get_current_bans(engine: DefenseEngine = Depends(get_defense_engine)):
    return Security_Admin_Controller.get_current_bans(engine)

@router.get("/attempts", summary="Bộ đếm DOS theo IP", response_model=List[Attempt_Display])
def get_attempts(limit: int = Query(100, ge=1, le=10000),
                 engine: DefenseEngine = Depends(get_defense_engine)):
    """
    Liệt kê bộ đếm của các IP đang được theo dõi, IP vi phạm nhiều nhất lên đầu
    """
    return Security_Admin_Controller.get_attempts(engine, limit=limit)

@router.post("/scan", summary="Quét mã độc theo đường dẫn", response_model=Scan_Display)
def scan(body: Scan_Request, engine: DefenseEngine = Depends(get_defense_engine)):
    """
    Quét đệ quy, ví dụ pattern `./uploads/*.php`. Chỉ liệt kê, không sửa tệp tin
    """
    return Security_Admin_Controller.scan(engine, pattern=body.pattern)

@router.post("/quarantine", summary="Cách ly tệp tin nghi nhiễm", response_model=Scan_Display)
def quarantine(body: Scan_Request, engine: DefenseEngine = Depends(get_defense_engine)):
    """
    Quét và đổi tên tệp nghi nhiễm thêm hậu tố (mặc định `.bad`)
    """
    return Security_Admin_Controller.quarantine(engine, pattern=body.pattern)
