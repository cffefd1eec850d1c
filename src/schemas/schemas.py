from ipaddress import ip_address
from typing import List, Optional

from pydantic import BaseModel, field_validator

"""
Định nghĩa lược đồ dữ liệu vào/ra của các API quản trị bảo mật và tải tệp tin
"""


class IP_Request(BaseModel):
    """
    Thông tin 1 địa chỉ IP cần BAN / gỡ BAN
    - **ip**: IPv4 hoặc IPv6
    """
    ip: str

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, value: str) -> str:
        # Sai định dạng -> ValueError -> FastAPI trả 422
        return str(ip_address(value.strip()))


class IP_List_Request(BaseModel):
    ips: List[str]


class Scan_Request(BaseModel):
    """
    - **pattern**: đường dẫn dạng glob, ví dụ `./uploads/*.php` (quét đệ quy mọi thư mục con)
    """
    pattern: str


class Attempt_Display(BaseModel):
    """
    Bộ đếm chống DOS của 1 IP
    """
    ip: str
    window_start: float
    request_count: int
    violation_count: int
    last_violation_at: float


class Scan_Display(BaseModel):
    pattern: str
    files: List[str]
    total: int


class Upload_Display(BaseModel):
    """
    Kết quả tải tệp tin lên
    - **status**: safe | unsafe | exists (không quét được tệp -> 503)
    - **signature**: tên chữ ký khớp (nếu tệp nghi nhiễm)
    """
    File_Name: str
    status: str
    stored: bool
    signature: Optional[str] = None
    Message: str

