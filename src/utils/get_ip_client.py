from ipaddress import ip_address
from typing import Mapping, Optional, Sequence

UNKNOWN_IP = "0.0.0.0"


def norm_ip(ip_raw: Optional[str]) -> Optional[str]:
    """
    Chuẩn hoá chuỗi IP về dạng hợp lệ; nếu lỗi, trả None
    - '::1' (localhost IPv6) -> '127.0.0.1'
    - IPv4 nằm trong IPv6 (::ffff:1.2.3.4) -> '1.2.3.4'
    """
    # Kiểm tra giá trị truyền vào tồn tại hay không và có phải là chuỗi string hay không
    if not ip_raw or not isinstance(ip_raw, str):
        return None

    candidate = ip_raw.strip().strip('"')
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1:candidate.index("]")]           # [2001:db8::1]:443 -> 2001:db8::1
    elif candidate.count(":") == 1:
        candidate = candidate.split(":", 1)[0]                  # 1.2.3.4:5678 -> 1.2.3.4

    try:
        parsed = ip_address(candidate)  # Parse IPv4/IPv6; sai sẽ ném ValueError
    except ValueError:
        return None

    if parsed.version == 6 and parsed.ipv4_mapped is not None:
        parsed = parsed.ipv4_mapped
    if parsed.is_loopback and parsed.version == 6:
        return "127.0.0.1"
    return str(parsed)


def _first_value(header_name: str, value: str) -> str:
    """
    Header có thể chứa chuỗi proxy: lấy phần tử đầu (client gốc).
    - X-Forwarded-For: "client, proxy1, proxy2"
    - Forwarded: 'for=192.0.2.60;proto=http;by=203.0.113.43'
    """
    first = value.split(",")[0].strip()
    if header_name == "forwarded":
        for part in first.split(";"):
            key, _, val = part.strip().partition("=")
            if key.strip().lower() == "for":
                return val
    return first


def resolve_client_ip(headers: Mapping[str, str], peer: Optional[str], header_order: Sequence[str]) -> str:
    """
    Lấy địa chỉ IP client theo thứ tự ưu tiên header (proxy/CDN), cuối cùng là IP socket.
    - headers: map tên header (chữ thường) -> giá trị
    - Không có giá trị hợp lệ nào -> '0.0.0.0'
    Lưu ý: chỉ tin các header này khi ứng dụng đứng sau reverse-proxy đáng tin cậy.
    """
    for name in header_order:
        value = headers.get(name)
        if not value:
            continue
        ip = norm_ip(_first_value(name, value))
        if ip:
            return ip

    return norm_ip(peer) or UNKNOWN_IP
