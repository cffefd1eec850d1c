from typing import List

from fastapi import HTTPException, status

from log.system_log import system_logger
from security.engine import DefenseEngine
from security.errors import StoreUnavailable
from utils.get_ip_client import norm_ip


def _store_unavailable(ex: StoreUnavailable) -> HTTPException:
    # Kho lưu (Redis) lỗi: request thường vẫn fail-open, nhưng thao tác quản trị phải báo lỗi rõ ràng
    system_logger.warning(f"Thao tác quản trị thất bại do kho lưu không khả dụng: {ex}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"Message": "Kho lưu bộ đếm/danh sách BAN hiện không truy cập được"},
    )


def _valid_ip(ip: str) -> str:
    normalized = norm_ip(ip)
    if not normalized:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"Message": f"Địa chỉ IP không hợp lệ: {ip}"},
        )
    return normalized


class Security_Admin_Controller:
    """
    Controller xử lý các API quản trị bảo mật: danh sách BAN, bộ đếm DOS, quét/cách ly tệp tin
    """

    def ban_now(engine: DefenseEngine, ip: str):
        """
        BAN vĩnh viễn 1 IP (đồng thời xoá bộ đếm của IP đó)
        """
        ip = _valid_ip(ip)
        try:
            added = engine.abuse.ban(ip)
        except StoreUnavailable as ex:
            raise _store_unavailable(ex)

        system_logger.warning(f"Quản trị viên đã BAN IP: {ip}")
        return {"ip": ip, "status": "banned", "applied": added}

    def unban(engine: DefenseEngine, ip: str):
        """
        Gỡ BAN 1 IP. deleted = 1 nếu IP đang bị BAN, 0 nếu không có trong danh sách
        """
        ip = _valid_ip(ip)
        try:
            removed = engine.abuse.unban(ip)
        except StoreUnavailable as ex:
            raise _store_unavailable(ex)

        if removed:
            system_logger.info(f"Quản trị viên đã gỡ BAN IP: {ip}")
        return {"ip": ip, "deleted": int(removed), "status": "ok"}

    def unban_list(engine: DefenseEngine, ips: List[str]):
        """
        Gỡ BAN nhiều IP, bỏ qua IP không hợp lệ (ghi 'invalid_ip' trong details)
        """
        details = []
        done = 0
        for raw in ips:
            ip = norm_ip(raw)
            if not ip:
                details.append({"ip": raw, "deleted": 0, "error": "invalid_ip"})
                continue
            try:
                removed = engine.abuse.unban(ip)
            except StoreUnavailable as ex:
                raise _store_unavailable(ex)
            details.append({"ip": ip, "deleted": int(removed), "status": "ok"})
            done += int(removed)

        return {"done": done, "total": len(ips), "details": details}

    def get_current_bans(engine: DefenseEngine):
        try:
            banned = engine.store.banned_ips()
        except StoreUnavailable as ex:
            raise _store_unavailable(ex)
        return {"total": len(banned), "items": banned}

    def get_attempts(engine: DefenseEngine, limit: int):
        """
        Danh sách bộ đếm DOS, sắp theo số lần vi phạm rồi số request giảm dần
        """
        try:
            records = engine.store.records()
        except StoreUnavailable as ex:
            raise _store_unavailable(ex)

        items = sorted(
            records.items(),
            key=lambda kv: (kv[1].violation_count, kv[1].request_count),
            reverse=True,
        )[:limit]
        return [
            {
                "ip": ip,
                "window_start": rec.window_start,
                "request_count": rec.request_count,
                "violation_count": rec.violation_count,
                "last_violation_at": rec.last_violation_at,
            }
            for ip, rec in items
        ]

    def scan(engine: DefenseEngine, pattern: str):
        """
        Quét đệ quy theo pattern, trả danh sách tệp nghi nhiễm (không thay đổi tệp)
        """
        files = engine.scanner.scan_path(pattern)
        system_logger.info(f"Quét '{pattern}': phát hiện {len(files)} tệp tin nghi nhiễm")
        return {"pattern": pattern, "files": files, "total": len(files)}

    def quarantine(engine: DefenseEngine, pattern: str):
        """
        Quét và đổi tên tệp nghi nhiễm với hậu tố cách ly, không xoá dữ liệu
        """
        files = engine.scanner.quarantine(pattern)
        return {"pattern": pattern, "files": files, "total": len(files)}
