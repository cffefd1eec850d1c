import glob
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from log.system_log import system_logger
from security.config import ScannerConfig
from security.inspection import InspectionTarget, ThreatSignatureEngine, detect_mime_type


class ScanStatus(str, Enum):
    SAFE = "safe"
    UNSAFE = "unsafe"
    UNAVAILABLE = "unavailable"        # Không đọc được tệp: không phải "an toàn", cũng không phải "nguy hiểm"


@dataclass(frozen=True)
class ScanResult:
    path: str
    status: ScanStatus
    signature: Optional[str] = None
    whitelisted: bool = False


def recursive_glob(pattern: str) -> List[str]:
    """
    Glob đệ quy: áp dụng phần tên (basename) của pattern trong thư mục gốc và mọi thư mục con.
    Ví dụ './*.php' -> mọi tệp .php bên dưới '.'
    """
    root = os.path.dirname(pattern) or "."
    name = os.path.basename(pattern) or "*"
    found = glob.glob(os.path.join(root, "**", name), recursive=True)
    return sorted(p for p in found if os.path.isfile(p))


class FileScanner:
    """
    Quét tệp tin tìm mã độc (web shell, hàm nguy hiểm, payload mã hoá).
    """
    def __init__(self, engine: ThreatSignatureEngine, config: ScannerConfig):
        self.engine = engine
        self.config = config
        self._whitelist: Tuple[Path, ...] = tuple(
            Path(entry).resolve() for entry in config.whitelist if entry.strip()
        )

    def is_whitelisted(self, path: str) -> bool:
        """
        Tệp được bỏ qua nếu đường dẫn tuyệt đối trùng 1 mục whitelist hoặc nằm bên trong thư mục whitelist
        """
        if not self._whitelist:
            return False
        target = Path(path).resolve()
        return any(entry == target or entry in target.parents for entry in self._whitelist)

    def scan_file(self, path: str, mime_type: Optional[str] = None) -> ScanResult:
        """
        Quét 1 tệp tin:
        - Whitelist được kiểm tra trước tiên, tệp trong whitelist luôn SAFE
        - Tệp không tồn tại / không đọc được -> UNAVAILABLE (ghi log)
        - Khớp bất kỳ chữ ký nào -> UNSAFE
        """
        if not path:
            return ScanResult(path, ScanStatus.UNAVAILABLE)

        if self.is_whitelisted(path):
            return ScanResult(path, ScanStatus.SAFE, whitelisted=True)

        try:
            with open(path, "rb") as f:
                content = f.read(self.config.max_read_bytes)
        except OSError as e:
            system_logger.warning(f"Không thể đọc tệp tin để quét {path}: {e}")
            return ScanResult(path, ScanStatus.UNAVAILABLE)

        mime = mime_type or detect_mime_type(path, content)
        result = self.engine.inspect(InspectionTarget.file(content, mime))
        if result.safe:
            return ScanResult(path, ScanStatus.SAFE)

        system_logger.warning(f"Phát hiện tệp tin nghi nhiễm {path} (chữ ký: {result.signature})")
        return ScanResult(path, ScanStatus.UNSAFE, signature=result.signature)

    def is_rejected(self, result: ScanResult) -> bool:
        if result.status is ScanStatus.UNSAFE:
            return True
        return result.status is ScanStatus.UNAVAILABLE and self.config.fail_closed

    def scan_path(self, pattern: str) -> List[str]:
        """
        Quét đệ quy theo pattern, trả về danh sách tệp nghi nhiễm
        """
        if not pattern:
            return []

        infected = []
        for file in recursive_glob(pattern):
            if self.is_rejected(self.scan_file(file)):
                infected.append(file)
        return infected

    def quarantine(self, pattern: str) -> List[str]:
        """
        Quét và đổi tên các tệp nghi nhiễm thêm hậu tố (mặc định .bad), không xoá dữ liệu.
        Trả về danh sách đường dẫn mới.
        """
        moved = []
        for file in self.scan_path(pattern):
            new_path = file + self.config.quarantine_suffix
            try:
                os.rename(file, new_path)
            except OSError as e:
                system_logger.error(f"Không thể cách ly tệp tin {file}: {e}")
                continue
            system_logger.warning(f"Đã cách ly tệp tin nghi nhiễm: {file} -> {new_path}")
            moved.append(new_path)
        return moved

    def secure_upload(self, source: str, destination: str, mime_type: Optional[str] = None) -> ScanResult:
        """
        Quét tệp tải lên (tệp tạm) rồi mới chuyển tới thư mục đích.
        Chỉ chuyển khi kết quả SAFE; tệp không quét được (UNAVAILABLE) không bao giờ được chuyển.
        Thư mục đích không tồn tại -> FileNotFoundError.
        """
        dest_dir = os.path.dirname(destination) or "."
        if not os.path.isdir(dest_dir):
            raise FileNotFoundError(f"Thư mục đích không tồn tại: {dest_dir}")

        result = self.scan_file(source, mime_type)
        if result.status is ScanStatus.SAFE:
            shutil.move(source, destination)
        return result
