import mimetypes
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import unquote, unquote_plus

from security.signatures import Category, Signature, SignatureSet, TargetKind, build_default_signatures

"""
Bộ máy phân loại theo chữ ký (Threat Signature Engine).
- inspect(target) -> SAFE / UNSAFE, không có điểm số: chỉ cần 1 chữ ký khớp là UNSAFE.
- Với thành phần request: kiểm tra cả dạng thô (raw) và dạng đã giải mã URL (decoded).
- Với tệp tin: kiểm tra dạng thô và dạng đã tiền xử lý (bỏ thẻ mở/đóng mã nguồn, bỏ comment).
"""


class Verdict(str, Enum):
    SAFE = "safe"
    UNSAFE = "unsafe"


@dataclass(frozen=True)
class InspectionResult:
    verdict: Verdict
    signature: Optional[str] = None
    category: Optional[Category] = None

    @property
    def safe(self) -> bool:
        return self.verdict is Verdict.SAFE


SAFE = InspectionResult(Verdict.SAFE)

# Tiền xử lý mã nguồn trong tệp tin
_CODE_SECTION = re.compile(r"<\?php(.*?)\?>", re.IGNORECASE | re.DOTALL)       # Chỉ giữ phần code bên trong <?php ... ?>
_OPEN_MARKER = re.compile(r"<\?php", re.IGNORECASE)                             # Thẻ mở không có thẻ đóng
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"(?<![:\\])//[^\n]*|#[^\n]*")
_STRING_CONCAT = re.compile(r"(['\"])\s*\.\s*(['\"])")                           # Bỏ "ev"."al" -> "eval"

# MIME không bắt đầu bằng text/ nhưng vẫn là mã nguồn dạng chữ
_TEXT_LIKE_MIME = {
    "application/x-httpd-php",
    "application/x-php",
    "application/php",
    "application/javascript",
    "application/x-javascript",
    "application/json",
    "application/xml",
    "application/x-sh",
    "application/x-perl",
    "application/x-python",
}


def preprocess_source(text: str) -> str:
    """
    Chuẩn hoá mã nguồn trước khi dò hàm nguy hiểm:
    - Bỏ thẻ <?php ... ?> (giữ code bên trong) để code inline và code theo khối như nhau
    - Bỏ comment /* */, // và #
    - Nối các chuỗi bị tách bằng dấu chấm
    """
    text = _CODE_SECTION.sub(r"\1", text)
    text = _OPEN_MARKER.sub("", text)
    text = _BLOCK_COMMENT.sub("", text)
    text = _LINE_COMMENT.sub("", text)
    text = _STRING_CONCAT.sub("", text)
    return text


def is_text_like(mime_type: Optional[str]) -> bool:
    if not mime_type:
        return False
    mime_type = mime_type.split(";")[0].strip().lower()
    return mime_type.startswith("text/") or mime_type in _TEXT_LIKE_MIME


def detect_mime_type(path: str, head: bytes) -> str:
    """
    Đoán Content-Type theo phần mở rộng; nếu không đoán được thì dò nội dung:
    không chứa byte NUL trong đoạn đầu -> coi như text/plain
    """
    content_type, _ = mimetypes.guess_type(path)
    if content_type is not None and is_text_like(content_type):
        return content_type
    if b"\x00" in head[:1024]:
        return content_type or "application/octet-stream"
    return "text/plain"


@dataclass(frozen=True)
class InspectionTarget:
    """
    Đối tượng cần kiểm tra: 1 thành phần request (URI, query, header) hoặc nội dung tệp tin.
    - raw: bytes nguyên bản
    - decoded: dạng đã giải mã URL (request) hoặc đã tiền xử lý (tệp tin)
    """
    kind: TargetKind
    raw: bytes
    decoded: str
    mime_type: Optional[str] = None

    @property
    def raw_text(self) -> str:
        # latin-1 giữ nguyên từng byte, không bao giờ lỗi giải mã
        return self.raw.decode("latin-1")

    @classmethod
    def uri(cls, raw_path: bytes) -> "InspectionTarget":
        text = raw_path.decode("latin-1")
        return cls(TargetKind.URI, raw_path, unquote(text, encoding="latin-1"))

    @classmethod
    def query(cls, raw_query: bytes) -> "InspectionTarget":
        text = raw_query.decode("latin-1")
        return cls(TargetKind.QUERY, raw_query, unquote_plus(text, encoding="latin-1"))

    @classmethod
    def header(cls, value: bytes) -> "InspectionTarget":
        text = value.decode("latin-1")
        return cls(TargetKind.HEADER, value, unquote(text, encoding="latin-1"))

    @classmethod
    def user_agent(cls, value: bytes) -> "InspectionTarget":
        return cls(TargetKind.USER_AGENT, value, value.decode("latin-1"))

    @classmethod
    def file(cls, content: bytes, mime_type: Optional[str]) -> "InspectionTarget":
        return cls(TargetKind.FILE, content, preprocess_source(content.decode("latin-1")), mime_type)


class ThreatSignatureEngine:
    """
    Áp dụng SignatureSet lên InspectionTarget. Không lưu trạng thái -> dùng chung cho mọi request.
    """
    def __init__(self, signatures: Optional[SignatureSet] = None):
        self.signatures = signatures if signatures is not None else build_default_signatures()

    def _applicable(self, target: InspectionTarget, signature: Signature) -> bool:
        # Danh sách hàm nguy hiểm chỉ áp dụng cho tệp dạng chữ
        if signature.category is Category.DANGEROUS_FUNCTION:
            return is_text_like(target.mime_type)
        return True

    def _views(self, target: InspectionTarget, signature: Signature):
        if signature.category is Category.DANGEROUS_FUNCTION:
            # Dò hàm trên mã đã chuẩn hoá (không còn comment, chuỗi đã nối)
            return (target.decoded,)
        raw = target.raw_text
        if raw == target.decoded:
            return (raw,)
        return (raw, target.decoded)

    def inspect(self, target: InspectionTarget) -> InspectionResult:
        for signature in self.signatures.for_target(target.kind):
            if not self._applicable(target, signature):
                continue
            for text in self._views(target, signature):
                if signature.matches(text):
                    return InspectionResult(Verdict.UNSAFE, signature.name, signature.category)
        return SAFE
