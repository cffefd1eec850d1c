import base64
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Pattern, Tuple

"""
Danh mục chữ ký (signature) dùng để phân loại request / tệp tin là nguy hiểm.
- Mỗi chữ ký gồm: tên, nhóm (category), regex đã biên dịch, và loại đối tượng áp dụng (targets).
- Thứ tự trong danh mục chính là thứ tự kiểm tra: chữ ký rẻ/cụ thể đặt trước.
- Danh mục được tạo 1 lần (build_default_signatures) và không thay đổi trong suốt tiến trình.
"""


class Category(str, Enum):
    MARKUP_INJECTION = "markup-injection"
    CONTROL_CHAR_INJECTION = "control-char-injection"
    SQL_OBFUSCATION = "sql-obfuscation"
    PATH_TRAVERSAL = "path-traversal"
    COMPOSITE_HEURISTIC = "composite-heuristic"
    ENCODED_PAYLOAD = "encoded-payload"
    DANGEROUS_FUNCTION = "dangerous-function"
    SHELL_LAUNCHER_FINGERPRINT = "shell-launcher-fingerprint"
    BAD_USER_AGENT = "bad-user-agent"


class TargetKind(str, Enum):
    URI = "uri"
    QUERY = "query"
    HEADER = "header"
    USER_AGENT = "user_agent"
    FILE = "file"


@dataclass(frozen=True)
class Signature:
    name: str
    category: Category
    pattern: Pattern[str]
    targets: FrozenSet[TargetKind]

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


class SignatureSet:
    """
    Tập chữ ký có thứ tự, bất biến. Đánh chỉ mục sẵn theo loại đối tượng để tra nhanh.
    """
    def __init__(self, signatures: Iterable[Signature]):
        self._signatures: Tuple[Signature, ...] = tuple(signatures)
        self._by_target: Dict[TargetKind, Tuple[Signature, ...]] = {
            kind: tuple(s for s in self._signatures if kind in s.targets)
            for kind in TargetKind
        }

    def __iter__(self):
        return iter(self._signatures)

    def __len__(self) -> int:
        return len(self._signatures)

    def for_target(self, kind: TargetKind) -> Tuple[Signature, ...]:
        return self._by_target[kind]

    def names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self._signatures)


# Các hàm nguy hiểm trong mã nguồn (chạy lệnh hệ thống, gửi signal, chạy mã, điều khiển server)
DANGEROUS_FUNCTIONS: Tuple[str, ...] = (
    "il_exec",
    "shell_exec",
    "syslog",
    "passthru",
    "show_source",
    "posix_kill",
    "proc_close",
    "proc_open",
    "proc_terminate",
    "inject_code",
    "apache_child_terminate",
)

# Ký tự "nhìn giống" thường dùng để né bộ lọc từ khoá (uni0n, se|ect, $elect ...)
_LOOKALIKES = {
    "a": "a@4",
    "e": "e3",
    "i": "i1!|",
    "l": "l1!|",
    "o": "o0",
    "s": "s$5",
}

# Ký tự rác chèn giữa các chữ cái của từ khoá (tối đa 16 ký tự không phải chữ/số, vd comment /*****/)
_JUNK = r"[^a-z0-9]{0,16}"

_REQUEST = frozenset({TargetKind.URI, TargetKind.QUERY})
_REQUEST_AND_HEADERS = frozenset({TargetKind.URI, TargetKind.QUERY, TargetKind.HEADER})
_QUERY_ONLY = frozenset({TargetKind.QUERY})
_QUERY_AND_FILE = frozenset({TargetKind.QUERY, TargetKind.FILE})
_REQUEST_AND_FILE = frozenset({TargetKind.URI, TargetKind.QUERY, TargetKind.FILE})
_FILE_ONLY = frozenset({TargetKind.FILE})
_USER_AGENT = frozenset({TargetKind.USER_AGENT})


def _compile(pattern: str, flags: int = re.IGNORECASE) -> Pattern[str]:
    return re.compile(pattern, flags)


def _interleaved(word: str) -> str:
    """
    Tạo regex cho từ khoá cho phép chèn ký tự rác giữa các chữ cái và thay chữ bằng ký tự giống.
    Ví dụ 'union' khớp với 'uNi()on', 'select' khớp với 'se|ect'.
    """
    letters = ["[" + re.escape(_LOOKALIKES.get(ch, ch)) + "]" for ch in word]
    return _JUNK.join(letters)


def _in_order(*parts: str) -> Pattern[str]:
    """
    Regex "parts[0] ... parts[1] ... parts[n]" (xuất hiện theo thứ tự, cách nhau bởi chuỗi bất kỳ).
    Chỉ cần lần xuất hiện ĐẦU TIÊN của mỗi phần (trừ phần cuối), nên mỗi phần được bọc trong
    nhóm atomic (?>...) và neo \\A: regex chạy tuyến tính, không quay lui khi gần khớp.
    Dạng A.*B thông thường tốn thời gian bậc 2 trên chuỗi dài kiểu '<s<s<s...' hoặc "''''...".
    """
    head = "".join(rf"(?>.*?{part})" for part in parts[:-1])
    return re.compile(rf"\A{head}.*?{parts[-1]}", re.IGNORECASE | re.DOTALL)


def _tag(word: str) -> Pattern[str]:
    """
    Thẻ HTML nguy hiểm, chịu được chuỗi rác giữa '<' và tên thẻ: (<|%3C) ... script ... (>|%3E)
    """
    return _in_order(r"(?:<|%3C)", re.escape(word), r"(?:>|%3E)")


def base64_needle(name: str) -> str:
    """Chuỗi base64 của tên hàm (bỏ ký tự '=' đệm ở cuối)."""
    return base64.b64encode(name.encode("ascii")).decode("ascii").rstrip("=")


def hex_needle(name: str) -> str:
    """Chuỗi escape dạng \\xNN của tên hàm, ví dụ 'ab' -> '\\x61\\x62'."""
    return "".join("\\x%02x" % b for b in name.encode("ascii"))


def _request_signatures() -> Tuple[Signature, ...]:
    sql_meta = r"(?:[;<>'\"()]|%0a|%0d|%00|%22|%27|%28|%29|%3b|%3c|%3e)"
    # Chỉ cần ranh giới ở đầu từ khoá ('offset' không tính là 'set'), phía sau có thể dính liền: 'drop_table', 'select1'
    sql_keywords = r"\b(?:union|select|insert|cast|set|declare|drop|update|md5|benchmark)"

    return (
        Signature("crlf", Category.CONTROL_CHAR_INJECTION,
                  _compile(r"%0a|%0d|\r|\n"), _REQUEST),
        Signature("path_traversal", Category.PATH_TRAVERSAL,
                  _compile(r"\.\./|\.\.\\|%2e%2e%2f|%2e%2e/|\.\.%2f|%2e%2e%5c|\.\.%5c"), _REQUEST),
        Signature("script_tag", Category.MARKUP_INJECTION, _tag("script"), _REQUEST_AND_HEADERS),
        Signature("embed_tag", Category.MARKUP_INJECTION, _tag("embed"), _REQUEST_AND_HEADERS),
        Signature("object_tag", Category.MARKUP_INJECTION, _tag("object"), _REQUEST_AND_HEADERS),
        Signature("iframe_tag", Category.MARKUP_INJECTION, _tag("iframe"), _REQUEST_AND_HEADERS),
        Signature("base64_call", Category.ENCODED_PAYLOAD,
                  _in_order(r"base64_(?:en|de)code", r"\(", r"\)"), _REQUEST_AND_FILE),
        Signature("union_select", Category.SQL_OBFUSCATION,
                  _in_order(_interleaved("union"), _interleaved("select")), _REQUEST),
        Signature("sql_meta_keyword", Category.COMPOSITE_HEURISTIC,
                  _in_order(sql_meta, sql_keywords), _QUERY_ONLY),
    )


def _user_agent_signatures() -> Tuple[Signature, ...]:
    tools = r"(?:libwww-perl|wget|python|nikto|curl|scan|java|winhttp|httrack|clshttp|archiver|loader|email|harvest|extract|grab|miner)"
    return (
        Signature("ua_crawler", Category.BAD_USER_AGENT,
                  _compile(r"spider|crawler|slurp|teoma|archive|track|snoopy|lwp|client|libwww"), _USER_AGENT),
        Signature("ua_tool", Category.BAD_USER_AGENT,
                  _compile(r"havij|libwww-perl|wget|python|nikto|curl|scan|java|winhttp|clshttp|loader"), _USER_AGENT),
        Signature("ua_encoded", Category.BAD_USER_AGENT,
                  _compile(r"%0a|%0d|%27|%3c|%3e|%00"), _USER_AGENT),
        Signature("ua_meta_tool", Category.BAD_USER_AGENT,
                  _in_order(r"(?:[;<>'\"()]|%0a|%0d|%22|%27|%28|%3c|%3e|%00)", tools), _USER_AGENT),
    )


def _encoded_payload_signatures() -> Tuple[Signature, ...]:
    return (
        Signature("hex_char", Category.ENCODED_PAYLOAD, _compile(r"\\x5f"), _QUERY_AND_FILE),
        Signature("escaped_path", Category.ENCODED_PAYLOAD,
                  _compile(r"(?:\\x[0-9a-f]{2}[a-z0-9.\-/]{1,4}){4,}"), _QUERY_AND_FILE),
        Signature("base64_long", Category.ENCODED_PAYLOAD,
                  _compile(r"['\"][A-Za-z0-9+/]{260,}={0,3}['\"]", 0), _QUERY_AND_FILE),
    )


def _fingerprint_signatures() -> Tuple[Signature, ...]:
    fingerprints = (
        ("eval_chr", r"chr\s*\(\s*101\s*\)\s*\.\s*chr\s*\(\s*118\s*\)\s*\.\s*chr\s*\(\s*97\s*\)\s*\.\s*chr\s*\(\s*108\s*\)"),
        ("align", r";\$\w+=@?\$\w+\("),
        ("b374k", r"'ev'\.'al'\.'\(\"\?>"),
        ("weevely3", r"\$\w=\$[a-zA-Z]\('',\$\w\);\$\w\(\);"),
        ("c99_launcher", r";\$\w+\(\$\w+(?:,\s?\$\w+)+\);"),
        ("download_remote_code", r"echo\s+file_get_contents\s*\(\s*base64_url_decode\s*\(\s*@*\$_(?:GET|POST|SERVER|COOKIE|REQUEST)"),
        ("globals_concat", r"\$GLOBALS\[\$GLOBALS\['[a-z0-9]{4,}'\]\[\d+\]\.\$GLOBALS\['[a-z0-9]{4,}'\]\[\d+\]\."),
        ("globals_assign", r"\$GLOBALS\['[a-z0-9]{5,}'\] = \$[a-z]+\d+\[\d+\]\.\$[a-z]+\d+\[\d+\]\.\$[a-z]+\d+\[\d+\]\.\$[a-z]+\d+\[\d+\]\."),
        ("php_inline_long", r"<\?php.{1000,}\?>"),
        ("clever_include", r"include\s*\(\s*[^\.]{1,256}\.(?:png|jpe?g|gif|bmp)"),
        ("basedir_bypass", r"curl_init\s*\(\s*[\"']file://"),
        ("basedir_bypass2", r"file:file:///"),
        ("double_var", r"\$\{\s*\$\{"),
        ("double_var2", r"\$\{\$[0-9a-z]+\}"),
        ("hex_var", r"\$\{\"\\x"),
        ("register_function", r"register_[a-z]+_function\s*\(\s*['\"]\s*(?:eval|assert|passthru|exec|include|system|shell_exec|`)"),
        ("safemode_bypass", r"\x00/\.\./|LD_PRELOAD"),
        ("ioncube_loader", r"IonCube_loader"),
    )
    return tuple(
        Signature(name, Category.SHELL_LAUNCHER_FINGERPRINT, _compile(pattern), _FILE_ONLY)
        for name, pattern in fingerprints
    )


def _function_signatures(functions: Iterable[str]) -> Tuple[Signature, ...]:
    """
    Mỗi hàm nguy hiểm sinh 3 chữ ký độc lập: gọi trực tiếp, dạng base64, dạng \\xNN
    """
    out = []
    for name in functions:
        out.append(Signature(f"{name}:call", Category.DANGEROUS_FUNCTION,
                             _compile(rf"(?<![\w$]){re.escape(name)}\s*\("), _FILE_ONLY))
        out.append(Signature(f"{name}:base64", Category.DANGEROUS_FUNCTION,
                             _compile(re.escape(base64_needle(name)), 0), _FILE_ONLY))
        out.append(Signature(f"{name}:hex", Category.DANGEROUS_FUNCTION,
                             _compile(re.escape(hex_needle(name))), _FILE_ONLY))
    return tuple(out)


def build_default_signatures(functions: Iterable[str] = DANGEROUS_FUNCTIONS) -> SignatureSet:
    """
    Tạo danh mục chữ ký mặc định (gọi 1 lần khi khởi động)
    """
    return SignatureSet(
        _request_signatures()
        + _user_agent_signatures()
        + _encoded_payload_signatures()
        + _fingerprint_signatures()
        + _function_signatures(functions)
    )
