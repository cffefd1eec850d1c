import os

import pytest

from security.config import ScannerConfig
from security.file_scanner import FileScanner, ScanStatus, recursive_glob
from security.inspection import ThreatSignatureEngine
from security.signatures import base64_needle, hex_needle

SHELL = "<?php shell_exec('id'); ?>"


@pytest.fixture
def tree(tmp_path):
    """
    Cây thư mục giả lập:
    www/index.php           (sạch)
    www/lib/evil.php        (gọi shell_exec)
    www/lib/encoded.txt     (shell_exec dạng base64)
    www/vendor/tool.php     (gọi shell_exec, nằm trong whitelist)
    """
    root = tmp_path / "www"
    (root / "lib").mkdir(parents=True)
    (root / "vendor").mkdir()
    (root / "index.php").write_text("<?php echo 'hello'; ?>")
    (root / "lib" / "evil.php").write_text(SHELL)
    (root / "lib" / "encoded.txt").write_text('$p = "%s";' % base64_needle("shell_exec"))
    (root / "vendor" / "tool.php").write_text(SHELL)
    return root


def _scanner(*whitelist, fail_closed=False):
    config = ScannerConfig(whitelist=tuple(str(w) for w in whitelist), fail_closed=fail_closed)
    return FileScanner(ThreatSignatureEngine(), config)


def test_scan_file_detects_shell(tree):
    result = _scanner().scan_file(str(tree / "lib" / "evil.php"))
    assert result.status is ScanStatus.UNSAFE
    assert result.signature == "shell_exec:call"


def test_scan_file_hex_encoded(tmp_path):
    path = tmp_path / "h.txt"
    path.write_text('$f = "%s";' % hex_needle("shell_exec"))
    assert _scanner().scan_file(str(path)).status is ScanStatus.UNSAFE


def test_clean_file_is_safe(tree):
    result = _scanner().scan_file(str(tree / "index.php"))
    assert result.status is ScanStatus.SAFE
    assert not result.whitelisted


def test_whitelisted_directory_is_always_safe(tree):
    """
    Tệp nằm trong thư mục whitelist luôn SAFE, bất kể nội dung
    """
    scanner = _scanner(tree / "vendor")
    result = scanner.scan_file(str(tree / "vendor" / "tool.php"))
    assert result.status is ScanStatus.SAFE
    assert result.whitelisted


def test_whitelisted_file_by_exact_path(tree):
    scanner = _scanner(tree / "lib" / "evil.php")
    assert scanner.scan_file(str(tree / "lib" / "evil.php")).whitelisted
    # Tệp khác cùng thư mục vẫn bị quét
    assert scanner.scan_file(str(tree / "lib" / "encoded.txt")).status is ScanStatus.UNSAFE


def test_whitelist_does_not_match_name_prefix(tree, tmp_path):
    """
    '/www/lib' không được coi là bao gồm '/www/library'
    """
    other = tmp_path / "www" / "library"
    other.mkdir()
    (other / "x.php").write_text(SHELL)
    scanner = _scanner(tree / "lib")
    assert scanner.scan_file(str(other / "x.php")).status is ScanStatus.UNSAFE


def test_missing_file_is_unavailable_not_safe(tmp_path):
    result = _scanner().scan_file(str(tmp_path / "nope.php"))
    assert result.status is ScanStatus.UNAVAILABLE


def test_unavailable_rejected_only_when_fail_closed(tmp_path):
    missing = _scanner().scan_file(str(tmp_path / "nope.php"))
    assert not _scanner().is_rejected(missing)
    assert _scanner(fail_closed=True).is_rejected(missing)


def test_recursive_glob(tree):
    found = recursive_glob(str(tree / "*.php"))
    names = sorted(os.path.basename(p) for p in found)
    assert names == ["evil.php", "index.php", "tool.php"]


def test_scan_path_lists_unsafe_files(tree):
    infected = _scanner(tree / "vendor").scan_path(str(tree / "*"))
    assert sorted(os.path.basename(p) for p in infected) == ["encoded.txt", "evil.php"]


def test_quarantine_renames_without_deleting(tree):
    moved = _scanner().quarantine(str(tree / "*.php"))

    assert sorted(os.path.basename(p) for p in moved) == ["evil.php.bad", "tool.php.bad"]
    assert not (tree / "lib" / "evil.php").exists()
    assert (tree / "lib" / "evil.php.bad").read_text() == SHELL
    # Tệp sạch giữ nguyên
    assert (tree / "index.php").exists()


def test_secure_upload_moves_only_safe_files(tmp_path):
    dest_dir = tmp_path / "uploads"
    dest_dir.mkdir()
    good = tmp_path / "good.txt"
    good.write_text("hello world")
    bad = tmp_path / "bad.txt"
    bad.write_text(SHELL)

    scanner = _scanner()
    assert scanner.secure_upload(str(good), str(dest_dir / "good.txt")).status is ScanStatus.SAFE
    assert (dest_dir / "good.txt").exists()

    assert scanner.secure_upload(str(bad), str(dest_dir / "bad.txt")).status is ScanStatus.UNSAFE
    assert not (dest_dir / "bad.txt").exists()
    assert bad.exists()


def test_secure_upload_missing_destination(tmp_path):
    src = tmp_path / "a.txt"
    src.write_text("x")
    with pytest.raises(FileNotFoundError):
        _scanner().secure_upload(str(src), str(tmp_path / "missing" / "a.txt"))
