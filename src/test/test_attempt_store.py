from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from security.abuse import AbuseGuard
from security.attempt_store import (
    AbuseRecord,
    Decision,
    FileAttemptStore,
    MemoryAttemptStore,
    Transition,
    format_attempt,
    format_number,
    parse_attempts,
    parse_banned,
    render_attempts,
    render_banned,
)
from security.config import AbuseConfig
from security.errors import StoreUnavailable

RECORD = AbuseRecord(window_start=1000.25, request_count=3, violation_count=1, last_violation_at=900.0)


def _increment(record):
    """
    Bước giả lập: mỗi lần gọi +1 request_count (không quan tâm thời gian)
    """
    if record is None:
        record = AbuseRecord(window_start=0.0, request_count=0, violation_count=0, last_violation_at=0.0)
    return Transition(replace(record, request_count=record.request_count + 1), Decision.ALLOW)


def test_format_number():
    assert format_number(1000.0) == "1000"
    assert format_number(1000.25) == "1000.25"


def test_format_attempt_field_order():
    # windowStart:violationCount:requestCount:lastViolationAt
    assert format_attempt("1.2.3.4", RECORD) == "# 1.2.3.4 => 1000.25:1:3:900"


def test_render_then_parse_attempts():
    text = render_attempts({"1.2.3.4": RECORD, "::1": RECORD})
    assert text.startswith("### BEGIN: DOS Attempts ###")
    assert parse_attempts(text) == {"1.2.3.4": RECORD, "::1": RECORD}
    # Đọc lại văn bản do chính nó sinh ra cho cùng kết quả
    assert render_attempts(parse_attempts(text)) == text


def test_parse_skips_malformed_lines():
    text = "\n".join([
        "### BEGIN: DOS Attempts ###",
        "# 1.2.3.4 => 1000:0:2:1000",
        "# broken line",
        "# 5.6.7.8 => abc:0:1:1000",
        "### END: DOS Attempts ###",
    ])
    assert list(parse_attempts(text)) == ["1.2.3.4"]


def test_render_banned_preserves_surrounding_content():
    original = "RewriteEngine On\n### BEGIN: BANNED IPs ###\nOrder Allow,Deny\nDeny from 9.9.9.9\n### END: BANNED IPs ###\n# footer\n"
    text = render_banned(["1.1.1.1", "2.2.2.2"], original)

    assert text.startswith("RewriteEngine On\n")
    assert text.endswith("# footer\n")
    assert "Deny from 9.9.9.9" not in text
    assert parse_banned(text) == {"1.1.1.1", "2.2.2.2"}


def test_render_banned_appends_block_when_missing():
    text = render_banned(["1.1.1.1"], "RewriteEngine On")
    assert text.splitlines() == [
        "RewriteEngine On",
        "### BEGIN: BANNED IPs ###",
        "Order Allow,Deny",
        "Deny from 1.1.1.1",
        "### END: BANNED IPs ###",
    ]


def test_memory_store_apply_is_atomic():
    """
    200 luồng cùng tăng bộ đếm của 1 IP -> không mất lần tăng nào
    """
    store = MemoryAttemptStore()
    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(lambda _: store.apply("1.2.3.4", _increment), range(200)))
    assert store.records()["1.2.3.4"].request_count == 200


def test_banned_ip_skips_step():
    store = MemoryAttemptStore()
    store.apply("1.2.3.4", _increment)
    assert store.ban("1.2.3.4")
    assert not store.ban("1.2.3.4")

    calls = []
    assert store.apply("1.2.3.4", lambda r: calls.append(r)) is None
    assert calls == []
    # BAN xoá luôn bộ đếm
    assert "1.2.3.4" not in store.records()


def test_ban_transition_moves_ip_to_banned():
    store = MemoryAttemptStore()
    store.apply("1.2.3.4", _increment)
    store.apply("1.2.3.4", lambda r: Transition(None, Decision.BANNED, ban=True))
    assert store.banned_ips() == ["1.2.3.4"]
    assert store.records() == {}


def test_prune_removes_only_old_records():
    """
    Bản ghi bị dọn khi đầu cửa sổ HOẶC lần vi phạm cuối cũ hơn mốc
    """
    store = MemoryAttemptStore()
    store.apply("1.1.1.1", lambda r: Transition(replace(RECORD, window_start=100.0, last_violation_at=100.0), Decision.ALLOW))
    store.apply("2.2.2.2", lambda r: Transition(replace(RECORD, window_start=500.0, last_violation_at=300.0), Decision.ALLOW))
    store.apply("3.3.3.3", lambda r: Transition(replace(RECORD, window_start=500.0, last_violation_at=150.0), Decision.ALLOW))
    assert store.prune(200.0) == 2
    assert list(store.records()) == ["2.2.2.2"]


@pytest.fixture
def paths(tmp_path):
    return str(tmp_path / ".ddos"), str(tmp_path / ".htaccess")


def test_file_store_persists_and_reloads(paths):
    attempts, banned = paths
    store = FileAttemptStore(attempts, banned)
    store.apply("1.2.3.4", _increment)
    store.apply("1.2.3.4", _increment)
    store.ban("6.6.6.6")

    reloaded = FileAttemptStore(attempts, banned)
    assert reloaded.records()["1.2.3.4"].request_count == 2
    assert reloaded.is_banned("6.6.6.6")


def test_file_store_unban_rewrites_file(paths):
    attempts, banned = paths
    store = FileAttemptStore(attempts, banned)
    store.ban("6.6.6.6")
    store.ban("7.7.7.7")
    assert store.unban("6.6.6.6")
    assert not store.unban("6.6.6.6")

    with open(banned, encoding="utf-8") as f:
        content = f.read()
    assert "Deny from 6.6.6.6" not in content
    assert "Deny from 7.7.7.7" in content


def test_file_store_keeps_existing_htaccess_rules(paths):
    attempts, banned = paths
    with open(banned, "w", encoding="utf-8") as f:
        f.write("Options -Indexes\n")

    FileAttemptStore(attempts, banned).ban("6.6.6.6")

    with open(banned, encoding="utf-8") as f:
        content = f.read()
    assert content.startswith("Options -Indexes\n")
    assert parse_banned(content) == {"6.6.6.6"}


def test_file_store_write_error_fails_open(paths, tmp_path):
    """
    Không ghi được tệp (đường dẫn nằm dưới 1 tệp thường): kho ném StoreUnavailable,
    bộ kiểm soát vẫn cho request đi qua thay vì lỗi 500
    """
    attempts, banned = paths
    store = FileAttemptStore(attempts, banned)
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    store.attempts_path = str(blocker / ".ddos")

    guard = AbuseGuard(store, AbuseConfig())
    assert guard.check("198.51.100.1").allowed

    with pytest.raises(StoreUnavailable):
        store.apply("1.2.3.4", _increment)
