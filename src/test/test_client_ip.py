import pytest

from security.config import GuardConfig
from utils.get_ip_client import UNKNOWN_IP, norm_ip, resolve_client_ip

ORDER = GuardConfig().ip_headers


@pytest.mark.parametrize("raw, expected", [
    ("203.0.113.7", "203.0.113.7"),
    (" 203.0.113.7 ", "203.0.113.7"),
    ("203.0.113.7:51234", "203.0.113.7"),
    ("::1", "127.0.0.1"),
    ("::ffff:192.0.2.1", "192.0.2.1"),
    ("[2001:db8::1]:443", "2001:db8::1"),
    ("2001:DB8::1", "2001:db8::1"),
    ("unknown", None),
    ("", None),
    (None, None),
])
def test_norm_ip(raw, expected):
    assert norm_ip(raw) == expected


def test_header_priority():
    headers = {"x-forwarded-for": "198.51.100.1", "cf-connecting-ip": "203.0.113.9"}
    assert resolve_client_ip(headers, "10.0.0.1", ORDER) == "203.0.113.9"


def test_forwarded_for_takes_first_hop():
    headers = {"x-forwarded-for": "198.51.100.1, 10.0.0.2, 10.0.0.3"}
    assert resolve_client_ip(headers, "10.0.0.1", ORDER) == "198.51.100.1"


def test_rfc7239_forwarded_header():
    headers = {"forwarded": 'for="[2001:db8::7]:4711";proto=https, for=10.0.0.2'}
    assert resolve_client_ip(headers, None, ORDER) == "2001:db8::7"


def test_invalid_header_falls_through_to_next_source():
    headers = {"client-ip": "garbage", "x-forwarded-for": "198.51.100.1"}
    assert resolve_client_ip(headers, "10.0.0.1", ORDER) == "198.51.100.1"


def test_peer_address_used_without_headers():
    assert resolve_client_ip({}, "192.0.2.44", ORDER) == "192.0.2.44"


def test_unknown_when_nothing_is_valid():
    assert resolve_client_ip({"x-forwarded-for": "nope"}, "testclient", ORDER) == UNKNOWN_IP
    assert resolve_client_ip({}, None, ORDER) == UNKNOWN_IP
