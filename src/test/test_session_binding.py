from security.session_binding import BindingStatus, SessionBinder

UA = "Mozilla/5.0 (X11; Linux x86_64; rv:120.0) Gecko/20100101 Firefox/120.0"
IP = "198.51.100.7"


def test_first_request_binds_session():
    binder = SessionBinder("salt")
    session = {}
    assert binder.check(session, UA, IP) is BindingStatus.BOUND
    assert session["HTTP_USER_TOKEN"] == binder.fingerprint(UA, IP)


def test_same_client_matches():
    binder = SessionBinder("salt")
    session = {}
    binder.check(session, UA, IP)
    assert binder.check(session, UA, IP) is BindingStatus.MATCHED


def test_other_user_agent_is_hijack_and_clears_session():
    """
    Cookie session bị đánh cắp và dùng ở trình duyệt khác -> huỷ toàn bộ session
    """
    binder = SessionBinder("salt")
    session = {"user_id": 42}
    binder.check(session, UA, IP)

    assert binder.check(session, UA + " Edge", IP) is BindingStatus.HIJACKED
    assert session == {}


def test_other_ip_is_hijack():
    binder = SessionBinder("salt")
    session = {}
    binder.check(session, UA, IP)
    assert binder.check(session, UA, "203.0.113.1") is BindingStatus.HIJACKED


def test_fingerprint_depends_on_secret():
    assert SessionBinder("a").fingerprint(UA, IP) != SessionBinder("b").fingerprint(UA, IP)


def test_custom_session_key():
    binder = SessionBinder("salt", session_key="_BIND")
    session = {}
    binder.check(session, UA, IP)
    assert "_BIND" in session
