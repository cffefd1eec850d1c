"""
Tập trung hoá việc tạo TÊN KHOÁ (key) Redis cho kho chống DOS.
Mọi nơi khác chỉ GỌI HÀM ở đây -> nếu đổi format key, ta chỉ sửa file này.
"""

# ===== Bộ đếm theo IP =====
# HASH gồm 4 trường: ws (windowStart), vc (violationCount), rc (requestCount), lv (lastViolationAt)
# Có TTL = time_expire -> Redis tự dọn IP nguội

ATTEMPT_PREFIX = "abuse:attempt:"

def k_attempt(ip: str) -> str:
    """Bộ đếm của 1 IP. Ví dụ: abuse:attempt:203.0.113.10"""
    return f"{ATTEMPT_PREFIX}{ip}"

def ip_from_attempt_key(key: str) -> str:
    """Tách IP từ key bộ đếm (ngược với k_attempt)."""
    return key[len(ATTEMPT_PREFIX):]

# ===== BAN =====

def k_banned() -> str:
    """SET chứa mọi IP bị BAN vĩnh viễn (không TTL, chỉ admin gỡ)."""
    return "abuse:banned"
