# secure_share.py

import hmac
import secrets

SHARE_LINK_BYTES = 16   # 128 bits
ACCESS_KEY_BYTES = 8    # 64 bits


# ─── TOKEN GENERATORS ─────────────────────────────────────

def generate_share_link() -> str:
    return secrets.token_hex(SHARE_LINK_BYTES)


def generate_access_key() -> str:
    return secrets.token_hex(ACCESS_KEY_BYTES)


# ─── VERIFY ─────────────────────────────────────────────

def keys_match(expected: str, supplied: str) -> bool:
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def mask(token: str) -> str:
    """Loggable form of a secret: only the last four characters survive."""
    if not token:
        return "<none>"
    return "***" + token[-4:]
