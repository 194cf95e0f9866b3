# totp_utils.py
import hashlib
import hmac
import re
import secrets
import struct
import time
from typing import Optional
from urllib.parse import quote

BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

TOTP_DIGITS = 6
TOTP_PERIOD_SEC = 30
SECRET_BYTES = 20

_CODE_RE = re.compile(r"[0-9]{6}")


def base32_encode(data: bytes) -> str:
    """RFC 4648 Base32 without '=' padding."""
    bits = 0
    value = 0
    out = []
    for byte in data:
        value = (value << 8) | byte
        bits += 8
        while bits >= 5:
            out.append(BASE32_ALPHABET[(value >> (bits - 5)) & 0x1F])
            bits -= 5
    if bits > 0:
        out.append(BASE32_ALPHABET[(value << (5 - bits)) & 0x1F])
    return "".join(out)


def base32_decode(encoded: str) -> bytes:
    """Decode Base32, ignoring whitespace, padding, case and stray characters."""
    bits = 0
    value = 0
    out = bytearray()
    for ch in encoded.upper():
        idx = BASE32_ALPHABET.find(ch)
        if idx == -1:
            continue
        value = (value << 5) | idx
        bits += 5
        if bits >= 8:
            out.append((value >> (bits - 8)) & 0xFF)
            bits -= 8
    return bytes(out)


def generate_secret() -> str:
    return base32_encode(secrets.token_bytes(SECRET_BYTES))


def format_secret(secret: str) -> str:
    """Group a secret in blocks of 4 for manual entry."""
    return " ".join(secret[i:i + 4] for i in range(0, len(secret), 4))


def build_totp_uri(secret: str, issuer: str = "SolReclaimer", account: str = "admin") -> str:
    label = f"{quote(issuer)}:{quote(account)}"
    return (
        f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
        f"&digits={TOTP_DIGITS}&period={TOTP_PERIOD_SEC}"
    )


def totp_code(secret: bytes, counter: int) -> str:
    """HOTP value for `counter` (RFC 4226 dynamic truncation), zero-padded to 6 digits."""
    msg = struct.pack(">Q", counter)
    mac = hmac.new(secret, msg, hashlib.sha1).digest()
    offset = mac[-1] & 0x0F
    binary = struct.unpack(">I", mac[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(binary % 10 ** TOTP_DIGITS).zfill(TOTP_DIGITS)


def current_counter(now: Optional[float] = None) -> int:
    if now is None:
        now = time.time()
    return int(now * 1000) // (TOTP_PERIOD_SEC * 1000)


def verify_totp(secret_b32: str, code: str, now: Optional[float] = None) -> bool:
    """Check a 6-digit code against the current window and one window either side."""
    if not isinstance(code, str) or not _CODE_RE.fullmatch(code):
        return False
    key = base32_decode(secret_b32)
    counter = current_counter(now)
    for delta in (-1, 0, 1):
        if counter + delta < 0:
            continue
        if hmac.compare_digest(totp_code(key, counter + delta), code):
            return True
    return False


def is_code_format(code: object) -> bool:
    return isinstance(code, str) and _CODE_RE.fullmatch(code) is not None
