from __future__ import annotations

from typing import Optional

from db_copy.errors import TokenParseError

TOKEN_LENGTH = 8

# ============================== Version tokens ===============================
# A version token is the 8-byte value the database bumps on every row change.
# Ordering is plain big-endian byte order, which is also what bytes comparison
# gives us; None sorts before every token.


def as_token(value) -> Optional[bytes]:
    """Normalize a driver value (bytes, bytearray, memoryview) into bytes."""
    if value is None:
        return None
    if isinstance(value, memoryview):
        value = value.tobytes()
    token = bytes(value)
    if len(token) != TOKEN_LENGTH:
        raise TokenParseError(f"Version token must be {TOKEN_LENGTH} bytes, got {len(token)}")
    return token


def compare_tokens(a: Optional[bytes], b: Optional[bytes]) -> int:
    if a is None and b is None:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def min_token(a: Optional[bytes], b: Optional[bytes]) -> Optional[bytes]:
    return a if compare_tokens(a, b) <= 0 else b


def max_token(a: Optional[bytes], b: Optional[bytes]) -> Optional[bytes]:
    return a if compare_tokens(a, b) >= 0 else b


def is_newer(token: Optional[bytes], stored: Optional[bytes]) -> bool:
    """True when `token` is strictly after `stored`; a missing stored token makes every row newer."""
    if stored is None:
        return True
    return compare_tokens(token, stored) > 0


def token_to_hex(token: Optional[bytes]) -> str:
    if token is None:
        return ""
    return "0x" + token.hex().upper()


def token_from_hex(text: Optional[str]) -> Optional[bytes]:
    """
    Parse `0x` + 16 hex digits (prefix optional, case-insensitive).
    Empty input gives None; anything else malformed raises TokenParseError.
    """
    if text is None:
        return None
    raw = text.strip()
    if not raw:
        return None
    if raw[:2].lower() == "0x":
        raw = raw[2:]
    if len(raw) != TOKEN_LENGTH * 2:
        raise TokenParseError(f"Version token {text!r} must have {TOKEN_LENGTH * 2} hex digits")
    try:
        return bytes.fromhex(raw)
    except ValueError as e:
        raise TokenParseError(f"Version token {text!r} is not hex: {e}") from e
