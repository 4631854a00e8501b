import pytest

from db_copy.errors import TokenParseError
from db_copy.tokens import (
    as_token,
    compare_tokens,
    is_newer,
    max_token,
    min_token,
    token_from_hex,
    token_to_hex,
)


def test_byte_order_is_big_endian():
    low = bytes.fromhex("00000000000000FF")
    high = bytes.fromhex("0000000000000100")
    assert compare_tokens(low, high) == -1
    assert compare_tokens(high, low) == 1
    assert compare_tokens(low, bytes(low)) == 0


def test_none_sorts_first():
    t = bytes(8)
    assert compare_tokens(None, t) == -1
    assert compare_tokens(t, None) == 1
    assert compare_tokens(None, None) == 0


def test_min_and_max():
    a = bytes.fromhex("0000000000000001")
    b = bytes.fromhex("0100000000000000")
    assert min_token(a, b) == a
    assert max_token(a, b) == b
    assert min_token(None, b) is None
    assert max_token(None, b) == b


def test_is_newer_with_missing_stored_token():
    t = bytes.fromhex("0000000000000005")
    assert is_newer(t, None)
    assert not is_newer(t, t)
    assert is_newer(t, bytes.fromhex("0000000000000004"))


def test_hex_formatting():
    assert token_to_hex(bytes.fromhex("00000000000A1B2C")) == "0x00000000000A1B2C"
    assert token_to_hex(None) == ""


@pytest.mark.parametrize("text", ["0x00000000000a1b2c", "0X00000000000A1B2C", "00000000000A1B2C"])
def test_hex_parsing_accepts_prefix_variants(text):
    assert token_from_hex(text) == bytes.fromhex("00000000000A1B2C")


@pytest.mark.parametrize("text", ["0x1234", "0xZZ000000000A1B2C", "0x00000000000A1B2C00"])
def test_hex_parsing_rejects_malformed(text):
    with pytest.raises(TokenParseError):
        token_from_hex(text)


def test_blank_hex_is_none():
    assert token_from_hex("  ") is None
    assert token_from_hex(None) is None


def test_as_token_normalizes_memoryview():
    raw = bytes.fromhex("0102030405060708")
    assert as_token(memoryview(raw)) == raw
    assert as_token(None) is None
    with pytest.raises(TokenParseError):
        as_token(b"\x01\x02")
