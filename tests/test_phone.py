from __future__ import annotations

import pytest

from aplia_backend.domain.phone import (
    extract_phone_number,
    format_phone_number,
    is_valid_phone_number,
    normalize_phone_number,
    to_e164_br,
)


def test_normalize_keeps_digits_only() -> None:
    assert normalize_phone_number("+55 (11) 98765-4321") == "5511987654321"


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"number": "+55 11 98765-4321", "wid": "5500000000000@s.whatsapp.net"}, "5511987654321"),
        ({"wid": "5511987654321@s.whatsapp.net", "ownerJid": "5522@s.whatsapp.net"}, "5511987654321"),
        ({"ownerJid": "5521912345678@s.whatsapp.net"}, "5521912345678"),
        ({"owner": "55 21 91234-5678"}, "5521912345678"),
        ({"profileName": "Clinica"}, None),
        (None, None),
    ],
)
def test_extract_phone_number_priority(payload: dict | None, expected: str | None) -> None:
    assert extract_phone_number(payload) == expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("5511987654321", "+55(11)98765-4321"),
        ("551187654321", "+55(11)98765-4321"),
        (None, "-"),
        ("", "-"),
        ("14155550100", "+14155550100"),
    ],
)
def test_format_phone_number(raw: str | None, expected: str) -> None:
    assert format_phone_number(raw) == expected


def test_is_valid_phone_number_bounds() -> None:
    assert is_valid_phone_number("11 9876-5432")
    assert not is_valid_phone_number("123456789")
    assert not is_valid_phone_number("1" * 16)


def test_to_e164_br() -> None:
    assert to_e164_br("(11) 98765-4321") == "+5511987654321"
    assert to_e164_br("5511987654321") == "+5511987654321"
    assert to_e164_br("") == ""
    assert to_e164_br(None) == ""
