from datetime import date

import pytest

from vnqueue.exceptions import InvalidVisitNumberError
from vnqueue.utils.vn import (
    format_vn_display,
    is_valid_vn,
    normalize_vn,
    parse_vn,
    vn_date_prefix,
)

DAY = date(2026, 1, 12)


class TestNormalizeVn:
    @pytest.mark.parametrize("raw,expected", [
        ("1", "VN260112-0001"),
        ("0001", "VN260112-0001"),
        ("42", "VN260112-0042"),
        ("VN7", "VN260112-0007"),
        ("vn0123", "VN260112-0123"),
        ("  VN260112-0005 ", "VN260112-0005"),
        ("vn251231-0099", "VN251231-0099"),
    ])
    def test_accepted_forms(self, raw, expected):
        assert normalize_vn(raw, on=DAY) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "12345", "VN12345", "VN260112-01", "ABC", "VN261332-0001"])
    def test_rejected_forms(self, raw):
        with pytest.raises(InvalidVisitNumberError):
            normalize_vn(raw, on=DAY)

    def test_defaults_to_today(self):
        assert normalize_vn("3").startswith(vn_date_prefix())


def test_parse_vn():
    parts = parse_vn("VN260112-0007")
    assert parts.issued_on == DAY
    assert parts.sequence == 7
    assert parse_vn("VN260230-0001") is None


def test_is_valid_vn():
    assert is_valid_vn("VN260112-0001")
    assert not is_valid_vn("260112-0001")


def test_format_vn_display():
    assert format_vn_display("VN260112-0001") == "VN 26/01/12 - 0001"
    assert format_vn_display("walk-in") == "walk-in"
