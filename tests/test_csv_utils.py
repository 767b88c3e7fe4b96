from decimal import Decimal

import pytest

from csv_utils import parse_amount, sanitize_csv_value


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("=SUM(A1:A2)", "\t=SUM(A1:A2)"),
        ("+1", "\t+1"),
        ("@cmd", "\t@cmd"),
        ("cmd /c calc", "\tcmd /c calc"),
        ("https://example.com", "\thttps://example.com"),
        ("  Lunch  ", "Lunch"),
        ("Shopping", "Shopping"),
        ("", ""),
    ],
)
def test_sanitize_csv_value(raw: str, expected: str) -> None:
    assert sanitize_csv_value(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("12.50", Decimal("12.50")),
        ("12,50", Decimal("12.50")),
        ("$1 200.00", Decimal("1200.00")),
        ("1.200,75", Decimal("1200.75")),
    ],
)
def test_parse_amount(raw: str, expected: Decimal) -> None:
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("raw", ["", "abc", "NaN"])
def test_parse_amount_rejects_garbage(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_amount(raw)
