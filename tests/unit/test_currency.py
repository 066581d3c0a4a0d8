"""Unit tests for amount formatting."""
import pytest

from recovery.utils.currency import format_amount


@pytest.mark.parametrize(
    "amount,currency,expected",
    [
        (2900, "USD", "$29.00"),
        (2900, "usd", "$29.00"),
        (123456, "EUR", "€1,234.56"),
        (1000, "JPY", "¥1,000"),
        (1250, "CHF", "CHF 12.50"),
        (0, "GBP", "£0.00"),
    ],
)
def test_format_amount(amount: int, currency: str, expected: str) -> None:
    assert format_amount(amount, currency) == expected
