"""Currency formatting for payer-facing messages."""

# Currencies that don't use decimal places (smallest unit is whole currency)
zero_decimal_currencies = [
    "JPY",  # Japanese Yen
    "KRW",  # South Korean Won
    "VND",  # Vietnamese Đồng
    "CLP",  # Chilean Peso
    "ISK",  # Icelandic Króna
    "TWD",  # Taiwan Dollar
]

# Currency symbols for common currencies
currency_symbols = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CAD": "CA$",
    "AUD": "A$",
    "NZD": "NZ$",
    "MXN": "MX$",
    "BRL": "R$",
    "INR": "₹",
    "KRW": "₩",
}


def format_amount(amount: int, currency: str) -> str:
    """
    Format an amount in minor units for display.

    Args:
        amount: Amount in smallest currency unit (cents for USD, whole yen for JPY)
        currency: ISO 4217 currency code

    Returns:
        Formatted string with currency symbol, or code prefix when no symbol is known

    Examples:
        >>> format_amount(2900, "usd")
        '$29.00'
        >>> format_amount(1000, "JPY")
        '¥1,000'
        >>> format_amount(1250, "CHF")
        'CHF 12.50'
    """
    currency_upper = currency.upper()

    if currency_upper in zero_decimal_currencies:
        formatted_amount = f"{amount:,}"
    else:
        formatted_amount = f"{amount / 100.0:,.2f}"

    symbol = currency_symbols.get(currency_upper)
    if symbol is None:
        return f"{currency_upper} {formatted_amount}"
    return f"{symbol}{formatted_amount}"
