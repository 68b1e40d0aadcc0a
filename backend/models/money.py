"""
AgencyDesk CRM - Currency / amount model

All money is an int in the currency minor unit (1/100: agorot, cents).
Conversion to a display value happens only at presentation boundaries.

Rounding rule for percentages (VAT): ROUND HALF UP on the integer
minor-unit value, computed with integer arithmetic only:
    vat = (subtotal * rate_bp + 5000) // 10000
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Iterable, NamedTuple, Union

from services.quote_errors import AmountOverflowError, InvalidLineItemError, ValidationError

# JSON / JavaScript safe integer bound: amounts must survive the HTTP boundary
MAX_SAFE_AMOUNT = 2 ** 53 - 1

MINOR_PER_MAJOR = 100
DEFAULT_VAT_BP = 1800

CURRENCY_SYMBOLS = {
    "ILS": "₪",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
}

_AMOUNT_RE = re.compile(r"^(-)?\s*([^\d\s-]*)\s*([\d,]+(?:\.\d+)?)$")


class Totals(NamedTuple):
    subtotal: int
    vat: int
    total: int


def check_amount(value: int, field: str = "amount") -> int:
    """Fail loudly outside the safe integer range."""
    if abs(value) > MAX_SAFE_AMOUNT:
        raise AmountOverflowError(f"{field} exceeds the maximum supported amount", field=field, value=value)
    return value


def to_minor_units(value: Union[str, int, Decimal]) -> int:
    """
    Convert a major-unit entry ("299.00", "1,299.5", Decimal("10")) to minor units.
    More than two decimal places is rejected instead of silently rounded.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    if isinstance(value, int):
        return check_amount(value * MINOR_PER_MAJOR)
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    minor = amount * MINOR_PER_MAJOR
    if minor != minor.to_integral_value():
        raise ValidationError(f"Amount has more than 2 decimal places: {value!r}")
    return check_amount(int(minor))


def from_minor_units(minor: int) -> Decimal:
    return Decimal(minor) / MINOR_PER_MAJOR


def currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())


def pdf_currency_label(currency: str) -> str:
    """Symbol if the PDF base font (cp1252) can draw it, else the ISO code."""
    symbol = currency_symbol(currency)
    try:
        symbol.encode("cp1252")
    except UnicodeEncodeError:
        return currency.upper()
    return symbol


def format_amount(minor: int, currency: str = "ILS", symbol: str = None) -> str:
    """
    Display format: symbol, thousands separator, 2 decimals.
    12345 -> "₪123.45", -1000 -> "-₪10.00". A multi-letter symbol gets a space ("ILS 123.45").
    """
    if symbol is None:
        symbol = currency_symbol(currency)
    sign = "-" if minor < 0 else ""
    major, cents = divmod(abs(minor), MINOR_PER_MAJOR)
    separator = " " if symbol.isalpha() else ""
    return f"{sign}{symbol}{separator}{major:,}.{cents:02d}"


def parse_formatted_amount(text: str) -> int:
    """Inverse of format_amount: "₪1,234.50" -> 123450."""
    match = _AMOUNT_RE.match(text.strip())
    if not match:
        raise ValidationError(f"Not a formatted amount: {text!r}")
    negative, _symbol, digits = match.groups()
    minor = to_minor_units(digits)
    return -minor if negative else minor


def line_total(quantity: int, unit_price: int) -> int:
    if quantity < 1:
        raise InvalidLineItemError(f"Quantity must be a positive integer (got {quantity})", quantity=quantity)
    if unit_price < 0:
        raise InvalidLineItemError(f"Unit price cannot be negative (got {unit_price})", unit_price=unit_price)
    check_amount(unit_price, "unit_price")
    return check_amount(quantity * unit_price, "line total")


def percentage_of(amount: int, basis_points: int) -> int:
    """Round-half-up percentage of a non-negative minor-unit amount."""
    if amount < 0:
        raise ValidationError("Percentage base cannot be negative")
    return check_amount((amount * basis_points + 5000) // 10000)


def compute_totals(line_totals: Iterable[int], vat_bp: int = DEFAULT_VAT_BP) -> Totals:
    subtotal = check_amount(sum(line_totals), "subtotal")
    vat = percentage_of(subtotal, vat_bp)
    return Totals(subtotal=subtotal, vat=vat, total=check_amount(subtotal + vat, "total"))


def format_vat_rate(vat_bp: int) -> str:
    """1800 -> "18%", 1750 -> "17.5%"."""
    return f"{(Decimal(vat_bp) / 100).normalize():f}%"
