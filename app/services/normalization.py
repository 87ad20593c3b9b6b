import re
import unicodedata
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

FRACTION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*/\s*(\d+(?:\.\d+)?)\s*$")
PERCENT_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*%\s*$")
NUMBER_RE = re.compile(r"^\s*(\d+(?:\.\d+)?|\.\d+)\s*$")
MISSING_TOKENS = {"", "-", "n/a", "na", "none", "null", "없음", "미상"}

_HUNDRED = Decimal("100")
_CENT = Decimal("0.01")


def _to_decimal(text: str) -> Decimal | None:
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def _bounded_percentage(value: Decimal | None) -> float | None:
    if value is None or value > _HUNDRED:
        return None
    rounded = value.quantize(_CENT, rounding=ROUND_HALF_UP)
    if rounded <= 0:
        return None
    return float(rounded)


def parse_ratio(raw: Any) -> float | None:
    """Parse a share-ratio cell into a percentage in (0, 100] with two decimals.

    Tried in order: "A/B" fraction, "P%" percentage, bare number. A bare number in
    (0, 1] is a fraction of one; in (1, 100] it is already a percentage. Blank, zero,
    out-of-range and unparseable input all return None.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        raw = repr(raw)

    text = unicodedata.normalize("NFKC", str(raw)).strip().replace(",", "")
    if text.lower() in MISSING_TOKENS:
        return None

    matched = FRACTION_RE.match(text)
    if matched:
        numerator = _to_decimal(matched.group(1))
        denominator = _to_decimal(matched.group(2))
        if numerator is None or not denominator:
            return None
        return _bounded_percentage(numerator / denominator * _HUNDRED)

    matched = PERCENT_RE.match(text)
    if matched:
        return _bounded_percentage(_to_decimal(matched.group(1)))

    matched = NUMBER_RE.match(text)
    if matched:
        value = _to_decimal(matched.group(1))
        if value is None:
            return None
        if 0 < value <= 1:
            return _bounded_percentage(value * _HUNDRED)
        return _bounded_percentage(value)

    return None


def parse_quantity(raw: Any) -> float | None:
    """Parse an area/valuation cell ("1,234.5㎡", "3,000,000원"); zero and blank -> None."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
        return value if value > 0 else None

    text = unicodedata.normalize("NFKC", str(raw)).strip().lower().replace(",", "")
    if text in MISSING_TOKENS:
        return None
    matched = re.search(r"\d+(?:\.\d+)?", text)
    if not matched:
        return None
    value = float(matched.group(0))
    return value if value > 0 else None
