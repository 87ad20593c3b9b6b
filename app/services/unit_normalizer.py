from __future__ import annotations

import re
import unicodedata
from typing import Any

_DONG_SUFFIX_RE = re.compile(r"(?:\s*동)+$")
_HO_SUFFIX_RE = re.compile(r"(?:\s*호)+$")
# 지하/비/지(+digit)/B prefixes all denote a basement unit.
_BASEMENT_PREFIX_RE = re.compile(r"^(?:지하|비|지(?=\s*\d)|B)\s*")
_WHITESPACE_RE = re.compile(r"\s+")
_LOT_TOKEN_RE = re.compile(r"(산\s*)?(\d+(?:-\d+)?)\s*(?:번지)?$")


def _clean(value: Any) -> str:
    if value is None:
        return ""
    text = unicodedata.normalize("NFKC", str(value))
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_dong(value: Any) -> str | None:
    """Canonical building designator: "101동" -> "101", "a동" -> "A", blank -> None."""
    text = _clean(value).upper()
    if not text:
        return None
    text = _DONG_SUFFIX_RE.sub("", text).strip()
    return text or None


def normalize_ho(value: Any) -> str | None:
    """Canonical unit designator with basement markers folded into a "B" prefix.

    "1001호" -> "1001", "지하1" -> "B1", "비01" -> "B01", "b1" -> "B1",
    "101-A" stays "101-A". Applying it twice returns the same value.
    """
    text = _clean(value).upper()
    if not text:
        return None
    text = _HO_SUFFIX_RE.sub("", text).strip()
    if _BASEMENT_PREFIX_RE.match(text):
        rest = _BASEMENT_PREFIX_RE.sub("", text, count=1)
        text = f"B{rest}"
    return text.strip() or None


def normalize_address(value: Any) -> str | None:
    text = _clean(value)
    return text or None


def compact_address_key(value: Any) -> str:
    """Whitespace- and case-insensitive comparison key for addresses."""
    text = _clean(value).lower()
    return text.replace(" ", "")


def extract_lot_token(address: Any) -> str | None:
    """Trailing lot number of a jibun address, e.g. "... 산 12-3" -> "산12-3"."""
    matched = _LOT_TOKEN_RE.search(_clean(address))
    if not matched:
        return None
    prefix = "산" if matched.group(1) else ""
    return f"{prefix}{matched.group(2)}"
