"""Locale-tolerant parsing of numeric feed values.

Supplier feeds send prices and stock either as JSON numbers or as text with a
dot or comma decimal separator. Everything else is rejected instead of guessed.
"""
import re
from typing import Optional, Union

Number = Union[int, float]

_INT_RE = re.compile(r"^-?\d+$")
_DOT_DECIMAL_RE = re.compile(r"^-?\d+\.\d+$")
_COMMA_DECIMAL_RE = re.compile(r"^-?\d+,\d+$")


def parse_numeric(raw) -> Optional[Number]:
    """Return the canonical number for ``raw`` or None when it is not one.

    Accepts ``"12"``, ``"12.50"`` and ``"12,50"`` (surrounding whitespace is
    ignored). Thousands separators, currency symbols and inner spaces make the
    value invalid.
    """
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        return raw
    if not isinstance(raw, str):
        return None

    s = raw.strip()
    if _INT_RE.match(s):
        return int(s)
    if _DOT_DECIMAL_RE.match(s):
        return float(s)
    if _COMMA_DECIMAL_RE.match(s):
        return float(s.replace(",", "."))
    return None


def to_int(raw, default: int = 0) -> int:
    """Stock counts: fractional values are truncated, invalid ones fall back."""
    v = parse_numeric(raw)
    return int(v) if v is not None else default


def same_number(a, b) -> bool:
    """Compare two feed values by canonical value, not by spelling."""
    na, nb = parse_numeric(a), parse_numeric(b)
    if na is None or nb is None:
        return na is None and nb is None and a == b
    return float(na) == float(nb)
