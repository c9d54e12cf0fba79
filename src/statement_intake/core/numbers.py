from __future__ import annotations

import math
import re

_STRIP_RE = re.compile(r"[$\u20ac\xa3,%\s\xa0\u202f]")
_NULL_WORDS = {"null", "none", "n/a", "na", "-", "unknown"}


def _to_float(raw: object) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
        return value if math.isfinite(value) else None
    s = _STRIP_RE.sub("", str(raw))
    if not s:
        return None
    # Accounting negatives: (123.45)
    if s.startswith("(") and s.endswith(")"):
        s = "-" + s[1:-1]
    try:
        value = float(s)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def parse_number(raw: object) -> float:
    """Tolerant float parsing for statement figures.

    Currency symbols, thousands separators, whitespace and percent signs are removed
    before conversion. Anything that still does not parse yields 0.0.
    """
    value = _to_float(raw)
    return 0.0 if value is None else value


def parse_optional_number(raw: object) -> float | None:
    """Like parse_number, but keeps "not present" distinct from zero."""
    if isinstance(raw, str) and raw.strip().lower() in _NULL_WORDS:
        return None
    return _to_float(raw)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
