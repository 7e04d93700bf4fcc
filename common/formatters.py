# common/formatters.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from common.dates import TzLike, as_tz

__all__ = ["format_currency", "format_quantity", "format_date", "format_document"]


def format_currency(amount: Optional[float], symbol: str = "$") -> str:
    if amount is None:
        return "-"
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(float(amount)):,.2f}"


def format_quantity(q: Optional[float]) -> str:
    if q is None:
        return "-"
    q = float(q)
    return str(int(q)) if q.is_integer() else f"{q:g}"


def format_date(dt: Optional[datetime], tz: TzLike = None) -> str:
    if dt is None:
        return "-"
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(as_tz(tz)).strftime("%Y-%m-%d")


def format_document(doc: Optional[str]) -> str:
    """11 digits -> 000.000.000-00, 14 digits -> 00.000.000/0000-00, anything else unchanged."""
    if not doc:
        return "-"
    digits = re.sub(r"\D", "", doc)
    if len(digits) == 11:
        return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"
    if len(digits) == 14:
        return f"{digits[:2]}.{digits[2:5]}.{digits[5:8]}/{digits[8:12]}-{digits[12:]}"
    return doc.strip()
