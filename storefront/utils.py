import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP

PHONE_RE = re.compile(r'^\d{10}$')
WARRANTY_RE = re.compile(r'(\d+)F(?:\+(\d+)P)?')

def is_valid_phone(p: str | None) -> bool:
    if not p: return False
    return bool(PHONE_RE.match(p.strip()))

def blank(s: str | None) -> bool:
    return s is None or not str(s).strip()

def as_date(v: date | datetime | str) -> date:
    if isinstance(v, datetime): return v.date()
    if isinstance(v, date): return v
    return datetime.fromisoformat(str(v).replace('Z', '+00:00')).date()

def months_between(start, end) -> int:
    """Whole calendar months from ``start`` to ``end``, floored. Never negative."""
    s, e = as_date(start), as_date(end)
    months = (e.year - s.year) * 12 + (e.month - s.month)
    if e.day < s.day:
        months -= 1
    return max(0, months)

def parse_warranty_string(w: str | None) -> tuple[int, int]:
    """``"24F+24P"`` -> (24, 24); ``"48M (24F+18P)"`` -> (24, 18); ``"24F"`` -> (24, 0)."""
    if not w or not isinstance(w, str):
        return 0, 0
    m = WARRANTY_RE.search(w)
    if not m:
        return 0, 0
    return int(m.group(1) or 0), int(m.group(2) or 0)

def money(v: float) -> float:
    return round(float(v or 0), 2)

def round_half_up(v: float, places: int = 0) -> float:
    """Rounds halves up (12.5 -> 13) instead of to even."""
    q = Decimal(1).scaleb(-places)
    return float(Decimal(str(v)).quantize(q, rounding=ROUND_HALF_UP))
