"""Price and model-year filters. Pure functions, no I/O."""
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

from .entities import CandidateListing

YEAR_RE = re.compile(r"\b(19[5-9]\d|20\d{2})\b")


def max_price(threshold, multiplier) -> int:
    """round(threshold x multiplier), halves rounded up."""
    product = Decimal(str(threshold)) * Decimal(str(multiplier))
    return int(product.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def filter_by_price(candidates: Iterable[CandidateListing], threshold, multiplier) -> List[CandidateListing]:
    """Keep candidates priced in (0, max_price]."""
    ceiling = max_price(threshold, multiplier)
    return [c for c in candidates if c.price is not None and 0 < c.price <= ceiling]


def title_year(title: str) -> Optional[int]:
    m = YEAR_RE.search(title or "")
    return int(m.group(1)) if m else None


def filter_by_year(candidates: Iterable[CandidateListing], year_start=None, year_end=None) -> List[CandidateListing]:
    """Drop candidates whose title names a model year outside the range.

    Titles without a recognisable year pass.
    """
    if year_start is None and year_end is None:
        return list(candidates)
    kept = []
    for c in candidates:
        year = title_year(c.title)
        if year is not None:
            if year_start is not None and year < year_start:
                continue
            if year_end is not None and year > year_end:
                continue
        kept.append(c)
    return kept
