"""Search-term expansion."""
from typing import List


def _clean(value) -> str:
    return " ".join(str(value).split()) if value else ""


def expand_terms(spec) -> List[str]:
    """Ordered query variants for a search config, most specific first.

    `brand model`, then with the qualifier, with the sub-qualifier, with
    both, then the brand alone and the model alone. Blank parts are skipped
    and case-insensitive duplicates keep their first position.
    """
    brand = _clean(spec.brand)
    model = _clean(spec.model)
    qualifier = _clean(spec.qualifier)
    sub_qualifier = _clean(spec.sub_qualifier)
    primary = _clean(f"{brand} {model}")

    variants = [primary]
    if qualifier:
        variants.append(f"{primary} {qualifier}")
    if sub_qualifier:
        variants.append(f"{primary} {sub_qualifier}")
    if qualifier and sub_qualifier:
        variants.append(f"{primary} {qualifier} {sub_qualifier}")
    variants.append(brand)
    variants.append(model)

    terms, seen = [], set()
    for v in variants:
        v = _clean(v)
        key = v.lower()
        if v and key not in seen:
            seen.add(key)
            terms.append(v)
    return terms
