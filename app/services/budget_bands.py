"""Budget band parsing.

Lead forms store budgets as display strings picked from fixed option
lists ("AED1M – AED2M", "Above AED15M", "under AED100K"). Contacts need
numeric bounds, so parse_budget_band() turns a label into a BudgetRange.

parse_budget_band() never raises. It returns one of:
    range        both bounds            "AED1M – AED2M"  -> 1_000_000..2_000_000
    open_high    lower bound only       "Above AED15M"   -> 15_000_000..None
    open_low     upper bound only       "under AED100K"  -> None..100_000
    empty        nothing to parse       None / ""
    unrecognized text with no usable number
"""

import re
from collections import namedtuple

SALE_BUDGET_BANDS = [
    "under AED1M",
    "AED1M – AED2M",
    "AED2M – AED5M",
    "AED5M – AED10M",
    "AED10M - AED15M",
    "Above AED15M",
]

RENT_BUDGET_BANDS = [
    "under AED100K",
    "AED100K – AED200K",
    "AED200K – AED300K",
    "AED300K – AED500K",
    "AED500K – AED1M",
    "Above AED1M",
]

UNITS = {"k": 1_000, "m": 1_000_000}

RANGE = "range"
OPEN_HIGH = "open_high"
OPEN_LOW = "open_low"
EMPTY = "empty"
UNRECOGNIZED = "unrecognized"

_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([kKmM])?(?![a-zA-Z])")
_OPEN_LOW_RE = re.compile(r"\b(under|below|less than|up to|max(imum)?)\b", re.IGNORECASE)


class BudgetRange(namedtuple("BudgetRange", ["kind", "min", "max"])):
    __slots__ = ()

    @property
    def recognized(self):
        return self.kind in (RANGE, OPEN_HIGH, OPEN_LOW)


EMPTY_RANGE = BudgetRange(EMPTY, None, None)
UNRECOGNIZED_RANGE = BudgetRange(UNRECOGNIZED, None, None)


def _amounts(text):
    """Numbers in ``text`` scaled by their unit.

    A number without its own K/M takes the unit of the last suffix in the
    string ("AED 1 - 2M" -> 1M, 2M).
    """
    matches = _NUMBER_RE.findall(text.replace(",", ""))
    if not matches:
        return []
    fallback = 1
    for _, unit in matches:
        if unit:
            fallback = UNITS[unit.lower()]
    amounts = []
    for number, unit in matches:
        scale = UNITS[unit.lower()] if unit else fallback
        amounts.append(int(round(float(number) * scale)))
    return amounts


def parse_budget_band(text):
    """Parse a band label into a BudgetRange. Never raises."""
    if text is None:
        return EMPTY_RANGE
    if not isinstance(text, str):
        return UNRECOGNIZED_RANGE
    if not text.strip():
        return EMPTY_RANGE

    amounts = _amounts(text)
    if not amounts:
        return UNRECOGNIZED_RANGE

    if _OPEN_LOW_RE.search(text):
        return BudgetRange(OPEN_LOW, None, amounts[0])

    # Two amounts are a range even with a "from" or "over" in the label.
    if len(amounts) == 1:
        return BudgetRange(OPEN_HIGH, amounts[0], None)

    low, high = amounts[0], amounts[1]
    if low > high:
        low, high = high, low
    return BudgetRange(RANGE, low, high)


def budget_bounds(sale_band=None, rent_band=None):
    """(min, max) for a lead: the sale band wins when both are set."""
    band = sale_band or rent_band
    parsed = parse_budget_band(band)
    return parsed.min, parsed.max
