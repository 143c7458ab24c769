from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, Optional

PLACEHOLDER_CATEGORY_NAMES = {"adicione", "add"}

# Minimum elapsed days between two charges of the same subcategory.
MIN_ELAPSED_DAYS = {
    "daily": 1,
    "weekly": 7,
    "biweekly": 15,
    "monthly": 28,
    "quarterly": 89,
    "semiannual": 180,
    "annual": 365,
}
SUPPORTED_FREQUENCIES = set(MIN_ELAPSED_DAYS)
FREQUENCY_ALIASES = {
    "byweekly": "biweekly",
    "fortnightly": "biweekly",
    "semestral": "semiannual",
    "yearly": "annual",
}

ZERO = Decimal("0")
SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class FixedExpenseCandidate:
    category_id: str
    category_name: str
    subcategory_name: str
    amount: Decimal
    frequency: str


def normalize_frequency(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    if not normalized:
        return None
    return FREQUENCY_ALIASES.get(normalized, normalized)


def elapsed_days(last_execution: datetime, now: datetime) -> int:
    """Days since the last run, rounded up; 0 for a run on the same date."""
    if now.date() == last_execution.date():
        return 0
    seconds = abs(now - last_execution).total_seconds()
    return math.ceil(seconds / SECONDS_PER_DAY)


def is_due(frequency: str | None, last_execution: Optional[datetime], now: datetime) -> bool:
    """Decide whether a recurring charge is due at ``now``.

    A charge that has never run is always due. Monthly and longer frequencies
    only fire on the first day of a qualifying month; the elapsed-days floor
    keeps a repeated run on that day from charging twice.
    """
    if last_execution is None:
        return True

    normalized = normalize_frequency(frequency)
    if normalized not in SUPPORTED_FREQUENCIES:
        return False

    days = elapsed_days(last_execution, now)
    if days < MIN_ELAPSED_DAYS[normalized]:
        return False
    if normalized in {"daily", "weekly", "biweekly"}:
        return True

    if now.day != 1:
        return False
    month_index = now.month - 1
    if normalized == "monthly":
        return True
    if normalized == "quarterly":
        return month_index % 3 == 0
    if normalized == "semiannual":
        return month_index in {0, 6}
    return month_index == 0


def is_placeholder_category(name: str | None) -> bool:
    if not name:
        return False
    return name.strip().lower() in PLACEHOLDER_CATEGORY_NAMES


def iter_candidates(categories: Iterable) -> Iterator[FixedExpenseCandidate]:
    """Yield scheduler-eligible subcategories in configuration order.

    ``categories`` are fixed categories exposing ``id``, ``name``,
    ``frequency`` and ``subcategories``.
    """
    for category in categories:
        if is_placeholder_category(category.name):
            continue
        if normalize_frequency(category.frequency) is None:
            continue
        for subcategory in category.subcategories:
            if not subcategory.is_fixed:
                continue
            amount = _coerce_amount(subcategory.limit_amount)
            if amount <= ZERO:
                continue
            yield FixedExpenseCandidate(
                category_id=category.id,
                category_name=category.name,
                subcategory_name=subcategory.name,
                amount=amount,
                frequency=normalize_frequency(category.frequency),
            )


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
