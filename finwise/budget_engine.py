from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional

ZERO = Decimal("0")


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    category: Optional[str] = None
    subcategory: Optional[str] = None


@dataclass(frozen=True)
class BudgetEvaluation:
    category_id: str
    category: str
    subcategory: str
    limit: Decimal
    current_value: Decimal
    remaining: Decimal
    status: str


def evaluate_subcategory_budgets(
    categories: Iterable,
    transactions: Iterable[Transaction],
    start_date: date,
    end_date: date,
) -> List[BudgetEvaluation]:
    if start_date > end_date:
        raise ValueError("start_date must be on or before end_date.")

    filtered = [
        txn
        for txn in transactions
        if start_date <= _as_date(txn.date) <= end_date
    ]

    evaluations: List[BudgetEvaluation] = []
    for category in categories:
        for subcategory in category.subcategories:
            limit = _coerce_amount(subcategory.limit_amount)
            if limit <= ZERO:
                continue
            current_value = _sum_expenses(
                filtered,
                category=category.name,
                subcategory=subcategory.name,
            )
            evaluations.append(
                BudgetEvaluation(
                    category_id=category.id,
                    category=category.name,
                    subcategory=subcategory.name,
                    limit=limit,
                    current_value=current_value,
                    remaining=limit - current_value,
                    status="ok" if current_value <= limit else "over",
                )
            )
    return evaluations


def _sum_expenses(
    transactions: Iterable[Transaction],
    *,
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
) -> Decimal:
    total = ZERO
    for txn in transactions:
        txn_type = txn.type.strip().lower()
        if txn_type != "expense":
            continue
        if category is not None and txn.category != category:
            continue
        if subcategory is not None and txn.subcategory != subcategory:
            continue
        total += _coerce_amount(txn.amount)
    return total


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
