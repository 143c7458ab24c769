from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")
TREND_WINDOW = 3


@dataclass(frozen=True)
class StatTransaction:
    amount: Decimal
    type: str
    category: str
    date: date | datetime
    note: Optional[str] = None


@dataclass
class CategorySummary:
    total: Decimal = ZERO
    count: int = 0
    percentage: Decimal = ZERO


@dataclass(frozen=True)
class LargestTransaction:
    amount: Decimal
    description: str
    category: str


@dataclass
class FinancialSummary:
    total_income: Decimal = ZERO
    total_expense: Decimal = ZERO
    balance: Decimal = ZERO
    categories: Dict[str, CategorySummary] = field(default_factory=dict)
    most_frequent_category: Optional[str] = None
    largest_transaction: Optional[LargestTransaction] = None


@dataclass(frozen=True)
class MonthlyStat:
    month: str
    income: Decimal
    expense: Decimal
    balance: Decimal


@dataclass(frozen=True)
class MonthlyStatsReport:
    months: List[MonthlyStat]
    average_income: Decimal
    average_expense: Decimal
    trend: str


def summarize(transactions: Iterable[StatTransaction]) -> FinancialSummary:
    summary = FinancialSummary()
    income_categories: set[str] = set()
    largest: Optional[StatTransaction] = None

    for txn in transactions:
        amount = _coerce_amount(txn.amount)
        if _is_income(txn):
            summary.total_income += amount
            income_categories.add(txn.category)
        else:
            summary.total_expense += amount

        category_summary = summary.categories.setdefault(txn.category, CategorySummary())
        category_summary.total += amount
        category_summary.count += 1

        if largest is None or abs(amount) > abs(_coerce_amount(largest.amount)):
            largest = txn

    summary.balance = summary.total_income - summary.total_expense

    max_count = 0
    for name, category_summary in summary.categories.items():
        total = summary.total_income if name in income_categories else summary.total_expense
        if total > ZERO:
            category_summary.percentage = category_summary.total / total * HUNDRED
        if category_summary.count > max_count:
            max_count = category_summary.count
            summary.most_frequent_category = name

    if largest is not None:
        summary.largest_transaction = LargestTransaction(
            amount=_coerce_amount(largest.amount),
            description=largest.note or "No description",
            category=largest.category,
        )
    return summary


def monthly_stats(transactions: Iterable[StatTransaction]) -> MonthlyStatsReport:
    income_by_month: Dict[str, Decimal] = {}
    expense_by_month: Dict[str, Decimal] = {}
    for txn in transactions:
        month = _month_key(txn.date)
        income_by_month.setdefault(month, ZERO)
        expense_by_month.setdefault(month, ZERO)
        if _is_income(txn):
            income_by_month[month] += _coerce_amount(txn.amount)
        else:
            expense_by_month[month] += _coerce_amount(txn.amount)

    months = [
        MonthlyStat(
            month=month,
            income=income_by_month[month],
            expense=expense_by_month[month],
            balance=income_by_month[month] - expense_by_month[month],
        )
        for month in sorted(income_by_month)
    ]
    if not months:
        return MonthlyStatsReport(months=[], average_income=ZERO, average_expense=ZERO, trend="stable")

    count = Decimal(len(months))
    average_income = sum((month.income for month in months), ZERO) / count
    average_expense = sum((month.expense for month in months), ZERO) / count

    trend = "stable"
    if len(months) >= TREND_WINDOW:
        window = months[-TREND_WINDOW:]
        delta = window[-1].balance - window[0].balance
        if delta > ZERO:
            trend = "up"
        elif delta < ZERO:
            trend = "down"

    return MonthlyStatsReport(
        months=months,
        average_income=average_income,
        average_expense=average_expense,
        trend=trend,
    )


def _is_income(txn: StatTransaction) -> bool:
    return txn.type.strip().lower() == "income"


def _month_key(value: date | datetime) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
