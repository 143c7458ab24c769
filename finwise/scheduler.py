from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from finwise.categories import CategoryStore
from finwise.fixed_expenses import FixedExpenseCandidate, is_due, iter_candidates
from finwise.schema import fixed_expense_logs, transactions, users

logger = logging.getLogger(__name__)


class NotAuthenticated(PermissionError):
    """Raised when the scheduler is invoked without a user."""


class FixedExpenseError(RuntimeError):
    """Raised when a single fixed-expense charge cannot be applied."""


class ExecutionConflict(FixedExpenseError):
    """Raised when the execution log changed after it was read."""


class UserRecordMissing(FixedExpenseError):
    """Raised when the user to debit has no record."""


@dataclass(frozen=True)
class SchedulerResult:
    processed_count: int
    applied: tuple[FixedExpenseCandidate, ...] = ()


def process_fixed_expenses(
    engine: Engine,
    user_id: str | None,
    category_store: CategoryStore,
    now: datetime | None = None,
) -> SchedulerResult:
    """Charge every fixed subcategory of ``user_id`` that is due at ``now``.

    Each charge runs in its own database transaction that re-reads the
    execution log, decides due-ness and writes the expense, the balance debit
    and the log together. A charge that fails is logged and left for the next
    run; the remaining subcategories are still processed. A failure reading
    the configuration propagates.
    """
    if not user_id:
        raise NotAuthenticated("User not authenticated.")
    now = now or datetime.now()

    with engine.begin() as conn:
        config = category_store.load(conn, user_id, use_cache=False)
    if config is None:
        return SchedulerResult(processed_count=0)

    applied: list[FixedExpenseCandidate] = []
    for candidate in iter_candidates(config.fixed):
        try:
            charged = _process_candidate(engine, user_id, candidate, now)
        except (FixedExpenseError, SQLAlchemyError) as exc:
            logger.warning(
                "Fixed expense %s/%s not applied for user %s: %s",
                candidate.category_name,
                candidate.subcategory_name,
                user_id,
                exc,
            )
            continue
        if charged:
            logger.info(
                "Applied fixed expense %s/%s (%s) for user %s",
                candidate.category_name,
                candidate.subcategory_name,
                candidate.amount,
                user_id,
            )
            applied.append(candidate)

    return SchedulerResult(processed_count=len(applied), applied=tuple(applied))


def apply_fixed_expense(
    conn: Connection,
    user_id: str,
    candidate: FixedExpenseCandidate,
    now: datetime,
    observed_last_execution: datetime | None,
) -> Decimal:
    """Write the expense, debit the balance and record the run.

    Must be called inside a transaction; returns the new balance. The balance
    may go negative.
    """
    _insert_transaction(conn, user_id, candidate, now)
    new_balance = _debit_balance(conn, user_id, candidate.amount, now)
    _write_execution_log(conn, user_id, candidate, now, observed_last_execution)
    return new_balance


def read_last_execution(
    conn: Connection, user_id: str, category_id: str, subcategory_name: str
) -> datetime | None:
    return conn.execute(
        select(fixed_expense_logs.c.last_execution).where(
            fixed_expense_logs.c.user_id == user_id,
            fixed_expense_logs.c.category_id == category_id,
            fixed_expense_logs.c.subcategory_name == subcategory_name,
        )
    ).scalar_one_or_none()


def _process_candidate(
    engine: Engine, user_id: str, candidate: FixedExpenseCandidate, now: datetime
) -> bool:
    with engine.begin() as conn:
        last_execution = read_last_execution(
            conn, user_id, candidate.category_id, candidate.subcategory_name
        )
        if not is_due(candidate.frequency, last_execution, now):
            return False
        apply_fixed_expense(conn, user_id, candidate, now, last_execution)
    return True


def _insert_transaction(
    conn: Connection, user_id: str, candidate: FixedExpenseCandidate, now: datetime
) -> int:
    return conn.execute(
        insert(transactions)
        .values(
            user_id=user_id,
            type="expense",
            amount=candidate.amount,
            category=candidate.category_name,
            subcategory=candidate.subcategory_name,
            date=now,
            paid=True,
            fixed=True,
            reminder=False,
            ignore=False,
            note=f"Fixed expense: {candidate.subcategory_name}",
            created_at=now,
            updated_at=now,
        )
        .returning(transactions.c.id)
    ).scalar_one()


def _debit_balance(conn: Connection, user_id: str, amount: Decimal, now: datetime) -> Decimal:
    new_balance = conn.execute(
        update(users)
        .where(users.c.id == user_id)
        .values(balance=users.c.balance - amount, updated_at=now)
        .returning(users.c.balance)
    ).scalar_one_or_none()
    if new_balance is None:
        raise UserRecordMissing(f"User {user_id} has no record to debit.")
    return new_balance


def _write_execution_log(
    conn: Connection,
    user_id: str,
    candidate: FixedExpenseCandidate,
    now: datetime,
    observed_last_execution: datetime | None,
) -> None:
    if observed_last_execution is None:
        try:
            conn.execute(
                insert(fixed_expense_logs).values(
                    user_id=user_id,
                    category_id=candidate.category_id,
                    subcategory_name=candidate.subcategory_name,
                    last_execution=now,
                )
            )
        except IntegrityError as exc:
            raise ExecutionConflict("Fixed expense already recorded by another run.") from exc
        return

    result = conn.execute(
        update(fixed_expense_logs)
        .where(
            fixed_expense_logs.c.user_id == user_id,
            fixed_expense_logs.c.category_id == candidate.category_id,
            fixed_expense_logs.c.subcategory_name == candidate.subcategory_name,
            fixed_expense_logs.c.last_execution == observed_last_execution,
        )
        .values(last_execution=now)
    )
    if result.rowcount != 1:
        raise ExecutionConflict("Fixed expense log changed since it was read.")
