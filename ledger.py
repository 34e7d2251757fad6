from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Iterator, NamedTuple, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from errors import DataIntegrityError, StaleOccurrence
from models import (
    Account,
    Budget,
    DeadLetter,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from periods import Period, month_period
from recurrence import schedule_advance
from schemas import MonthlyStats

logger = logging.getLogger(__name__)

OCCURRENCE_SUFFIX = " (Recurring)"


class TransactionRef(NamedTuple):
    transaction_id: int
    user_id: int


@dataclass(frozen=True)
class BudgetScope:
    budget: Budget
    account: Account
    user: User


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    return -amount_cents if txn_type == TransactionType.expense else amount_cents


def _due_clause(today: date):
    return or_(
        Transaction.last_processed.is_(None),
        Transaction.next_recurring_date <= today,
    )


def _active_recurring_clause():
    return and_(
        Transaction.is_recurring.is_(True),
        Transaction.status == TransactionStatus.completed,
    )


def is_active_recurring(txn: Transaction) -> bool:
    return bool(txn.is_recurring) and txn.status == TransactionStatus.completed


class LedgerStore:
    """Read and write access to accounts, ledger entries and budgets.

    The store never commits; callers own the transaction boundary so that
    ``atomic_ledger_update`` can group its writes with the caller's checks.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_due_recurring(
        self, today: date, page_size: int = 500
    ) -> Iterator[TransactionRef]:
        last_id = 0
        while True:
            stmt = (
                select(Transaction.id, Transaction.user_id)
                .where(
                    _active_recurring_clause(),
                    _due_clause(today),
                    Transaction.id > last_id,
                )
                .order_by(Transaction.id)
                .limit(page_size)
            )
            rows = self.session.execute(stmt).all()
            for row in rows:
                yield TransactionRef(row.id, row.user_id)
            if len(rows) < page_size:
                return
            last_id = rows[-1].id

    def get_transaction(self, transaction_id: int, user_id: int) -> Optional[Transaction]:
        return self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == user_id,
            )
        )

    def atomic_ledger_update(self, template: Transaction, now: datetime) -> Transaction:
        today = now.date()
        next_date = schedule_advance(template, now)

        advanced = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == template.id,
                _active_recurring_clause(),
                _due_clause(today),
            )
            .values(last_processed=now, next_recurring_date=next_date)
            .execution_options(synchronize_session=False)
        )
        if advanced.rowcount != 1:
            raise StaleOccurrence(
                f"Transaction {template.id} is no longer an active due template"
            )

        description = (template.description or template.category) + OCCURRENCE_SUFFIX
        occurrence = Transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            type=template.type,
            amount_cents=template.amount_cents,
            date=today,
            category=template.category,
            description=description,
            status=TransactionStatus.completed,
            is_recurring=False,
            origin_transaction_id=template.id,
            occurrence_date=today,
        )
        self.session.add(occurrence)

        delta = signed_amount(template.type, template.amount_cents)
        credited = self.session.execute(
            update(Account)
            .where(
                Account.id == template.account_id,
                Account.user_id == template.user_id,
            )
            .values(balance_cents=Account.balance_cents + delta)
            .execution_options(synchronize_session=False)
        )
        if credited.rowcount != 1:
            raise DataIntegrityError(
                f"Account {template.account_id} does not belong to user "
                f"{template.user_id}"
            )

        self.session.flush()
        template.last_processed = now
        template.next_recurring_date = next_date
        return occurrence

    def aggregate_expenses(self, account_id: int, period: Period) -> int:
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.account_id == account_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.date.between(period.start, period.end),
                )
            ).scalar_one()
            or 0
        )

    def aggregate_monthly(self, user_id: int, period: Period) -> MonthlyStats:
        stmt = (
            select(
                Transaction.type,
                Transaction.category,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("n"),
            )
            .where(
                Transaction.user_id == user_id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.type, Transaction.category)
        )
        stats = MonthlyStats()
        for row in self.session.execute(stmt):
            total = int(row.total or 0)
            stats.transaction_count += int(row.n)
            if row.type == TransactionType.income:
                stats.total_income_cents += total
            elif row.type == TransactionType.expense:
                stats.total_expenses_cents += total
                stats.by_category_cents[row.category] = (
                    stats.by_category_cents.get(row.category, 0) + total
                )
        return stats

    def budgets_with_default_account(
        self, budget_id: Optional[int] = None
    ) -> list[BudgetScope]:
        stmt = (
            select(Budget, Account, User)
            .join(User, Budget.user_id == User.id)
            .join(
                Account,
                (Account.user_id == Budget.user_id) & Account.is_default.is_(True),
            )
            .order_by(Budget.id, Account.id)
        )
        if budget_id is not None:
            stmt = stmt.where(Budget.id == budget_id)
        scopes: dict[int, BudgetScope] = {}
        for budget, account, user in self.session.execute(stmt).all():
            scopes.setdefault(budget.id, BudgetScope(budget, account, user))
        return list(scopes.values())

    def update_budget_alert_timestamp(self, budget_id: int, timestamp: datetime) -> bool:
        """Stamp the alert unless one was already stamped in ``timestamp``'s month.

        Returns False when another cycle got there first.
        """
        month_start = datetime.combine(month_period(timestamp).start, time.min)
        stamped = self.session.execute(
            update(Budget)
            .where(
                Budget.id == budget_id,
                or_(
                    Budget.last_alert_sent.is_(None),
                    Budget.last_alert_sent < month_start,
                ),
            )
            .values(last_alert_sent=timestamp)
            .execution_options(synchronize_session=False)
        )
        return stamped.rowcount == 1

    def release_budget_alert(
        self, budget_id: int, stamped_at: datetime, previous: Optional[datetime]
    ) -> None:
        self.session.execute(
            update(Budget)
            .where(Budget.id == budget_id, Budget.last_alert_sent == stamped_at)
            .values(last_alert_sent=previous)
            .execution_options(synchronize_session=False)
        )

    def get_user(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def list_users(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())

    def record_dead_letter(
        self, source: str, payload: dict, error: BaseException, attempts: int
    ) -> DeadLetter:
        entry = DeadLetter(
            source=source,
            payload_json=json.dumps(payload, default=str, sort_keys=True),
            error=f"{type(error).__name__}: {error}",
            attempts=attempts,
        )
        self.session.add(entry)
        self.session.flush()
        logger.error(
            f"dead_letter: source={source} id={entry.id} attempts={attempts} "
            f"payload={entry.payload_json} error={entry.error}"
        )
        return entry

    def unresolved_dead_letters(self, limit: int = 200) -> list[DeadLetter]:
        stmt = (
            select(DeadLetter)
            .where(DeadLetter.resolved_at.is_(None))
            .order_by(DeadLetter.created_at.desc(), DeadLetter.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def resolve_dead_letter(self, dead_letter_id: int, now: datetime) -> DeadLetter:
        entry = self.session.get(DeadLetter, dead_letter_id)
        if not entry or entry.resolved_at is not None:
            raise ValueError("Dead letter not found")
        entry.resolved_at = now
        return entry
