from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import func, select, update

from dispatcher import RecurringDispatcher
from errors import DataIntegrityError, StaleOccurrence, TaskTimeout
from ledger import LedgerStore, signed_amount
from models import (
    Account,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from processor import OccurrenceOutcome, OccurrenceProcessor
from queue_transport import MemoryQueue
from schemas import RecurringTask
from throttle import PerUserThrottle


def _seed_account(session, balance_cents: int = 100_000) -> Account:
    user = User(email="ana@example.com", name="Ana")
    session.add(user)
    session.flush()
    account = Account(
        user_id=user.id, name="Checking", balance_cents=balance_cents, is_default=True
    )
    session.add(account)
    session.flush()
    return account


def _recurring(account: Account, **overrides) -> Transaction:
    fields = dict(
        user_id=account.user_id,
        account_id=account.id,
        type=TransactionType.expense,
        amount_cents=5_000,
        date=date(2024, 4, 14),
        category="subscriptions",
        description="Gym membership",
        status=TransactionStatus.completed,
        is_recurring=True,
        recurring_interval=RecurringInterval.monthly,
        next_recurring_date=None,
        last_processed=None,
    )
    fields.update(overrides)
    return Transaction(**fields)


def _entries(session, account_id: int) -> list[Transaction]:
    return list(
        session.scalars(
            select(Transaction)
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.id)
        ).all()
    )


def _collecting_queue(processor, now, outcomes, clock):
    def consume(task):
        outcome = processor.process(task, now=now)
        outcomes.append(outcome)
        return outcome

    return MemoryQueue(
        consume,
        clock=clock,
        sleep=clock.sleep,
        throttle=PerUserThrottle(limit=10, window_secs=60, clock=clock),
    )


def test_end_to_end_monthly_expense(session_factory, clock):
    now = datetime(2024, 5, 15, 9, 30)
    with session_factory() as session:
        account = _seed_account(session, balance_cents=100_000)
        template = _recurring(
            account, next_recurring_date=now.date() - timedelta(days=1)
        )
        session.add(template)
        session.commit()
        account_id, template_id = account.id, template.id

    outcomes: list[OccurrenceOutcome] = []
    queue = _collecting_queue(OccurrenceProcessor(session_factory), now, outcomes, clock)
    assert RecurringDispatcher(session_factory, queue).run_cycle(now) == 1
    queue.drain()

    assert outcomes == [OccurrenceOutcome.posted]
    with session_factory() as session:
        account = session.get(Account, account_id)
        assert account.balance_cents == 95_000

        template = session.get(Transaction, template_id)
        assert template.last_processed == now
        assert template.next_recurring_date == date(2024, 6, 15)

        generated = session.scalars(
            select(Transaction).where(Transaction.origin_transaction_id == template_id)
        ).one()
        assert generated.type == TransactionType.expense
        assert generated.amount_cents == 5_000
        assert generated.date == now.date()
        assert generated.category == "subscriptions"
        assert generated.description == "Gym membership (Recurring)"
        assert generated.is_recurring is False
        assert generated.recurring_interval is None


def test_redelivery_posts_exactly_once(session_factory, clock):
    now = datetime(2024, 5, 15, 9, 30)
    with session_factory() as session:
        account = _seed_account(session)
        template = _recurring(account)
        session.add(template)
        session.commit()
        task = RecurringTask(transaction_id=template.id, user_id=account.user_id)
        account_id = account.id

    outcomes: list[OccurrenceOutcome] = []
    queue = _collecting_queue(OccurrenceProcessor(session_factory), now, outcomes, clock)
    queue.enqueue(task)
    queue.enqueue(task)
    queue.drain()

    assert outcomes == [OccurrenceOutcome.posted, OccurrenceOutcome.not_due]
    with session_factory() as session:
        assert session.get(Account, account_id).balance_cents == 95_000
        assert len(_entries(session, account_id)) == 2


def test_missing_transaction_is_a_no_op(session_factory):
    with session_factory() as session:
        account = _seed_account(session)
        session.commit()
        user_id = account.user_id

    processor = OccurrenceProcessor(session_factory)
    outcome = processor.process(RecurringTask(transaction_id=999, user_id=user_id))
    assert outcome == OccurrenceOutcome.not_found


def test_transaction_of_another_user_is_not_found(session_factory):
    with session_factory() as session:
        account = _seed_account(session)
        template = _recurring(account)
        session.add(template)
        session.commit()
        template_id = template.id

    outcome = OccurrenceProcessor(session_factory).process(
        RecurringTask(transaction_id=template_id, user_id=424242),
        now=datetime(2024, 5, 15, 9, 0),
    )
    assert outcome == OccurrenceOutcome.not_found


def test_income_occurrence_increases_balance(session_factory):
    now = datetime(2024, 5, 1, 6, 0)
    with session_factory() as session:
        account = _seed_account(session, balance_cents=0)
        template = _recurring(
            account,
            type=TransactionType.income,
            amount_cents=250_000,
            category="salary",
            description=None,
            recurring_interval=RecurringInterval.fortnightly,
        )
        session.add(template)
        session.commit()
        task = RecurringTask(transaction_id=template.id, user_id=account.user_id)
        account_id, template_id = account.id, template.id

    assert OccurrenceProcessor(session_factory).process(task, now=now) == (
        OccurrenceOutcome.posted
    )
    with session_factory() as session:
        assert session.get(Account, account_id).balance_cents == 250_000
        template = session.get(Transaction, template_id)
        assert template.next_recurring_date == date(2024, 5, 15)
        generated = _entries(session, account_id)[-1]
        assert generated.description == "salary (Recurring)"


def test_balance_matches_ledger_after_every_commit(session_factory, clock):
    with session_factory() as session:
        account = _seed_account(session, balance_cents=0)
        salary = _recurring(
            account,
            type=TransactionType.income,
            amount_cents=200_000,
            category="salary",
            recurring_interval=RecurringInterval.weekly,
        )
        coffee = _recurring(
            account,
            amount_cents=475,
            category="food",
            recurring_interval=RecurringInterval.daily,
        )
        rent = _recurring(
            account,
            amount_cents=123_456,
            category="rent",
            recurring_interval=RecurringInterval.monthly,
        )
        session.add_all([salary, coffee, rent])
        session.flush()
        # Opening balance reflects the templates themselves.
        account.balance_cents = sum(
            signed_amount(t.type, t.amount_cents) for t in (salary, coffee, rent)
        )
        session.commit()
        account_id = account.id

    processor = OccurrenceProcessor(session_factory)
    posted = 0
    start = datetime(2024, 1, 25, 7, 0)
    for offset in range(40):
        now = start + timedelta(days=offset)
        outcomes: list[OccurrenceOutcome] = []
        queue = _collecting_queue(processor, now, outcomes, clock)
        RecurringDispatcher(session_factory, queue).run_cycle(now)
        queue.drain()
        posted += outcomes.count(OccurrenceOutcome.posted)

        with session_factory() as session:
            balance = session.get(Account, account_id).balance_cents
            entries = _entries(session, account_id)
            assert balance == sum(signed_amount(e.type, e.amount_cents) for e in entries)

    # 40 coffees, 6 weekly salaries, 2 rents (Jan 25 -> Feb 25).
    assert posted == 40 + 6 + 2


def test_stale_template_is_rejected_inside_transaction(session_factory):
    now = datetime(2024, 5, 15, 9, 0)
    with session_factory() as session:
        account = _seed_account(session)
        template = _recurring(account)
        session.add(template)
        session.commit()
        task = RecurringTask(transaction_id=template.id, user_id=account.user_id)

    with session_factory() as session:
        store = LedgerStore(session)
        stale = store.get_transaction(task.transaction_id, task.user_id)

        # A concurrent delivery wins the race and commits first.
        assert OccurrenceProcessor(session_factory).process(task, now=now) == (
            OccurrenceOutcome.posted
        )

        with pytest.raises(StaleOccurrence):
            store.atomic_ledger_update(stale, now)
        session.rollback()

    with session_factory() as session:
        count = session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.origin_transaction_id == task.transaction_id
            )
        )
        assert count == 1


def test_timeout_rolls_back_all_writes(session_factory):
    now = datetime(2024, 5, 15, 9, 0)
    with session_factory() as session:
        account = _seed_account(session, balance_cents=100_000)
        template = _recurring(account)
        session.add(template)
        session.commit()
        task = RecurringTask(transaction_id=template.id, user_id=account.user_id)
        account_id, template_id = account.id, template.id

    ticks = iter([0.0, 120.0])
    processor = OccurrenceProcessor(
        session_factory, timeout_secs=30, clock=lambda: next(ticks)
    )
    with pytest.raises(TaskTimeout):
        processor.process(task, now=now)

    with session_factory() as session:
        assert session.get(Account, account_id).balance_cents == 100_000
        template = session.get(Transaction, template_id)
        assert template.last_processed is None
        assert template.next_recurring_date is None
        assert len(_entries(session, account_id)) == 1


def test_missing_interval_is_a_data_integrity_error(session_factory):
    with session_factory() as session:
        account = _seed_account(session)
        template = _recurring(account, recurring_interval=None)
        session.add(template)
        session.commit()
        task = RecurringTask(transaction_id=template.id, user_id=account.user_id)
        account_id = account.id

    with pytest.raises(DataIntegrityError):
        OccurrenceProcessor(session_factory).process(
            task, now=datetime(2024, 5, 15, 9, 0)
        )
    with session_factory() as session:
        assert session.get(Account, account_id).balance_cents == 100_000


def test_scanner_pages_only_due_completed_recurring(session_factory):
    today = date(2024, 5, 15)
    with session_factory() as session:
        account = _seed_account(session)
        due = [
            _recurring(account),
            _recurring(account, last_processed=datetime(2024, 4, 15, 9, 0),
                       next_recurring_date=today),
            _recurring(account, last_processed=datetime(2024, 3, 1, 9, 0),
                       next_recurring_date=date(2024, 4, 1)),
        ]
        skipped = [
            _recurring(account, status=TransactionStatus.pending),
            _recurring(account, status=TransactionStatus.cancelled),
            _recurring(account, is_recurring=False, recurring_interval=None),
            _recurring(account, last_processed=datetime(2024, 5, 14, 9, 0),
                       next_recurring_date=date(2024, 6, 14)),
        ]
        session.add_all(due + skipped)
        session.commit()
        expected = sorted(t.id for t in due)

        refs = list(LedgerStore(session).find_due_recurring(today, page_size=1))

    assert [ref.transaction_id for ref in refs] == expected
    assert {ref.user_id for ref in refs} == {account.user_id}


@pytest.mark.parametrize(
    "overrides",
    [
        {"status": TransactionStatus.cancelled},
        {"status": TransactionStatus.pending},
        {"is_recurring": False},
    ],
)
def test_template_edited_away_after_dispatch_is_discarded(session_factory, overrides):
    now = datetime(2024, 5, 15, 9, 0)
    with session_factory() as session:
        account = _seed_account(session, balance_cents=100_000)
        template = _recurring(account)
        session.add(template)
        session.commit()
        task = RecurringTask(transaction_id=template.id, user_id=account.user_id)
        account_id = account.id

        for name, value in overrides.items():
            setattr(template, name, value)
        session.commit()

    outcome = OccurrenceProcessor(session_factory).process(task, now=now)

    assert outcome == OccurrenceOutcome.not_found
    with session_factory() as session:
        assert session.get(Account, account_id).balance_cents == 100_000
        assert len(_entries(session, account_id)) == 1


def test_template_cancelled_mid_transaction_is_not_posted(session_factory):
    now = datetime(2024, 5, 15, 9, 0)
    with session_factory() as session:
        account = _seed_account(session, balance_cents=100_000)
        template = _recurring(account)
        session.add(template)
        session.commit()
        account_id, template_id = account.id, template.id

    with session_factory() as session:
        store = LedgerStore(session)
        loaded = store.get_transaction(template_id, account.user_id)
        session.execute(
            update(Transaction)
            .where(Transaction.id == template_id)
            .values(status=TransactionStatus.cancelled)
        )
        with pytest.raises(StaleOccurrence):
            store.atomic_ledger_update(loaded, now)
        session.rollback()

    with session_factory() as session:
        assert session.get(Account, account_id).balance_cents == 100_000
