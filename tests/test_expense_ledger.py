import threading
from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

import services
from aggregation import compute_category_spend
from database import Base, make_engine, make_session_factory
from models import BudgetCategory, BudgetPeriod, DirectExpense
from notifications import NotificationFailure
from services import (
    CategoryNotFound,
    ExpenseLedger,
    InvalidArgument,
    NotFound,
    RetryPolicy,
    TransactionConflict,
)


FAMILY = "fam-1"
TODAY = date(2024, 1, 15)
NOW = datetime(2024, 1, 15, 12, 0)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def notify(self, title: str, body: str) -> None:
        self.sent.append((title, body))


class BrokenNotifier:
    def notify(self, title: str, body: str) -> None:
        raise NotificationFailure("push service down")


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_january(session, *, limit_cents=50000):
    period = BudgetPeriod(
        family_id=FAMILY,
        name="January",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        created_at=datetime(2023, 12, 28),
    )
    session.add(period)
    session.flush()
    category = BudgetCategory(
        family_id=FAMILY,
        budget_period_id=period.id,
        name="Groceries",
        limit_cents=limit_cents,
        spent_cents=0,
    )
    session.add(category)
    session.commit()
    return period, category


def make_ledger(session, **kwargs):
    kwargs.setdefault("notifier", RecordingNotifier())
    kwargs.setdefault(
        "retry_policy", RetryPolicy(max_attempts=5, base_delay_secs=0.0)
    )
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("sleep", lambda _secs: None)
    return ExpenseLedger(session, **kwargs)


def test_direct_expense_updates_counter_and_aggregate() -> None:
    session = make_session()
    period, category = seed_january(session)
    notifier = RecordingNotifier()
    ledger = make_ledger(session, notifier=notifier)

    expense = ledger.record_direct_expense(
        FAMILY, "Groceries", 12000, "Weekly shop", "user-7", today=TODAY
    )

    assert expense.id is not None
    assert expense.budget_category_name == "Groceries"
    assert expense.budget_category_id == category.id
    assert expense.created_by == "user-7"
    assert session.get(BudgetCategory, category.id).spent_cents == 12000

    expenses = ledger.list_direct_expenses(FAMILY)
    assert compute_category_spend(category, period, expenses, []) == 12000

    assert notifier.sent == [
        (
            "Direct Expense Added",
            "user-7 added an expense: Weekly shop (120.00) to Groceries",
        )
    ]


@pytest.mark.parametrize(
    "family_id, category_name, amount_cents",
    [
        ("", "Groceries", 100),
        ("   ", "Groceries", 100),
        (FAMILY, "", 100),
        (FAMILY, " Groceries", 100),
        (FAMILY, "Groceries ", 100),
        (FAMILY, "Groceries", 0),
        (FAMILY, "Groceries", -50),
    ],
)
def test_invalid_arguments_are_rejected_before_any_write(
    family_id, category_name, amount_cents
) -> None:
    session = make_session()
    _, category = seed_january(session)
    ledger = make_ledger(session)

    with pytest.raises(InvalidArgument):
        ledger.record_direct_expense(
            family_id, category_name, amount_cents, "x", "user-1", today=TODAY
        )

    assert session.scalar(select(func.count(DirectExpense.id))) == 0
    assert session.get(BudgetCategory, category.id).spent_cents == 0


def test_unknown_category_is_reported_with_suggestion() -> None:
    session = make_session()
    seed_january(session)
    ledger = make_ledger(session)

    with pytest.raises(CategoryNotFound) as excinfo:
        ledger.record_direct_expense(
            FAMILY, "Grocerys", 500, "Milk", "user-1", today=TODAY
        )

    assert excinfo.value.suggestion == "Groceries"
    assert session.scalar(select(func.count(DirectExpense.id))) == 0


def test_failed_notification_does_not_undo_the_expense() -> None:
    session = make_session()
    _, category = seed_january(session)
    ledger = make_ledger(session, notifier=BrokenNotifier())

    expense = ledger.record_direct_expense(
        FAMILY, "Groceries", 999, "Bread", "", today=TODAY
    )

    assert expense.id is not None
    assert session.get(BudgetCategory, category.id).spent_cents == 999


def test_deleting_an_expense_leaves_the_counter_alone() -> None:
    session = make_session()
    _, category = seed_january(session)
    ledger = make_ledger(session)
    expense = ledger.record_direct_expense(
        FAMILY, "Groceries", 2500, "Fruit", "user-1", today=TODAY
    )

    ledger.delete_direct_expense(FAMILY, expense.id)

    assert ledger.list_direct_expenses(FAMILY) == []
    assert session.get(BudgetCategory, category.id).spent_cents == 2500
    with pytest.raises(NotFound):
        ledger.delete_direct_expense(FAMILY, expense.id)


def test_list_direct_expenses_newest_first_and_filtered() -> None:
    session = make_session()
    period, _ = seed_january(session)
    session.add(
        BudgetCategory(
            family_id=FAMILY,
            budget_period_id=period.id,
            name="Utilities",
            limit_cents=0,
            spent_cents=0,
        )
    )
    session.commit()
    times = iter(
        [datetime(2024, 1, 2), datetime(2024, 1, 3), datetime(2024, 1, 4)]
    )
    ledger = make_ledger(session, clock=lambda: next(times))

    ledger.record_direct_expense(FAMILY, "Groceries", 100, "a", "u", today=TODAY)
    ledger.record_direct_expense(FAMILY, "Utilities", 200, "b", "u", today=TODAY)
    ledger.record_direct_expense(FAMILY, "Groceries", 300, "c", "u", today=TODAY)

    all_rows = ledger.list_direct_expenses(FAMILY)
    assert [e.description for e in all_rows] == ["c", "b", "a"]
    groceries = ledger.list_direct_expenses(FAMILY, "Groceries")
    assert [e.description for e in groceries] == ["c", "a"]


def test_concurrent_writer_between_read_and_write_is_retried(
    tmp_path, monkeypatch
) -> None:
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)
    with factory() as setup:
        _, category = seed_january(setup)
        category_id = category.id

    original_read = services.read_counter
    calls = {"count": 0}

    def racing_read(session, cid):
        state = original_read(session, cid)
        calls["count"] += 1
        if calls["count"] == 1:
            with factory() as other:
                make_ledger(other).record_direct_expense(
                    FAMILY, "Groceries", 500, "Snacks", "user-2", today=TODAY
                )
        return state

    monkeypatch.setattr(services, "read_counter", racing_read)
    delays: list[float] = []
    with factory() as session:
        ledger = make_ledger(
            session,
            retry_policy=RetryPolicy(max_attempts=3, base_delay_secs=0.01),
            sleep=delays.append,
        )
        ledger.record_direct_expense(
            FAMILY, "Groceries", 300, "Milk", "user-1", today=TODAY
        )

    with factory() as check:
        assert check.get(BudgetCategory, category_id).spent_cents == 800
        assert check.scalar(select(func.count(DirectExpense.id))) == 2
    assert delays == [0.01]


def test_gives_up_with_transaction_conflict_after_max_attempts(monkeypatch) -> None:
    session = make_session()
    _, category = seed_january(session)
    monkeypatch.setattr(
        services, "compare_and_swap_counter", lambda *args, **kwargs: False
    )
    delays: list[float] = []
    ledger = make_ledger(
        session,
        retry_policy=RetryPolicy(
            max_attempts=4, base_delay_secs=0.1, max_delay_secs=0.3
        ),
        sleep=delays.append,
    )

    with pytest.raises(TransactionConflict):
        ledger.record_direct_expense(
            FAMILY, "Groceries", 100, "Eggs", "user-1", today=TODAY
        )

    assert delays == [0.1, 0.2, 0.3]
    assert session.scalar(select(func.count(DirectExpense.id))) == 0
    assert session.get(BudgetCategory, category.id).spent_cents == 0


def test_parallel_writers_never_lose_an_update(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'parallel.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as setup:
        _, category = seed_january(setup)
        category_id = category.id

    errors: list[Exception] = []

    def writer(n: int) -> None:
        try:
            with factory() as session:
                make_ledger(
                    session,
                    retry_policy=RetryPolicy(
                        max_attempts=200, base_delay_secs=0.001, max_delay_secs=0.01
                    ),
                    sleep=lambda secs: threading.Event().wait(secs),
                ).record_direct_expense(
                    FAMILY, "Groceries", 250, f"item {n}", f"user-{n}", today=TODAY
                )
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    with factory() as check:
        assert check.get(BudgetCategory, category_id).spent_cents == 8 * 250
        assert check.scalar(select(func.count(DirectExpense.id))) == 8


def test_retry_policy_backoff_is_bounded() -> None:
    policy = RetryPolicy(max_attempts=10, base_delay_secs=0.05, max_delay_secs=0.3)
    assert [policy.delay_for(n) for n in range(1, 6)] == [0.05, 0.1, 0.2, 0.3, 0.3]
