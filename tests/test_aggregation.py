from datetime import date, datetime
from zoneinfo import ZoneInfo

from aggregation import (
    CHART_PALETTE,
    clean_amount,
    compute_budget_stats,
    compute_category_spend,
    counter_drift,
    percentage_used,
    status_for,
)
from models import (
    BudgetCategory,
    BudgetPeriod,
    BudgetStatus,
    DirectExpense,
    LinkMode,
    ShoppingItem,
)


def january() -> BudgetPeriod:
    return BudgetPeriod(
        id=1,
        family_id="fam-1",
        name="January",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
    )


def category(cid: int, name: str, limit_cents: int = 0, spent_cents: int = 0):
    return BudgetCategory(
        id=cid,
        family_id="fam-1",
        budget_period_id=1,
        name=name,
        limit_cents=limit_cents,
        spent_cents=spent_cents,
    )


def expense(amount, name, created_at, category_id=None) -> DirectExpense:
    return DirectExpense(
        family_id="fam-1",
        description="",
        amount_cents=amount,
        budget_category_name=name,
        budget_category_id=category_id,
        created_by="u",
        created_at=created_at,
    )


def item(price, qty, name, created_at, bought=True, category_id=None) -> ShoppingItem:
    return ShoppingItem(
        family_id="fam-1",
        name="thing",
        quantity=qty,
        estimated_price_cents=price,
        is_bought=bought,
        budget_category_name=name,
        budget_category_id=category_id,
        created_at=created_at,
    )


def test_mixed_records_inside_and_outside_window() -> None:
    groceries = category(10, "Groceries", limit_cents=10000)
    expenses = [
        expense(2000, "Groceries", datetime(2024, 1, 5)),
        expense(9999, "Groceries", datetime(2024, 2, 1)),
        expense(700, "Utilities", datetime(2024, 1, 5)),
    ]
    items = [
        item(350, 2, "Groceries", datetime(2024, 1, 10)),
        item(350, 2, "Groceries", datetime(2024, 1, 10), bought=False),
    ]

    assert compute_category_spend(groceries, january(), expenses, items) == 2700


def test_stored_counter_is_ignored() -> None:
    groceries = category(10, "Groceries", spent_cents=123456)
    expenses = [expense(500, "Groceries", datetime(2024, 1, 20))]

    computed = compute_category_spend(groceries, january(), expenses, [])
    assert computed == 500
    assert counter_drift(groceries, computed) == 123456 - 500


def test_window_includes_both_boundary_days() -> None:
    groceries = category(10, "Groceries")
    expenses = [
        expense(100, "Groceries", datetime(2024, 1, 1, 0, 0)),
        expense(200, "Groceries", datetime(2024, 1, 31, 23, 59, 59)),
        expense(400, "Groceries", datetime(2023, 12, 31, 23, 59)),
    ]
    assert compute_category_spend(groceries, january(), expenses, []) == 300


def test_timezone_moves_late_utc_records_into_the_next_local_day() -> None:
    groceries = category(10, "Groceries")
    # 23:30 UTC on the last day is already February 1st in Berlin.
    expenses = [expense(100, "Groceries", datetime(2024, 1, 31, 23, 30))]

    assert compute_category_spend(groceries, january(), expenses, []) == 100
    assert (
        compute_category_spend(
            groceries, january(), expenses, [], tz=ZoneInfo("Europe/Berlin")
        )
        == 0
    )


def test_link_modes_after_rename() -> None:
    renamed = category(10, "Food")
    expenses = [
        expense(1000, "Groceries", datetime(2024, 1, 3), category_id=10),
        expense(50, "Food", datetime(2024, 1, 4)),
        expense(70, "Food", datetime(2024, 1, 4), category_id=99),
    ]

    assert compute_category_spend(renamed, january(), expenses, []) == 1050
    assert (
        compute_category_spend(
            renamed, january(), expenses, [], link_mode=LinkMode.by_name
        )
        == 120
    )


def test_dirty_amounts_are_clamped() -> None:
    assert clean_amount(None) == 0
    assert clean_amount(float("nan")) == 0
    assert clean_amount(float("inf")) == 0
    assert clean_amount(-5) == 0
    assert clean_amount(True) == 0
    assert clean_amount(42) == 42

    groceries = category(10, "Groceries")
    items = [
        item(float("nan"), 2, "Groceries", datetime(2024, 1, 5)),
        item(300, None, "Groceries", datetime(2024, 1, 5)),
        item(300, 1, "Groceries", None),
        item(250, 2, "Groceries", datetime(2024, 1, 5)),
    ]
    assert compute_category_spend(groceries, january(), [], items) == 500


def test_percentage_and_status_thresholds() -> None:
    assert percentage_used(500, 0) == 0.0
    assert percentage_used(500, -10) == 0.0
    assert percentage_used(float("nan"), 1000) == 0.0
    assert percentage_used(250, 1000) == 25.0

    assert status_for(79.99) == BudgetStatus.normal
    assert status_for(80.0) == BudgetStatus.warning
    assert status_for(99.9) == BudgetStatus.warning
    assert status_for(100.0) == BudgetStatus.critical
    assert status_for(250.0) == BudgetStatus.critical


def test_budget_stats_totals_rows_and_chart() -> None:
    categories = [
        category(1, "Groceries", limit_cents=10000),
        category(2, "Utilities", limit_cents=5000),
        category(3, "Fun", limit_cents=0),
        category(4, "Transport", limit_cents=2000),
    ]
    expenses = [
        expense(8500, "Groceries", datetime(2024, 1, 2)),
        expense(300, "Fun", datetime(2024, 1, 2)),
        expense(2500, "Transport", datetime(2024, 1, 3)),
    ]

    stats = compute_budget_stats(categories, january(), expenses, [])

    assert stats.total_limit_cents == 17000
    assert stats.total_spent_cents == 11300
    assert stats.remaining_cents == 5700
    assert stats.status == BudgetStatus.normal
    by_name = {row.name: row for row in stats.categories}
    assert by_name["Groceries"].status == BudgetStatus.warning
    assert by_name["Utilities"].spent_cents == 0
    assert by_name["Fun"].percentage_used == 0.0
    assert by_name["Transport"].status == BudgetStatus.critical
    assert by_name["Transport"].remaining_cents == -500

    assert [(s.name, s.value) for s in stats.chart] == [
        ("Groceries", 8500),
        ("Fun", 300),
        ("Transport", 2500),
    ]
    assert [s.color for s in stats.chart] == list(CHART_PALETTE[:3])
    assert stats.as_dict()["categories"][0]["status"] == "warning"


def test_budget_stats_for_empty_period() -> None:
    stats = compute_budget_stats([], january(), [], [])
    assert stats.total_limit_cents == 0
    assert stats.percentage_used == 0.0
    assert stats.status == BudgetStatus.normal
    assert stats.chart == []
