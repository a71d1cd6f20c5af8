from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from models import (
    BudgetCategory,
    BudgetPeriod,
    BudgetStatus,
    DirectExpense,
    LinkMode,
    ShoppingItem,
)


Number = Union[int, float]

WARNING_THRESHOLD = 80.0
CRITICAL_THRESHOLD = 100.0

CHART_PALETTE = (
    "#0a7ea4",
    "#4CAF50",
    "#FF9800",
    "#F44336",
    "#9C27B0",
    "#00BCD4",
    "#FFC107",
)


def clean_amount(value: Optional[Number]) -> Number:
    """Clamp missing, non-finite and negative amounts to zero."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    if value < 0:
        return 0
    return value


def percentage_used(spent: Number, limit: Number) -> float:
    spent = clean_amount(spent)
    limit = clean_amount(limit)
    if limit <= 0:
        return 0.0
    return spent / limit * 100


def status_for(percentage: float) -> BudgetStatus:
    if percentage >= CRITICAL_THRESHOLD:
        return BudgetStatus.critical
    if percentage >= WARNING_THRESHOLD:
        return BudgetStatus.warning
    return BudgetStatus.normal


def _record_day(created_at: Optional[datetime], tz: Optional[ZoneInfo]) -> Optional[date]:
    if created_at is None:
        return None
    if tz is None:
        return created_at.date()
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at.astimezone(tz).date()


def _in_window(
    created_at: Optional[datetime], period: BudgetPeriod, tz: Optional[ZoneInfo]
) -> bool:
    day = _record_day(created_at, tz)
    if day is None:
        return False
    return period.start_date <= day <= period.end_date


def is_linked(
    record: Union[DirectExpense, ShoppingItem],
    category: BudgetCategory,
    link_mode: LinkMode = LinkMode.by_id,
) -> bool:
    """Whether an expense-like record belongs to ``category``.

    ``by_name`` compares the stored category name only. ``by_id`` trusts the
    captured category id when the record has one and falls back to the name
    for records written before ids were captured.
    """
    if link_mode == LinkMode.by_id and record.budget_category_id is not None:
        return record.budget_category_id == category.id
    return record.budget_category_name == category.name


def compute_category_spend(
    category: BudgetCategory,
    period: BudgetPeriod,
    direct_expenses: Iterable[DirectExpense],
    shopping_items: Iterable[ShoppingItem],
    *,
    link_mode: LinkMode = LinkMode.by_id,
    tz: Optional[ZoneInfo] = None,
) -> Number:
    """Recompute a category's spend from raw records inside the period window.

    Independent of ``category.spent_cents``: only direct expenses and bought
    shopping items dated within ``[start_date, end_date]`` count.
    """
    direct_total: Number = 0
    for expense in direct_expenses:
        if not is_linked(expense, category, link_mode):
            continue
        if not _in_window(expense.created_at, period, tz):
            continue
        direct_total += clean_amount(expense.amount_cents)

    shopping_total: Number = 0
    for item in shopping_items:
        if not item.is_bought or not is_linked(item, category, link_mode):
            continue
        if not _in_window(item.created_at, period, tz):
            continue
        shopping_total += clean_amount(item.estimated_price_cents) * clean_amount(
            item.quantity
        )

    return direct_total + shopping_total


def counter_drift(category: BudgetCategory, computed: Number) -> Number:
    """Running counter minus the recomputed aggregate; non-zero means drift."""
    return clean_amount(category.spent_cents) - clean_amount(computed)


@dataclass(frozen=True)
class CategoryBreakdown:
    category_id: Optional[int]
    name: str
    limit_cents: Number
    spent_cents: Number
    remaining_cents: Number
    percentage_used: float
    status: BudgetStatus


@dataclass(frozen=True)
class ChartSlice:
    name: str
    value: Number
    color: str


@dataclass(frozen=True)
class BudgetStats:
    total_limit_cents: Number
    total_spent_cents: Number
    remaining_cents: Number
    percentage_used: float
    status: BudgetStatus
    categories: list[CategoryBreakdown] = field(default_factory=list)
    chart: list[ChartSlice] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "total_limit_cents": self.total_limit_cents,
            "total_spent_cents": self.total_spent_cents,
            "remaining_cents": self.remaining_cents,
            "percentage_used": self.percentage_used,
            "status": self.status.value,
            "categories": [
                {
                    "id": row.category_id,
                    "name": row.name,
                    "limit_cents": row.limit_cents,
                    "spent_cents": row.spent_cents,
                    "remaining_cents": row.remaining_cents,
                    "percentage_used": row.percentage_used,
                    "status": row.status.value,
                }
                for row in self.categories
            ],
            "chart": [
                {"name": s.name, "value": s.value, "color": s.color}
                for s in self.chart
            ],
        }


def compute_budget_stats(
    categories: Sequence[BudgetCategory],
    period: BudgetPeriod,
    direct_expenses: Sequence[DirectExpense],
    shopping_items: Sequence[ShoppingItem],
    *,
    link_mode: LinkMode = LinkMode.by_id,
    tz: Optional[ZoneInfo] = None,
    palette: Sequence[str] = CHART_PALETTE,
) -> BudgetStats:
    rows: list[CategoryBreakdown] = []
    chart: list[ChartSlice] = []
    total_limit: Number = 0
    total_spent: Number = 0

    for category in categories:
        limit = clean_amount(category.limit_cents)
        spent = clean_amount(
            compute_category_spend(
                category,
                period,
                direct_expenses,
                shopping_items,
                link_mode=link_mode,
                tz=tz,
            )
        )
        pct = percentage_used(spent, limit)
        rows.append(
            CategoryBreakdown(
                category_id=category.id,
                name=category.name,
                limit_cents=limit,
                spent_cents=spent,
                remaining_cents=limit - spent,
                percentage_used=pct,
                status=status_for(pct),
            )
        )
        total_limit += limit
        total_spent += spent
        if spent > 0:
            color = palette[len(chart) % len(palette)] if palette else ""
            chart.append(ChartSlice(name=category.name, value=spent, color=color))

    overall = percentage_used(total_spent, total_limit)
    return BudgetStats(
        total_limit_cents=total_limit,
        total_spent_cents=total_spent,
        remaining_cents=total_limit - total_spent,
        percentage_used=overall,
        status=status_for(overall),
        categories=rows,
        chart=chart,
    )
