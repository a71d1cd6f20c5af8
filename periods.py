from datetime import date, datetime
from typing import Iterable, Optional, Sequence, TypeVar, Union

from models import BudgetPeriod


P = TypeVar("P", bound=BudgetPeriod)

DayLike = Union[date, datetime]


def _as_day(value: DayLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _created_key(period: BudgetPeriod) -> datetime:
    return period.created_at or datetime.min


def period_contains(period: BudgetPeriod, day: DayLike) -> bool:
    """Inclusive on both ends; ``end_date`` covers the whole last day."""
    target = _as_day(day)
    return period.start_date <= target <= period.end_date


def resolve_active_period(periods: Iterable[P], today: DayLike) -> Optional[P]:
    """Pick the single active period for ``today``.

    Only non-archived periods whose range contains ``today`` qualify. When
    several overlap, the latest ``start_date`` wins, then the most recently
    created one. ``None`` means there is no active budget.
    """
    target = _as_day(today)
    candidates = [
        p for p in periods if not p.is_archived and period_contains(p, target)
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda p: (p.start_date, _created_key(p)), reverse=True)
    return candidates[0]


def most_recent_period(periods: Iterable[P]) -> Optional[P]:
    """Fallback period for posting expenses when nothing is active.

    Non-archived periods are preferred; within each group the latest
    ``end_date`` wins, then the most recently created. Never shown as the
    active period.
    """
    ordered = sorted(
        periods,
        key=lambda p: (not p.is_archived, p.end_date, _created_key(p)),
        reverse=True,
    )
    return ordered[0] if ordered else None


def expired_periods(periods: Sequence[P], today: DayLike) -> list[P]:
    target = _as_day(today)
    return [p for p in periods if not p.is_archived and p.end_date < target]
