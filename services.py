from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, Optional, TypeVar
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from rapidfuzz.distance import Levenshtein
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from aggregation import BudgetStats, compute_budget_stats, compute_category_spend
from config import get_settings
from live_queries import mark_touched
from models import (
    BudgetCategory,
    BudgetPeriod,
    DirectExpense,
    LinkMode,
    ShoppingItem,
    utcnow,
)
from notifications import Notifier, default_notifier, format_amount
from periods import expired_periods, most_recent_period, resolve_active_period
from schemas import (
    BudgetCategoryIn,
    BudgetCategoryUpdate,
    BudgetPeriodIn,
    BudgetPeriodUpdate,
    DirectExpenseIn,
    ShoppingItemIn,
    ShoppingItemUpdate,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class InvalidArgument(ValueError):
    pass


class NotFound(ValueError):
    pass


class CategoryNotFound(NotFound):
    def __init__(self, name: str, suggestion: Optional[str] = None) -> None:
        message = (
            f'Budget category "{name}" not found. '
            "Please create it in the budget screen first."
        )
        if suggestion:
            message += f' Did you mean "{suggestion}"?'
        super().__init__(message)
        self.name = name
        self.suggestion = suggestion


class ArchivedPeriod(ValueError):
    pass


class TransactionConflict(RuntimeError):
    pass


class _CounterConflict(Exception):
    """Another writer changed the category between our read and write."""


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def link_mode_from_settings() -> LinkMode:
    try:
        return LinkMode(get_settings().category_link_mode)
    except ValueError:
        logger.warning(
            f"unknown category link mode {get_settings().category_link_mode!r}, "
            "using by_id"
        )
        return LinkMode.by_id


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_secs: float = 0.02
    max_delay_secs: float = 1.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.txn_max_attempts,
            base_delay_secs=settings.txn_backoff_base_secs,
            max_delay_secs=settings.txn_backoff_max_secs,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_secs, self.base_delay_secs * (2 ** (attempt - 1)))


@dataclass(frozen=True)
class CounterState:
    spent_cents: int
    version: int


_categories = BudgetCategory.__table__
_items = ShoppingItem.__table__


def read_counter(session: Session, category_id: int) -> Optional[CounterState]:
    row = session.execute(
        select(_categories.c.spent_cents, _categories.c.version).where(
            _categories.c.id == category_id
        )
    ).one_or_none()
    if row is None:
        return None
    return CounterState(spent_cents=int(row.spent_cents or 0), version=row.version)


def compare_and_swap_counter(
    session: Session, category_id: int, expected: CounterState, new_spent: int
) -> bool:
    result = session.execute(
        update(_categories)
        .where(
            _categories.c.id == category_id,
            _categories.c.version == expected.version,
        )
        .values(
            spent_cents=new_spent,
            version=expected.version + 1,
            updated_at=utcnow(),
        )
    )
    mark_touched(session, _categories.name)
    return result.rowcount == 1


def apply_counter_delta(session: Session, category_id: int, delta: int) -> int:
    """One compare-and-swap attempt on a category's running total.

    Decrements are floored at zero. Raises ``_CounterConflict`` when the
    version moved underneath us.
    """
    state = read_counter(session, category_id)
    if state is None:
        raise NotFound("Budget category no longer exists")
    new_spent = max(0, state.spent_cents + delta)
    if not compare_and_swap_counter(session, category_id, state, new_spent):
        raise _CounterConflict(category_id)
    return new_spent


def read_item(session: Session, item_id: int):
    """Current price, quantity and category link of a shopping item row."""
    return session.execute(
        select(
            _items.c.estimated_price_cents,
            _items.c.quantity,
            _items.c.budget_category_name,
            _items.c.budget_category_id,
        ).where(_items.c.id == item_id)
    ).one()


def _refresh_categories(session: Session, category_ids: Iterable[int]) -> None:
    wanted = set(category_ids)
    for obj in list(session.identity_map.values()):
        if isinstance(obj, BudgetCategory) and obj.id in wanted:
            session.refresh(obj)


def run_optimistic(
    session: Session,
    unit: Callable[[], T],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "transaction",
) -> T:
    """Run ``unit`` and commit, retrying on write conflicts with backoff.

    Every attempt either commits everything ``unit`` wrote or rolls all of
    it back.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = unit()
            session.commit()
            return result
        except (_CounterConflict, StaleDataError):
            session.rollback()
            if attempt == policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            logger.info(f"{label}: write conflict attempt={attempt} retry_in={delay:.3f}s")
            sleep(delay)
        except Exception:
            session.rollback()
            raise
    logger.warning(f"{label}: giving up after {policy.max_attempts} attempts")
    raise TransactionConflict(
        "The budget was changed by someone else. Please try again."
    )


@dataclass(frozen=True)
class ResolvedCategory:
    category: BudgetCategory
    period_id: int
    source: str  # "active" | "most_recent" | "scan"


class PeriodService:
    def __init__(self, session: Session, family_id: str) -> None:
        if not family_id:
            raise InvalidArgument("Family ID is required")
        self.session = session
        self.family_id = family_id

    def list_all(self, include_archived: bool = True) -> list[BudgetPeriod]:
        stmt = (
            select(BudgetPeriod)
            .where(BudgetPeriod.family_id == self.family_id)
            .order_by(BudgetPeriod.created_at.asc(), BudgetPeriod.id.asc())
        )
        if not include_archived:
            stmt = stmt.where(BudgetPeriod.is_archived.is_(False))
        return list(self.session.scalars(stmt).all())

    def get(self, period_id: int) -> BudgetPeriod:
        period = self.session.get(BudgetPeriod, period_id)
        if not period or period.family_id != self.family_id:
            raise NotFound("Budget period not found")
        return period

    def active(self, today: Optional[date] = None) -> Optional[BudgetPeriod]:
        return resolve_active_period(self.list_all(), today or local_today())

    def create(self, data: BudgetPeriodIn) -> BudgetPeriod:
        period = BudgetPeriod(
            family_id=self.family_id,
            name=data.name.strip(),
            start_date=data.start_date,
            end_date=data.end_date,
            is_archived=False,
        )
        self.session.add(period)
        self.session.commit()
        self.session.refresh(period)
        logger.info(
            f"period_created: family={self.family_id} id={period.id} "
            f"range={period.start_date}..{period.end_date}"
        )
        return period

    def update(self, period_id: int, data: BudgetPeriodUpdate) -> BudgetPeriod:
        period = self.get(period_id)
        start = data.start_date or period.start_date
        end = data.end_date or period.end_date
        if start > end:
            raise InvalidArgument("Start date must be on or before end date")
        if data.name is not None:
            period.name = data.name.strip()
        period.start_date = start
        period.end_date = end
        self.session.commit()
        return period

    def archive(self, period_id: int) -> BudgetPeriod:
        period = self.get(period_id)
        period.is_archived = True
        self.session.commit()
        return period

    def restore(self, period_id: int) -> BudgetPeriod:
        period = self.get(period_id)
        period.is_archived = False
        self.session.commit()
        return period

    def delete(self, period_id: int) -> None:
        period = self.get(period_id)
        category_ids = [c.id for c in period.categories]
        _refresh_categories(self.session, category_ids)
        _unlink_categories(self.session, category_ids)
        self.session.delete(period)
        self.session.commit()
        logger.info(
            f"period_deleted: family={self.family_id} id={period_id} "
            f"categories_removed={len(category_ids)}"
        )


def archive_expired_periods(
    session: Session, today: Optional[date] = None
) -> list[BudgetPeriod]:
    """Archive every family's periods that ended before ``today``."""
    periods = session.scalars(
        select(BudgetPeriod).where(BudgetPeriod.is_archived.is_(False))
    ).all()
    expired = expired_periods(list(periods), today or local_today())
    for period in expired:
        period.is_archived = True
        logger.info(
            f"period_archived: family={period.family_id} id={period.id} "
            f"ended={period.end_date}"
        )
    if expired:
        session.commit()
    return expired


def _unlink_categories(session: Session, category_ids: list[int]) -> None:
    """Drop id links to categories about to disappear; names stay."""
    if not category_ids:
        return
    session.execute(
        update(DirectExpense)
        .where(DirectExpense.budget_category_id.in_(category_ids))
        .values(budget_category_id=None)
        .execution_options(synchronize_session="fetch")
    )
    session.execute(
        update(ShoppingItem)
        .where(ShoppingItem.budget_category_id.in_(category_ids))
        .values(budget_category_id=None, version=ShoppingItem.version + 1)
        .execution_options(synchronize_session="fetch")
    )
    mark_touched(session, DirectExpense.__tablename__)
    mark_touched(session, ShoppingItem.__tablename__)


class CategoryService:
    def __init__(self, session: Session, family_id: str) -> None:
        if not family_id:
            raise InvalidArgument("Family ID is required")
        self.session = session
        self.family_id = family_id

    def _period(self, period_id: int) -> BudgetPeriod:
        return PeriodService(self.session, self.family_id).get(period_id)

    def list_for_period(self, period_id: int) -> list[BudgetCategory]:
        stmt = (
            select(BudgetCategory)
            .where(
                BudgetCategory.family_id == self.family_id,
                BudgetCategory.budget_period_id == period_id,
            )
            .order_by(BudgetCategory.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> BudgetCategory:
        category = self.session.get(BudgetCategory, category_id)
        if not category or category.family_id != self.family_id:
            raise NotFound("Budget category not found")
        return category

    def create(self, period_id: int, data: BudgetCategoryIn) -> BudgetCategory:
        period = self._period(period_id)
        if period.is_archived:
            raise ArchivedPeriod("Cannot add categories to an archived period")
        category = BudgetCategory(
            family_id=self.family_id,
            budget_period_id=period.id,
            name=data.name,
            limit_cents=data.limit_cents,
            spent_cents=0,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: BudgetCategoryUpdate) -> BudgetCategory:
        category = self.get(category_id)
        if category.period.is_archived:
            raise ArchivedPeriod("Cannot edit categories in an archived period")
        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise InvalidArgument("Category name is required")
            if name != category.name:
                # History is linked by name too; rows without a category id
                # stay on the old name.
                logger.info(
                    f"category_renamed: id={category.id} "
                    f"from={category.name!r} to={name!r}"
                )
            category.name = name
        if data.limit_cents is not None:
            category.limit_cents = data.limit_cents
        try:
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            raise TransactionConflict(
                "The category was changed by someone else. Please try again."
            ) from exc
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.refresh(category)
        _unlink_categories(self.session, [category.id])
        self.session.delete(category)
        self.session.commit()

    def initialize_defaults(
        self, period_id: int, names: Optional[Iterable[str]] = None
    ) -> list[BudgetCategory]:
        """Create the default categories missing from the period."""
        period = self._period(period_id)
        if period.is_archived:
            raise ArchivedPeriod("Cannot add categories to an archived period")
        wanted = list(names) if names is not None else list(
            get_settings().default_categories
        )
        existing = {c.name for c in self.list_for_period(period.id)}
        created: list[BudgetCategory] = []
        for name in wanted:
            if name in existing:
                continue
            existing.add(name)
            category = BudgetCategory(
                family_id=self.family_id,
                budget_period_id=period.id,
                name=name,
                limit_cents=0,
                spent_cents=0,
            )
            self.session.add(category)
            created.append(category)
        if created:
            self.session.commit()
        return created


class CategoryResolver:
    """Find the category an expense named ``category_name`` should post to.

    Search order: the active period, then the single most recent period,
    then every period of the family in creation order (first match wins).
    """

    SUGGESTION_MAX_DISTANCE = 2

    def __init__(self, session: Session, family_id: str) -> None:
        if not family_id:
            raise InvalidArgument("Family ID is required")
        self.session = session
        self.family_id = family_id

    def _in_period(self, period_id: int, name: str) -> Optional[BudgetCategory]:
        return self.session.scalars(
            select(BudgetCategory)
            .where(
                BudgetCategory.family_id == self.family_id,
                BudgetCategory.budget_period_id == period_id,
                BudgetCategory.name == name,
            )
            .order_by(BudgetCategory.id.asc())
            .limit(1)
        ).first()

    def _scan(self, name: str) -> Optional[BudgetCategory]:
        return self.session.scalars(
            select(BudgetCategory)
            .join(BudgetPeriod, BudgetPeriod.id == BudgetCategory.budget_period_id)
            .where(
                BudgetPeriod.family_id == self.family_id,
                BudgetCategory.family_id == self.family_id,
                BudgetCategory.name == name,
            )
            .order_by(
                BudgetPeriod.created_at.asc(),
                BudgetPeriod.id.asc(),
                BudgetCategory.id.asc(),
            )
            .limit(1)
        ).first()

    def _suggest(self, name: str) -> Optional[str]:
        names = self.session.scalars(
            select(BudgetCategory.name)
            .where(BudgetCategory.family_id == self.family_id)
            .distinct()
        ).all()
        best: Optional[str] = None
        best_distance: Optional[int] = None
        for candidate in sorted(names):
            dist = int(Levenshtein.distance(name.lower(), candidate.lower()))
            if best_distance is None or dist < best_distance:
                best, best_distance = candidate, dist
        if best_distance is not None and best_distance <= self.SUGGESTION_MAX_DISTANCE:
            return best
        return None

    def resolve(
        self, category_name: str, *, today: Optional[date] = None
    ) -> ResolvedCategory:
        if not category_name:
            raise InvalidArgument("Category name is required")
        periods = PeriodService(self.session, self.family_id).list_all()

        active = resolve_active_period(periods, today or local_today())
        if active is not None:
            found = self._in_period(active.id, category_name)
            if found is not None:
                return ResolvedCategory(found, active.id, "active")

        recent = most_recent_period(periods)
        if recent is not None and (active is None or recent.id != active.id):
            found = self._in_period(recent.id, category_name)
            if found is not None:
                return ResolvedCategory(found, recent.id, "most_recent")

        found = self._scan(category_name)
        if found is not None:
            logger.info(
                f"category_resolved_by_scan: family={self.family_id} "
                f"name={category_name!r} period={found.budget_period_id}"
            )
            return ResolvedCategory(found, found.budget_period_id, "scan")

        raise CategoryNotFound(category_name, self._suggest(category_name))


class _LedgerBase:
    def __init__(
        self,
        session: Session,
        *,
        notifier: Optional[Notifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.notifier = notifier or default_notifier()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.clock = clock
        self.sleep = sleep

    def _run(self, unit: Callable[[], T], label: str) -> T:
        return run_optimistic(
            self.session, unit, policy=self.retry_policy, sleep=self.sleep, label=label
        )

    def _notify_safely(self, title: str, body: str) -> None:
        try:
            self.notifier.notify(title, body)
        except Exception as exc:
            logger.warning(f"notification_failed: title={title!r} error={exc}")


class ExpenseLedger(_LedgerBase):
    def record_direct_expense(
        self,
        family_id: str,
        category_name: str,
        amount_cents: int,
        description: str,
        actor_id: str,
        *,
        today: Optional[date] = None,
    ) -> DirectExpense:
        """Post an expense and bump the category's running total atomically."""
        try:
            data = DirectExpenseIn(
                family_id=family_id,
                category_name=category_name,
                amount_cents=amount_cents,
                description=description or "",
                actor_id=actor_id or "",
            )
        except ValidationError as exc:
            raise InvalidArgument(_first_error(exc)) from exc

        resolved = CategoryResolver(self.session, data.family_id).resolve(
            data.category_name, today=today
        )
        category_id = resolved.category.id

        def unit() -> DirectExpense:
            apply_counter_delta(self.session, category_id, data.amount_cents)
            expense = DirectExpense(
                family_id=data.family_id,
                description=data.description,
                amount_cents=data.amount_cents,
                budget_category_name=data.category_name,
                budget_category_id=category_id,
                created_by=data.actor_id,
                created_at=self.clock(),
            )
            self.session.add(expense)
            self.session.flush()
            return expense

        expense = self._run(unit, "record_direct_expense")
        _refresh_categories(self.session, [category_id])
        logger.info(
            f"direct_expense_recorded: family={data.family_id} id={expense.id} "
            f"category={category_id} amount_cents={data.amount_cents} "
            f"resolved_via={resolved.source}"
        )
        self._notify_safely(
            "Direct Expense Added",
            f"{data.actor_id or 'Someone'} added an expense: {data.description} "
            f"({format_amount(data.amount_cents)}) to {data.category_name}",
        )
        return expense

    def list_direct_expenses(
        self, family_id: str, category_name: Optional[str] = None
    ) -> list[DirectExpense]:
        stmt = (
            select(DirectExpense)
            .where(DirectExpense.family_id == family_id)
            .order_by(DirectExpense.created_at.desc(), DirectExpense.id.desc())
        )
        if category_name:
            stmt = stmt.where(DirectExpense.budget_category_name == category_name)
        return list(self.session.scalars(stmt).all())

    def delete_direct_expense(self, family_id: str, expense_id: int) -> None:
        # The category's running total is intentionally left as is.
        expense = self.session.get(DirectExpense, expense_id)
        if not expense or expense.family_id != family_id:
            raise NotFound("Expense not found")
        self.session.delete(expense)
        self.session.commit()
        logger.info(
            f"direct_expense_deleted: family={family_id} id={expense_id} "
            "counter_unchanged=True"
        )


class ShoppingLedger(_LedgerBase):
    """Counter bookkeeping for shopping items marked as bought.

    Costs are always read inside the transaction that moves the counter.
    Item rows carry a version column, so an ORM flush against a row another
    writer changed raises ``StaleDataError`` and the unit is retried on
    fresh values.
    """

    def __init__(self, session: Session, family_id: str, **kwargs) -> None:
        if not family_id:
            raise InvalidArgument("Family ID is required")
        super().__init__(session, **kwargs)
        self.family_id = family_id

    def _get(self, item_id: int) -> ShoppingItem:
        item = self.session.get(ShoppingItem, item_id)
        if not item or item.family_id != self.family_id:
            raise NotFound("Shopping item not found")
        return item

    def _resolver(self) -> CategoryResolver:
        return CategoryResolver(self.session, self.family_id)

    def _resolve_or_none(self, item_id: int, name: str) -> Optional[int]:
        if not name:
            return None
        try:
            return self._resolver().resolve(name).category.id
        except CategoryNotFound:
            logger.warning(
                f"shopping_item_category_missing: item={item_id} name={name!r}"
            )
            return None

    def _charged_category(
        self, item_id: int, category_id: Optional[int], name: str
    ) -> Optional[int]:
        """The category a bought item's cost currently sits on, if any."""
        if category_id is not None:
            if self.session.get(BudgetCategory, category_id) is not None:
                return category_id
        return self._resolve_or_none(item_id, name)

    def list_items(self) -> list[ShoppingItem]:
        stmt = (
            select(ShoppingItem)
            .where(ShoppingItem.family_id == self.family_id)
            .order_by(ShoppingItem.created_at.asc(), ShoppingItem.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def add_item(self, data: ShoppingItemIn) -> ShoppingItem:
        item = ShoppingItem(
            family_id=self.family_id,
            shopping_list_id=data.shopping_list_id,
            name=data.name.strip(),
            quantity=data.quantity,
            estimated_price_cents=data.estimated_price_cents,
            budget_category_name=data.budget_category_name.strip(),
            created_by=data.created_by,
            is_bought=False,
            created_at=self.clock(),
        )
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def set_bought(self, item_id: int, is_bought: bool) -> ShoppingItem:
        """Flip an item's bought flag and move its cost on or off the counter."""
        item = self._get(item_id)
        if item.is_bought == is_bought:
            return item

        def unit() -> Optional[tuple[Optional[int], int]]:
            # Claim the flag first; the row is then ours until commit.
            flipped = self.session.execute(
                update(_items)
                .where(_items.c.id == item_id, _items.c.is_bought == (not is_bought))
                .values(
                    is_bought=is_bought,
                    version=_items.c.version + 1,
                    updated_at=utcnow(),
                )
            )
            mark_touched(self.session, _items.name)
            if flipped.rowcount != 1:
                return None
            row = read_item(self.session, item_id)
            cost = row.estimated_price_cents * row.quantity
            if is_bought:
                if not row.budget_category_name:
                    raise InvalidArgument("Item has no budget category assigned")
                target: Optional[int] = self._resolver().resolve(
                    row.budget_category_name
                ).category.id
            else:
                target = self._charged_category(
                    item_id, row.budget_category_id, row.budget_category_name
                )
            self.session.execute(
                update(_items)
                .where(_items.c.id == item_id)
                .values(budget_category_id=target if is_bought else None)
            )
            if target is not None:
                apply_counter_delta(self.session, target, cost if is_bought else -cost)
            return target, cost

        outcome = self._run(unit, "set_bought")
        self.session.refresh(item)
        if outcome is None:
            return item
        target, cost = outcome
        if target is not None:
            _refresh_categories(self.session, [target])
        logger.info(
            f"shopping_item_bought: item={item.id} is_bought={is_bought} "
            f"category={target} cost_cents={cost}"
        )
        if is_bought:
            self._notify_safely(
                "Item Purchased",
                f'{item.created_by or "Someone"} marked "{item.name}" as purchased',
            )
        return item

    def update_item(self, item_id: int, data: ShoppingItemUpdate) -> ShoppingItem:
        item = self._get(item_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "budget_category_name" in changes:
            changes["budget_category_name"] = changes["budget_category_name"].strip()

        def unit() -> list[int]:
            # ``item`` is reloaded after a rolled back attempt.
            touched: list[int] = []
            if item.is_bought:
                old_cost = item.cost_cents
                new_cost = changes.get(
                    "estimated_price_cents", item.estimated_price_cents
                ) * changes.get("quantity", item.quantity)
                old_name = item.budget_category_name
                new_name = changes.get("budget_category_name", old_name)

                old_target = self._charged_category(
                    item.id, item.budget_category_id, old_name
                )
                new_target = old_target
                if new_name != old_name:
                    new_target = self._resolve_or_none(item.id, new_name)
                    if old_target is not None:
                        apply_counter_delta(self.session, old_target, -old_cost)
                    if new_target is not None:
                        apply_counter_delta(self.session, new_target, new_cost)
                elif new_target is not None and new_cost != old_cost:
                    apply_counter_delta(self.session, new_target, new_cost - old_cost)
                item.budget_category_id = new_target
                touched = [t for t in (old_target, new_target) if t is not None]
            for key, value in changes.items():
                setattr(item, key, value)
            self.session.flush()
            return touched

        touched = self._run(unit, "update_item")
        _refresh_categories(self.session, touched)
        return item

    def delete_item(self, item_id: int) -> None:
        item = self._get(item_id)

        def unit() -> Optional[int]:
            target = None
            if item.is_bought:
                target = self._charged_category(
                    item.id, item.budget_category_id, item.budget_category_name
                )
                if target is not None:
                    apply_counter_delta(self.session, target, -item.cost_cents)
            self.session.delete(item)
            self.session.flush()
            return target

        target = self._run(unit, "delete_item")
        if target is not None:
            _refresh_categories(self.session, [target])


class DashboardService:
    """Recomputed budget figures; never reads the running counters."""

    def __init__(
        self,
        session: Session,
        family_id: str,
        *,
        link_mode: Optional[LinkMode] = None,
        tz: Optional[ZoneInfo] = None,
    ) -> None:
        if not family_id:
            raise InvalidArgument("Family ID is required")
        self.session = session
        self.family_id = family_id
        self.link_mode = link_mode or link_mode_from_settings()
        # Same day boundary the resolvers use for "today".
        self.tz = tz or ZoneInfo(get_settings().timezone)

    def _direct_expenses(self) -> list[DirectExpense]:
        return list(
            self.session.scalars(
                select(DirectExpense).where(DirectExpense.family_id == self.family_id)
            ).all()
        )

    def _bought_items(self) -> list[ShoppingItem]:
        return list(
            self.session.scalars(
                select(ShoppingItem).where(
                    ShoppingItem.family_id == self.family_id,
                    ShoppingItem.is_bought.is_(True),
                )
            ).all()
        )

    def _period(
        self, period_id: Optional[int], today: Optional[date]
    ) -> Optional[BudgetPeriod]:
        periods = PeriodService(self.session, self.family_id)
        if period_id is not None:
            return periods.get(period_id)
        return periods.active(today)

    def category_spend(self, category_id: int) -> int:
        category = CategoryService(self.session, self.family_id).get(category_id)
        return compute_category_spend(
            category,
            category.period,
            self._direct_expenses(),
            self._bought_items(),
            link_mode=self.link_mode,
            tz=self.tz,
        )

    def stats(
        self, period_id: Optional[int] = None, *, today: Optional[date] = None
    ) -> Optional[BudgetStats]:
        period = self._period(period_id, today)
        if period is None:
            return None
        categories = CategoryService(self.session, self.family_id).list_for_period(
            period.id
        )
        return compute_budget_stats(
            categories,
            period,
            self._direct_expenses(),
            self._bought_items(),
            link_mode=self.link_mode,
            tz=self.tz,
        )

    def drift_report(self, period_id: int) -> list[dict[str, object]]:
        """Counter vs. recomputed spend per category of a period."""
        period = PeriodService(self.session, self.family_id).get(period_id)
        expenses = self._direct_expenses()
        items = self._bought_items()
        report = []
        for category in CategoryService(self.session, self.family_id).list_for_period(
            period.id
        ):
            computed = compute_category_spend(
                category, period, expenses, items, link_mode=self.link_mode, tz=self.tz
            )
            report.append(
                {
                    "category_id": category.id,
                    "name": category.name,
                    "counter_cents": category.spent_cents,
                    "computed_cents": computed,
                    "drift_cents": category.spent_cents - computed,
                }
            )
        return report


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    return f"{loc}: {first.get('msg', 'invalid value')}" if loc else first.get("msg", "")
