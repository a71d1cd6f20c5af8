"""Live queries over committed data.

A :class:`LiveQueryHub` is bound to one session factory. Callers register a
watch and get the full result set immediately, then again after every commit
that touched the watched table. Each registration returns a
:class:`Subscription`; the caller owns it and must unsubscribe when the
consuming view goes away.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import event, select
from sqlalchemy.orm import Session, sessionmaker

from models import BudgetCategory, BudgetPeriod, DirectExpense, ShoppingItem


logger = logging.getLogger(__name__)

TOUCHED_KEY = "live_queries.touched_tables"

Snapshot = list[Any]
Callback = Callable[[Snapshot], None]
Query = Callable[[Session], Snapshot]


def mark_touched(session: Session, table_name: str) -> None:
    """Record a write that bypassed the unit of work (Core UPDATE etc.)."""
    session.info.setdefault(TOUCHED_KEY, set()).add(table_name)


@dataclass
class _Watch:
    table: str
    query: Query
    callback: Callback
    label: str


class Subscription:
    def __init__(self, hub: "LiveQueryHub", key: int, label: str) -> None:
        self._hub = hub
        self._key = key
        self.label = label

    @property
    def active(self) -> bool:
        return self._hub._has(self._key)

    def unsubscribe(self) -> None:
        self._hub._remove(self._key)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.unsubscribe()


class LiveQueryHub:
    def __init__(self, factory: sessionmaker[Session]) -> None:
        self.factory = factory
        self._lock = threading.Lock()
        self._watches: dict[int, _Watch] = {}
        self._next_key = 1
        event.listen(factory, "after_flush", self._after_flush)
        event.listen(factory, "after_commit", self._after_commit)
        event.listen(factory, "after_rollback", self._after_rollback)

    def close(self) -> None:
        event.remove(self.factory, "after_flush", self._after_flush)
        event.remove(self.factory, "after_commit", self._after_commit)
        event.remove(self.factory, "after_rollback", self._after_rollback)
        with self._lock:
            self._watches.clear()

    # registration

    def watch(
        self, table: str, query: Query, callback: Callback, *, label: str = ""
    ) -> Subscription:
        with self._lock:
            key = self._next_key
            self._next_key += 1
            watch = _Watch(table=table, query=query, callback=callback, label=label)
            self._watches[key] = watch
        self._deliver(watch)
        return Subscription(self, key, label)

    def watch_periods(self, family_id: str, callback: Callback) -> Subscription:
        def query(session: Session) -> Snapshot:
            return list(
                session.scalars(
                    select(BudgetPeriod)
                    .where(BudgetPeriod.family_id == family_id)
                    .order_by(BudgetPeriod.created_at.asc(), BudgetPeriod.id.asc())
                ).all()
            )

        return self.watch(
            BudgetPeriod.__tablename__, query, callback, label=f"periods:{family_id}"
        )

    def watch_categories(self, period_id: int, callback: Callback) -> Subscription:
        def query(session: Session) -> Snapshot:
            return list(
                session.scalars(
                    select(BudgetCategory)
                    .where(BudgetCategory.budget_period_id == period_id)
                    .order_by(BudgetCategory.id.asc())
                ).all()
            )

        return self.watch(
            BudgetCategory.__tablename__,
            query,
            callback,
            label=f"categories:{period_id}",
        )

    def watch_direct_expenses(
        self,
        family_id: str,
        callback: Callback,
        *,
        category_name: Optional[str] = None,
    ) -> Subscription:
        def query(session: Session) -> Snapshot:
            stmt = (
                select(DirectExpense)
                .where(DirectExpense.family_id == family_id)
                .order_by(DirectExpense.created_at.desc(), DirectExpense.id.desc())
            )
            if category_name:
                stmt = stmt.where(DirectExpense.budget_category_name == category_name)
            return list(session.scalars(stmt).all())

        return self.watch(
            DirectExpense.__tablename__,
            query,
            callback,
            label=f"direct_expenses:{family_id}",
        )

    def watch_shopping_items(self, family_id: str, callback: Callback) -> Subscription:
        def query(session: Session) -> Snapshot:
            return list(
                session.scalars(
                    select(ShoppingItem)
                    .where(ShoppingItem.family_id == family_id)
                    .order_by(ShoppingItem.created_at.asc(), ShoppingItem.id.asc())
                ).all()
            )

        return self.watch(
            ShoppingItem.__tablename__,
            query,
            callback,
            label=f"shopping_items:{family_id}",
        )

    def subscription_count(self) -> int:
        with self._lock:
            return len(self._watches)

    # internals

    def _has(self, key: int) -> bool:
        with self._lock:
            return key in self._watches

    def _remove(self, key: int) -> None:
        with self._lock:
            self._watches.pop(key, None)

    def _deliver(self, watch: _Watch) -> None:
        session = self.factory()
        try:
            rows = watch.query(session)
        except Exception:
            logger.exception(f"live_query_failed: {watch.label}")
            rows = []
        finally:
            session.close()
        try:
            watch.callback(rows)
        except Exception:
            logger.exception(f"live_query_callback_failed: {watch.label}")

    def _after_flush(self, session: Session, _flush_context) -> None:
        touched = session.info.setdefault(TOUCHED_KEY, set())
        for obj in list(session.new) + list(session.dirty) + list(session.deleted):
            table = getattr(obj, "__tablename__", None)
            if table:
                touched.add(table)

    def _after_rollback(self, session: Session) -> None:
        session.info.pop(TOUCHED_KEY, None)

    def _after_commit(self, session: Session) -> None:
        touched = session.info.pop(TOUCHED_KEY, None)
        if not touched:
            return
        with self._lock:
            watches = [w for w in self._watches.values() if w.table in touched]
        for watch in watches:
            self._deliver(watch)
