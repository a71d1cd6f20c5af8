from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LinkMode(str, Enum):
    by_id = "by_id"
    by_name = "by_name"


class BudgetStatus(str, Enum):
    normal = "normal"
    warning = "warning"
    critical = "critical"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class BudgetPeriod(Base, TimestampMixin):
    __tablename__ = "budget_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="period",
        cascade="all, delete-orphan",
        order_by="BudgetCategory.id",
    )

    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="ck_period_dates_ordered"),
        Index("ix_budget_periods_family_dates", "family_id", "start_date", "end_date"),
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    budget_period_id: Mapped[int] = mapped_column(
        ForeignKey("budget_periods.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    period: Mapped["BudgetPeriod"] = relationship(
        "BudgetPeriod", back_populates="categories"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("limit_cents >= 0", name="ck_category_limit_positive"),
        CheckConstraint("spent_cents >= 0", name="ck_category_spent_positive"),
        Index("ix_budget_categories_period_name", "budget_period_id", "name"),
        Index("ix_budget_categories_family_name", "family_id", "name"),
    )


class DirectExpense(Base):
    __tablename__ = "direct_expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    budget_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="SET NULL")
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_direct_expense_amount_positive"),
        Index("ix_direct_expenses_family_created", "family_id", "created_at"),
        Index(
            "ix_direct_expenses_family_category",
            "family_id",
            "budget_category_name",
        ),
    )


class ShoppingItem(Base, TimestampMixin):
    __tablename__ = "shopping_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    shopping_list_id: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    estimated_price_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    is_bought: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    budget_category_name: Mapped[str] = mapped_column(
        String(100), nullable=False, default=""
    )
    budget_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="SET NULL")
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_shopping_item_quantity_positive"),
        CheckConstraint(
            "estimated_price_cents >= 0", name="ck_shopping_item_price_positive"
        ),
        Index("ix_shopping_items_family_bought", "family_id", "is_bought"),
    )

    @property
    def cost_cents(self) -> int:
        return (self.estimated_price_cents or 0) * (self.quantity or 0)
