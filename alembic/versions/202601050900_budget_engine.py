"""budget periods, categories, direct expenses and shopping items

Revision ID: 202601050900
Revises:
Create Date: 2026-01-05 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202601050900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "budget_periods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column(
            "is_archived", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("start_date <= end_date", name="ck_period_dates_ordered"),
    )
    op.create_index(
        "ix_budget_periods_family_dates",
        "budget_periods",
        ["family_id", "start_date", "end_date"],
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column(
            "budget_period_id",
            sa.Integer(),
            sa.ForeignKey("budget_periods.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("limit_cents >= 0", name="ck_category_limit_positive"),
        sa.CheckConstraint("spent_cents >= 0", name="ck_category_spent_positive"),
    )
    op.create_index(
        "ix_budget_categories_period_name",
        "budget_categories",
        ["budget_period_id", "name"],
    )
    op.create_index(
        "ix_budget_categories_family_name",
        "budget_categories",
        ["family_id", "name"],
    )

    op.create_table(
        "direct_expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("budget_category_name", sa.String(length=100), nullable=False),
        sa.Column(
            "budget_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_direct_expense_amount_positive"
        ),
    )
    op.create_index(
        "ix_direct_expenses_family_created",
        "direct_expenses",
        ["family_id", "created_at"],
    )
    op.create_index(
        "ix_direct_expenses_family_category",
        "direct_expenses",
        ["family_id", "budget_category_name"],
    )

    op.create_table(
        "shopping_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.String(length=64), nullable=False),
        sa.Column("shopping_list_id", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "estimated_price_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("is_bought", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "budget_category_name",
            sa.String(length=100),
            nullable=False,
            server_default="",
        ),
        sa.Column(
            "budget_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_by", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("quantity >= 0", name="ck_shopping_item_quantity_positive"),
        sa.CheckConstraint(
            "estimated_price_cents >= 0", name="ck_shopping_item_price_positive"
        ),
    )
    op.create_index(
        "ix_shopping_items_family_bought", "shopping_items", ["family_id", "is_bought"]
    )


def downgrade() -> None:
    op.drop_index("ix_shopping_items_family_bought", table_name="shopping_items")
    op.drop_table("shopping_items")
    op.drop_index("ix_direct_expenses_family_category", table_name="direct_expenses")
    op.drop_index("ix_direct_expenses_family_created", table_name="direct_expenses")
    op.drop_table("direct_expenses")
    op.drop_index("ix_budget_categories_family_name", table_name="budget_categories")
    op.drop_index("ix_budget_categories_period_name", table_name="budget_categories")
    op.drop_table("budget_categories")
    op.drop_index("ix_budget_periods_family_dates", table_name="budget_periods")
    op.drop_table("budget_periods")
