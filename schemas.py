from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _strip_required(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("must not be blank")
    return cleaned


class BudgetPeriodIn(BaseModel):
    name: str = Field(default="", max_length=120)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _check_range(self) -> "BudgetPeriodIn":
        if self.start_date > self.end_date:
            raise ValueError("Start date must be on or before end date")
        return self


class BudgetPeriodUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class BudgetCategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    limit_cents: int = Field(default=0, ge=0)

    @field_validator("name")
    @classmethod
    def clean_name(cls, value: str) -> str:
        return _strip_required(value)


class BudgetCategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    limit_cents: Optional[int] = Field(default=None, ge=0)


class DirectExpenseIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    family_id: str = Field(..., min_length=1, max_length=64)
    category_name: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    description: str = Field(default="", max_length=500)
    actor_id: str = Field(default="", max_length=64)

    @field_validator("family_id")
    @classmethod
    def clean_required(cls, value: str) -> str:
        return _strip_required(value)

    @field_validator("category_name")
    @classmethod
    def exact_name(cls, value: str) -> str:
        # Matched exactly against category names; padding is an error.
        if value != value.strip():
            raise ValueError("must not start or end with whitespace")
        return _strip_required(value)


class ShoppingItemIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(default=1, ge=0)
    estimated_price_cents: int = Field(default=0, ge=0)
    budget_category_name: str = Field(default="", max_length=100)
    shopping_list_id: Optional[str] = Field(default=None, max_length=64)
    created_by: str = Field(default="", max_length=64)


class ShoppingItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    quantity: Optional[int] = Field(default=None, ge=0)
    estimated_price_cents: Optional[int] = Field(default=None, ge=0)
    budget_category_name: Optional[str] = Field(default=None, max_length=100)


class BoughtToggleIn(BaseModel):
    is_bought: bool
