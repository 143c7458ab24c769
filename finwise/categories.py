from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field
from sqlalchemy import insert, select, update

from finwise.cache import TTLCache
from finwise.schema import user_categories

SUBCATEGORY_UPDATE_FIELDS = {"name", "spent_amount", "limit_amount", "is_fixed"}


class CategoryConfigMissing(LookupError):
    """Raised when a user has not saved a category configuration yet."""


class CategoryNotFound(LookupError):
    """Raised when a category id is not part of the user's configuration."""


class Subcategory(BaseModel):
    name: str
    spent_amount: Decimal = Decimal("0")
    limit_amount: Decimal = Decimal("0")
    is_fixed: bool = False


class VariableCategory(BaseModel):
    kind: Literal["variable"] = "variable"
    id: str
    name: str
    color: str | None = None
    image: str | None = None
    subcategories: list[Subcategory] = Field(default_factory=list)


class FixedCategory(BaseModel):
    kind: Literal["fixed"] = "fixed"
    id: str
    name: str
    frequency: str | None = None
    color: str | None = None
    image: str | None = None
    subcategories: list[Subcategory] = Field(default_factory=list)


Category = Annotated[Union[VariableCategory, FixedCategory], Field(discriminator="kind")]


class CategoryConfig(BaseModel):
    variable: list[VariableCategory] = Field(default_factory=list)
    fixed: list[FixedCategory] = Field(default_factory=list)
    salary: Decimal | None = None
    pay_day: int | None = None
    last_salary_payment: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def all_categories(self) -> list[Category]:
        return [*self.variable, *self.fixed]

    def find_category(self, category_id: str) -> Category | None:
        for category in self.all_categories():
            if category.id == category_id:
                return category
        return None


class CategoryStore:
    """Reads and writes per-user category configuration.

    Reads go through a TTL cache keyed by user id; every write through the
    store invalidates that user's entry.
    """

    def __init__(self, cache: TTLCache) -> None:
        self.cache = cache

    def get_cached(self, user_id: str) -> CategoryConfig | None:
        cached = self.cache.get(user_id)
        if cached is None:
            return None
        return cached.model_copy(deep=True)

    def load(self, conn, user_id: str, use_cache: bool = True) -> CategoryConfig | None:
        if use_cache:
            cached = self.get_cached(user_id)
            if cached is not None:
                return cached
        row = conn.execute(
            select(user_categories).where(user_categories.c.user_id == user_id)
        ).mappings().first()
        if not row:
            return None
        config = _config_from_row(row)
        if use_cache:
            self.cache.set(user_id, config.model_copy(deep=True))
        return config

    def save(self, conn, user_id: str, config: CategoryConfig, now: datetime) -> CategoryConfig:
        values = _row_values(config)
        values["updated_at"] = now
        existing = conn.execute(
            select(user_categories.c.user_id).where(user_categories.c.user_id == user_id)
        ).first()
        if existing:
            conn.execute(
                update(user_categories)
                .where(user_categories.c.user_id == user_id)
                .values(**values)
            )
        else:
            conn.execute(
                insert(user_categories).values(user_id=user_id, created_at=now, **values)
            )
        self.cache.invalidate(user_id)
        return self.load(conn, user_id, use_cache=False)

    def update_subcategory(
        self,
        conn,
        user_id: str,
        category_id: str,
        subcategory_name: str,
        updates: dict,
        now: datetime,
    ) -> CategoryConfig:
        config = self.load(conn, user_id, use_cache=False)
        if config is None:
            raise CategoryConfigMissing("User categories not found.")
        category = config.find_category(category_id)
        if category is None:
            raise CategoryNotFound("Category not found.")

        unknown = set(updates) - SUBCATEGORY_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported subcategory fields: {', '.join(sorted(unknown))}")
        category.subcategories = [
            Subcategory.model_validate({**sub.model_dump(), **updates})
            if sub.name == subcategory_name
            else sub
            for sub in category.subcategories
        ]
        return self.save(conn, user_id, config, now)

    def mark_salary_paid(self, conn, user_id: str, now: datetime) -> bool:
        result = conn.execute(
            update(user_categories)
            .where(user_categories.c.user_id == user_id)
            .values(last_salary_payment=now, updated_at=now)
        )
        self.cache.invalidate(user_id)
        return result.rowcount > 0

    def invalidate(self, user_id: str) -> None:
        self.cache.invalidate(user_id)


def _row_values(config: CategoryConfig) -> dict:
    return {
        "variable": [category.model_dump(mode="json") for category in config.variable],
        "fixed": [category.model_dump(mode="json") for category in config.fixed],
        "salary": config.salary,
        "pay_day": config.pay_day,
        "last_salary_payment": config.last_salary_payment,
    }


def _config_from_row(row) -> CategoryConfig:
    return CategoryConfig(
        variable=row["variable"] or [],
        fixed=row["fixed"] or [],
        salary=row["salary"],
        pay_day=row["pay_day"],
        last_salary_payment=row["last_salary_payment"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
