"""
Sales ledger data access layer (async)
--------------------------------------
LedgerService methods:
  - create_sale(partition_key, draft)              -> sale dict with a fresh per-partition sale_number
  - get_by_number(partition_key, sale_number)      -> sale dict | None
  - update_sale(partition_key, sale_number, changes)
  - delete_sale(partition_key, sale_number)        -> the removed sale dict
  - list_sales(partition_key, filters)             -> newest first
  - stats_for(partition_key, salesperson, start, end)
  - customer_stats(partition_key, name)

Notes:
  - sale_number = max(sale_number in partition) + 1, read and inserted in one
    transaction. PostgreSQL serializes allocation per partition with an
    advisory xact lock; every backend also relies on the unique
    (partition_key, sale_number) constraint and retries the read on conflict.
  - A sale created from a chat draft stores its draft_id (unique per
    partition); creating the same draft again returns the recorded sale.
  - Prices are reconciled before insert: total = unit * quantity or
    unit = total / quantity, whichever is missing.
"""
from __future__ import annotations

import asyncio
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import delete, func, select, text as sql_text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.names import normalize_name
from db.models import Customer, CustomerType, Sale, utcnow
from services.customer_service import CustomerResolver
from services.errors import (
    DisambiguationRequired,
    SaleNotFound,
    SaleValidationError,
    TransientStoreError,
)

logger = logging.getLogger("sales-ledger")

MAX_QUANTITY = 10_000
MAX_PRICE = 1_000_000


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


# ---------- input models ----------
class NewSale(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    product: str = Field(min_length=1, max_length=200)
    quantity: float = Field(default=1, gt=0, le=MAX_QUANTITY)
    price_per_unit: Optional[float] = Field(default=None, ge=0, le=MAX_PRICE)
    total_price: Optional[float] = Field(default=None, gt=0, le=MAX_PRICE)
    sale_date: datetime = Field(default_factory=utcnow)
    salesperson: str = Field(min_length=2, max_length=50)
    customer_name: str = Field(min_length=2, max_length=100)
    customer_type: CustomerType = CustomerType.PERSON
    notes: Optional[str] = Field(default=None, max_length=1000)
    allow_similar_customer: bool = False
    # chat draft this sale comes from; a sale per draft at most
    draft_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("sale_date")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class SaleChanges(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    product: Optional[str] = Field(default=None, min_length=1, max_length=200)
    quantity: Optional[float] = Field(default=None, gt=0, le=MAX_QUANTITY)
    price_per_unit: Optional[float] = Field(default=None, ge=0, le=MAX_PRICE)
    total_price: Optional[float] = Field(default=None, gt=0, le=MAX_PRICE)
    sale_date: Optional[datetime] = None
    salesperson: Optional[str] = Field(default=None, min_length=2, max_length=50)
    customer_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    customer_type: Optional[CustomerType] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    allow_similar_customer: bool = False

    @field_validator("sale_date")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True, exclude={"allow_similar_customer"})


class SaleFilters(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    customer_name: Optional[str] = None
    salesperson: Optional[str] = None
    limit: Optional[int] = Field(default=None, gt=0)

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


# ---------- helpers ----------
def reconcile_prices(
    quantity: float,
    price_per_unit: Optional[float],
    total_price: Optional[float],
) -> tuple[Optional[float], Optional[float]]:
    """Fill whichever of (price_per_unit, total_price) is missing."""
    if total_price is None and price_per_unit is not None:
        total_price = price_per_unit * quantity
    elif price_per_unit is None and total_price is not None:
        price_per_unit = total_price / quantity
    return price_per_unit, total_price


def _check_business_rules(
    price_per_unit: Optional[float],
    total_price: Optional[float],
    sale_date: Optional[datetime],
) -> None:
    problems = []
    if price_per_unit is None and total_price is None:
        problems.append({"field": "price", "message": "unit price or total price is required"})
    elif total_price is not None and total_price <= 0:
        problems.append({"field": "total_price", "message": "total price must be greater than 0"})
    elif total_price is not None and total_price > MAX_PRICE:
        problems.append({"field": "total_price", "message": f"total price must be at most {MAX_PRICE}"})
    if sale_date is not None and sale_date > utcnow():
        problems.append({"field": "sale_date", "message": "sale date cannot be in the future"})
    if problems:
        raise SaleValidationError(problems)


def sale_to_dict(s: Sale, c: Customer) -> Dict[str, Any]:
    return {
        "id": str(s.id),
        "partition_key": s.partition_key,
        "sale_number": s.sale_number,
        "product": s.product,
        "quantity": s.quantity,
        "price_per_unit": s.price_per_unit,
        "total_price": s.total_price,
        "sale_date": s.sale_date,
        "salesperson": s.salesperson,
        "customer_id": str(c.id),
        "customer_name": c.name,
        "customer_type": c.type.value if isinstance(c.type, CustomerType) else c.type,
        "notes": s.notes,
        "draft_id": s.draft_id,
        "created_at": s.created_at,
        "updated_at": s.updated_at,
    }


def _summarize(sales: List[Dict[str, Any]]) -> Dict[str, Any]:
    count = len(sales)
    total = sum(float(s["total_price"]) for s in sales)
    return {"count": count, "total": total, "average": (total / count) if count else 0.0}


# ---------- ledger ----------
class LedgerService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        customers: CustomerResolver,
        *,
        max_attempts: int = 8,
        backoff_seconds: float = 0.05,
    ):
        self._session = session_factory
        self.customers = customers
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    # ----- create -----
    async def create_sale(self, partition_key: str, draft: Union[NewSale, Dict[str, Any]]) -> Dict[str, Any]:
        try:
            sale = draft if isinstance(draft, NewSale) else NewSale.model_validate(draft)
        except ValidationError as e:
            raise SaleValidationError.from_pydantic(e) from e

        if sale.draft_id:
            existing = await self._by_draft(partition_key, sale.draft_id)
            if existing is not None:
                logger.info("Draft %s already recorded as sale #%d", sale.draft_id, existing["sale_number"])
                return existing

        price_per_unit, total_price = reconcile_prices(sale.quantity, sale.price_per_unit, sale.total_price)
        _check_business_rules(price_per_unit, total_price, sale.sale_date)

        outcome = await self.customers.find_or_create(
            partition_key,
            sale.customer_name,
            sale.customer_type,
            allow_similar=sale.allow_similar_customer,
        )
        if outcome["needs_confirmation"]:
            raise DisambiguationRequired(sale.customer_name, outcome["similar"])
        customer = outcome["customer"]

        values = {
            "product": sale.product,
            "quantity": sale.quantity,
            "price_per_unit": price_per_unit,
            "total_price": total_price,
            "sale_date": sale.sale_date,
            "salesperson": sale.salesperson,
            "notes": sale.notes,
            "customer_id": uuid.UUID(customer["id"]),
            "draft_id": sale.draft_id,
        }

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._insert_next(partition_key, values)
            except (IntegrityError, OperationalError) as e:
                last_error = e
                if sale.draft_id:
                    # the conflict may be this draft committed by a concurrent confirm
                    existing = await self._by_draft(partition_key, sale.draft_id)
                    if existing is not None:
                        return existing
                logger.warning(
                    "Sale number allocation conflict (attempt %d/%d): %s",
                    attempt, self.max_attempts, e.__class__.__name__,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.backoff_seconds * attempt * random.uniform(0.5, 1.5))
        raise TransientStoreError(
            f"Could not allocate a sale number after {self.max_attempts} attempts",
            attempts=self.max_attempts,
        ) from last_error

    async def _lock_partition(self, db: AsyncSession, partition_key: str) -> None:
        if db.bind is not None and db.bind.dialect.name == "postgresql":
            await db.execute(
                sql_text("SELECT pg_advisory_xact_lock(hashtext(:k))"),
                {"k": f"sales:{partition_key}"},
            )

    async def _insert_next(self, partition_key: str, values: Dict[str, Any]) -> Dict[str, Any]:
        async with self._session() as db:
            async with db.begin():
                await self._lock_partition(db, partition_key)
                current = await db.scalar(
                    select(func.max(Sale.sale_number)).where(Sale.partition_key == partition_key)
                )
                number = int(current or 0) + 1
                row = Sale(partition_key=partition_key, sale_number=number, **values)
                db.add(row)
                await db.flush()
                customer = await db.get(Customer, values["customer_id"])
            logger.info("Created sale #%d (%s x %s)", number, values["quantity"], values["product"])
            return sale_to_dict(row, customer)

    # ----- read -----
    async def _load(self, db: AsyncSession, partition_key: str, sale_number: int):
        return (
            await db.execute(
                select(Sale, Customer)
                .join(Customer, Sale.customer_id == Customer.id)
                .where(Sale.partition_key == partition_key, Sale.sale_number == int(sale_number))
            )
        ).one_or_none()

    async def get_by_number(self, partition_key: str, sale_number: int) -> Optional[Dict[str, Any]]:
        async with self._session() as db:
            row = await self._load(db, partition_key, sale_number)
            return sale_to_dict(*row) if row else None

    async def _by_draft(self, partition_key: str, draft_id: str) -> Optional[Dict[str, Any]]:
        async with self._session() as db:
            row = (
                await db.execute(
                    select(Sale, Customer)
                    .join(Customer, Sale.customer_id == Customer.id)
                    .where(Sale.partition_key == partition_key, Sale.draft_id == draft_id)
                )
            ).one_or_none()
            return sale_to_dict(*row) if row else None

    # ----- update -----
    async def update_sale(
        self,
        partition_key: str,
        sale_number: int,
        changes: Union[SaleChanges, Dict[str, Any]],
    ) -> Dict[str, Any]:
        try:
            ch = changes if isinstance(changes, SaleChanges) else SaleChanges.model_validate(changes)
        except ValidationError as e:
            raise SaleValidationError.from_pydantic(e) from e
        if ch.is_empty():
            raise SaleValidationError([{"field": "changes", "message": "nothing to update"}])

        if await self.get_by_number(partition_key, sale_number) is None:
            raise SaleNotFound(sale_number)

        new_customer_id = None
        if ch.customer_name:
            outcome = await self.customers.find_or_create(
                partition_key,
                ch.customer_name,
                ch.customer_type or CustomerType.PERSON,
                allow_similar=ch.allow_similar_customer,
            )
            if outcome["needs_confirmation"]:
                raise DisambiguationRequired(ch.customer_name, outcome["similar"])
            new_customer_id = uuid.UUID(outcome["customer"]["id"])

        async with self._session() as db:
            row = await self._load(db, partition_key, sale_number)
            if not row:
                raise SaleNotFound(sale_number)
            sale, _ = row

            quantity = ch.quantity if ch.quantity is not None else sale.quantity
            if ch.price_per_unit is not None and ch.total_price is not None:
                price_per_unit, total_price = ch.price_per_unit, ch.total_price
            elif ch.total_price is not None:
                price_per_unit, total_price = reconcile_prices(quantity, None, ch.total_price)
            elif ch.price_per_unit is not None:
                price_per_unit, total_price = reconcile_prices(quantity, ch.price_per_unit, None)
            elif ch.quantity is not None:
                # Quantity alone keeps the unit price.
                price_per_unit, total_price = reconcile_prices(quantity, sale.price_per_unit, None)
            else:
                price_per_unit, total_price = sale.price_per_unit, sale.total_price
            _check_business_rules(price_per_unit, total_price, ch.sale_date)

            sale.quantity = quantity
            sale.price_per_unit = price_per_unit
            sale.total_price = total_price
            for field in ("product", "sale_date", "salesperson", "notes"):
                value = getattr(ch, field)
                if value is not None:
                    setattr(sale, field, value)
            if new_customer_id is not None:
                sale.customer_id = new_customer_id
            await db.commit()

            row = await self._load(db, partition_key, sale_number)
            logger.info("Updated sale #%s (%s)", sale_number, ", ".join(ch.model_dump(exclude_none=True)))
            return sale_to_dict(*row)

    # ----- delete -----
    async def delete_sale(self, partition_key: str, sale_number: int) -> Dict[str, Any]:
        async with self._session() as db:
            row = await self._load(db, partition_key, sale_number)
            if not row:
                raise SaleNotFound(sale_number)
            removed = sale_to_dict(*row)
            await db.execute(delete(Sale).where(Sale.id == row[0].id))
            await db.commit()
            logger.info("Deleted sale #%s", sale_number)
            return removed

    # ----- query -----
    async def list_sales(
        self,
        partition_key: str,
        filters: Union[SaleFilters, Dict[str, Any], None] = None,
    ) -> List[Dict[str, Any]]:
        f = filters if isinstance(filters, SaleFilters) else SaleFilters.model_validate(filters or {})

        stmt = (
            select(Sale, Customer)
            .join(Customer, Sale.customer_id == Customer.id)
            .where(Sale.partition_key == partition_key)
        )
        if f.start is not None:
            stmt = stmt.where(Sale.sale_date >= f.start)
        if f.end is not None:
            stmt = stmt.where(Sale.sale_date <= f.end)
        if f.customer_name:
            stmt = stmt.where(Customer.name_normalized.contains(normalize_name(f.customer_name), autoescape=True))
        if f.salesperson:
            stmt = stmt.where(Sale.salesperson == f.salesperson)
        stmt = stmt.order_by(Sale.sale_date.desc(), Sale.sale_number.desc())
        if f.limit:
            stmt = stmt.limit(f.limit)

        async with self._session() as db:
            rows = (await db.execute(stmt)).all()
            return [sale_to_dict(s, c) for s, c in rows]

    async def stats_for(
        self,
        partition_key: str,
        salesperson: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        sales = await self.list_sales(
            partition_key, SaleFilters(start=start, end=end, salesperson=salesperson)
        )
        return {"salesperson": salesperson, **_summarize(sales)}

    async def customer_stats(self, partition_key: str, name: str) -> Optional[Dict[str, Any]]:
        customer = await self.customers.get_customer(partition_key, name)
        if not customer:
            return None
        async with self._session() as db:
            rows = (
                await db.execute(
                    select(Sale, Customer)
                    .join(Customer, Sale.customer_id == Customer.id)
                    .where(Sale.partition_key == partition_key, Customer.id == uuid.UUID(customer["id"]))
                    .order_by(Sale.sale_date.desc(), Sale.sale_number.desc())
                )
            ).all()
            sales = [sale_to_dict(s, c) for s, c in rows]
        summary = _summarize(sales)
        return {
            "customer": customer,
            "count": summary["count"],
            "total": summary["total"],
            "average": summary["average"],
            "last_sale": sales[0] if sales else None,
        }


__all__ = [
    "LedgerService",
    "NewSale",
    "SaleChanges",
    "SaleFilters",
    "reconcile_prices",
    "sale_to_dict",
]
