"""
Customer book data access layer (async)
---------------------------------------
CustomerResolver methods:
  - resolve(partition_key, name)                          -> {"exact", "similar"}
  - find_or_create(partition_key, name, type, allow_similar=False)
  - create_customer(partition_key, name, *, type, document, address, notes)
  - get_customer(partition_key, name)                     -> exact (normalized) match or None
  - get_customer_by_id(customer_id)
  - update_customer(partition_key, name, **fields)
  - list_customers(partition_key, search=None)

Notes:
  - Identity is the normalized name (common.names.normalize_name), unique per partition.
  - A similar-but-not-equal name is never merged automatically: find_or_create
    reports needs_confirmation and lets the caller decide.
  - Results are plain dicts; timestamps stay UTC-aware datetimes.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.names import normalize_name, similarity
from db.models import Customer, CustomerType
from services.errors import CustomerNotFound, CustomerValidationError

logger = logging.getLogger("sales-ledger")


# ---------- input models ----------
class NewCustomer(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=100)
    type: CustomerType = CustomerType.PERSON
    document: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)


class CustomerChanges(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    type: Optional[CustomerType] = None
    document: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)


# ---------- helpers ----------
def customer_to_dict(c: Customer) -> Dict[str, Any]:
    return {
        "id": str(c.id),
        "partition_key": c.partition_key,
        "name": c.name,
        "name_normalized": c.name_normalized,
        "type": c.type.value if isinstance(c.type, CustomerType) else c.type,
        "document": c.document,
        "address": c.address,
        "notes": c.notes,
        "created_at": c.created_at,
        "updated_at": c.updated_at,
    }


def _clean_display_name(name: str) -> str:
    return " ".join((name or "").split())


# ---------- resolver ----------
class CustomerResolver:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        similarity_threshold: float = 0.8,
        max_similar: int = 3,
    ):
        self._session = session_factory
        self.similarity_threshold = similarity_threshold
        self.max_similar = max_similar

    async def _exact(self, db: AsyncSession, partition_key: str, key: str) -> Optional[Customer]:
        return (
            await db.execute(
                select(Customer).where(
                    Customer.partition_key == partition_key,
                    Customer.name_normalized == key,
                )
            )
        ).scalar_one_or_none()

    async def resolve(self, partition_key: str, name: str) -> Dict[str, Any]:
        key = normalize_name(name)
        if not key:
            return {"exact": None, "similar": []}

        async with self._session() as db:
            row = await self._exact(db, partition_key, key)
            if row:
                return {"exact": customer_to_dict(row), "similar": []}
            rows = (
                await db.execute(select(Customer).where(Customer.partition_key == partition_key))
            ).scalars().all()

        scored = []
        for c in rows:
            score = similarity(name, c.name)
            if score > self.similarity_threshold:
                scored.append((score, c))
        scored.sort(key=lambda sc: (-sc[0], sc[1].name_normalized))

        similar = []
        for score, c in scored[: self.max_similar]:
            d = customer_to_dict(c)
            d["score"] = round(score, 4)
            similar.append(d)
        return {"exact": None, "similar": similar}

    async def find_or_create(
        self,
        partition_key: str,
        name: str,
        type: CustomerType = CustomerType.PERSON,
        *,
        allow_similar: bool = False,
    ) -> Dict[str, Any]:
        """
        exact match      -> {"customer": <dict>, "needs_confirmation": False, "created": False}
        similar matches  -> {"customer": None, "needs_confirmation": True, "similar": [...]}
        no match (or allow_similar) -> a new customer is created
        """
        found = await self.resolve(partition_key, name)
        if found["exact"]:
            return {"customer": found["exact"], "needs_confirmation": False, "similar": [], "created": False}
        if found["similar"] and not allow_similar:
            logger.info("Customer '%s' needs disambiguation (%d candidates)", name, len(found["similar"]))
            return {"customer": None, "needs_confirmation": True, "similar": found["similar"], "created": False}

        data = self._validate_new(name=name, type=type)
        customer, created = await self._create_or_get(partition_key, data)
        return {"customer": customer, "needs_confirmation": False, "similar": found["similar"], "created": created}

    @staticmethod
    def _validate_new(**fields) -> NewCustomer:
        try:
            return NewCustomer.model_validate(fields)
        except ValidationError as e:
            raise CustomerValidationError.from_pydantic(e) from e

    async def _create_or_get(self, partition_key: str, data: NewCustomer) -> tuple[Dict[str, Any], bool]:
        display = _clean_display_name(data.name)
        key = normalize_name(display)
        async with self._session() as db:
            c = Customer(
                partition_key=partition_key,
                name=display,
                name_normalized=key,
                type=data.type,
                document=data.document,
                address=data.address,
                notes=data.notes,
            )
            db.add(c)
            try:
                await db.commit()
            except IntegrityError:
                # Lost a race against a concurrent insert of the same identity key.
                await db.rollback()
                existing = await self._exact(db, partition_key, key)
                if existing is None:
                    raise
                logger.info("Customer '%s' created concurrently; reusing it", display)
                return customer_to_dict(existing), False
            logger.info("Created customer '%s' (%s)", display, data.type.value)
            return customer_to_dict(c), True

    async def create_customer(
        self,
        partition_key: str,
        name: str,
        *,
        type: CustomerType = CustomerType.PERSON,
        document: Optional[str] = None,
        address: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = self._validate_new(name=name, type=type, document=document, address=address, notes=notes)
        customer, _ = await self._create_or_get(partition_key, data)
        return customer

    async def get_customer(self, partition_key: str, name: str) -> Optional[Dict[str, Any]]:
        # similar names are for the caller to suggest, never to stand in
        found = await self.resolve(partition_key, name)
        return found["exact"]

    async def get_customer_by_id(self, customer_id: str) -> Optional[Dict[str, Any]]:
        async with self._session() as db:
            c = await db.get(Customer, uuid.UUID(str(customer_id)))
            return customer_to_dict(c) if c else None

    async def update_customer(self, partition_key: str, name: str, **fields) -> Dict[str, Any]:
        allowed = {"type", "document", "address", "notes"}
        data = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if not data:
            raise CustomerValidationError([{"field": "fields", "message": "nothing to update"}])
        try:
            changes = CustomerChanges.model_validate(data)
        except ValidationError as e:
            raise CustomerValidationError.from_pydantic(e) from e

        async with self._session() as db:
            c = await self._exact(db, partition_key, normalize_name(name))
            if not c:
                raise CustomerNotFound(name)
            for k, v in changes.model_dump(exclude_none=True).items():
                setattr(c, k, v)
            await db.commit()
            await db.refresh(c)
            return customer_to_dict(c)

    async def list_customers(self, partition_key: str, search: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(Customer).where(Customer.partition_key == partition_key)
        if search:
            stmt = stmt.where(Customer.name_normalized.contains(normalize_name(search), autoescape=True))
        async with self._session() as db:
            rows = (await db.execute(stmt.order_by(Customer.name_normalized))).scalars().all()
            return [customer_to_dict(c) for c in rows]


__all__ = ["CustomerResolver", "NewCustomer", "CustomerChanges", "customer_to_dict"]
