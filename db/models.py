from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional
from enum import Enum as PyEnum

from sqlalchemy import (
    Text,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Integer,
    UniqueConstraint,
    Boolean,
    Index,
    Uuid,
)
from sqlalchemy import DateTime as SADateTime
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo on storage)."""

    impl = SADateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------- Enums ----------
class CustomerType(str, PyEnum):
    PERSON = "PERSON"
    BUSINESS = "BUSINESS"


# ---------- Models ----------
class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("partition_key", "name_normalized", name="uq_customers_partition_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    partition_key: Mapped[str] = mapped_column(Text, index=True)
    name: Mapped[str] = mapped_column(Text)
    name_normalized: Mapped[str] = mapped_column(Text)
    type: Mapped[CustomerType] = mapped_column(
        SAEnum(CustomerType, name="customer_type", create_constraint=False),
        default=CustomerType.PERSON,
    )
    document: Mapped[Optional[str]] = mapped_column(Text)
    address: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    sales: Mapped[list["Sale"]] = relationship(back_populates="customer")


class Sale(Base):
    __tablename__ = "sales"
    __table_args__ = (
        UniqueConstraint("partition_key", "sale_number", name="uq_sales_partition_number"),
        UniqueConstraint("partition_key", "draft_id", name="uq_sales_partition_draft"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    partition_key: Mapped[str] = mapped_column(Text)

    # Public, user-facing number (1,2,3,...) scoped to the partition
    sale_number: Mapped[int] = mapped_column(Integer, nullable=False)

    product: Mapped[str] = mapped_column(Text)
    quantity: Mapped[float] = mapped_column(Float)
    price_per_unit: Mapped[float] = mapped_column(Float)
    total_price: Mapped[float] = mapped_column(Float)
    sale_date: Mapped[datetime] = mapped_column(UTCDateTime)
    salesperson: Mapped[str] = mapped_column(Text)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("customers.id", ondelete="RESTRICT"))
    # Id of the confirmed chat draft that produced this sale; a replayed confirm finds it
    draft_id: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    customer: Mapped[Customer] = relationship(back_populates="sales")


class ConversationState(Base):
    __tablename__ = "conversation_states"

    partition_key: Mapped[str] = mapped_column(Text, primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(Text)
    last_message_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    # JSON-serialized tagged pending action (see agents.state.PendingAction)
    pending_action: Mapped[Optional[str]] = mapped_column(Text)
    pending_confirmation: Mapped[bool] = mapped_column(Boolean, default=False)
    pending_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    last_sale_number: Mapped[Optional[int]] = mapped_column(Integer)
    last_customer_name: Mapped[Optional[str]] = mapped_column(Text)
    # Bumped on every write; caches compare it before trusting a copy
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


Index("ix_sales_partition_date", Sale.partition_key, Sale.sale_date)
Index("ix_sales_partition_salesperson", Sale.partition_key, Sale.salesperson)
Index("ix_sales_customer", Sale.customer_id)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = [
    "Base",
    "UTCDateTime",
    "CustomerType",
    "Customer",
    "Sale",
    "ConversationState",
    "utcnow",
    "init_db",
]
