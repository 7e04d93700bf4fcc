from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from db.models import utcnow

logger = logging.getLogger("sales-ledger")


class PendingStage(str, Enum):
    NONE = "NONE"
    DRAFTING = "DRAFTING"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    # terminal outcomes; reaching one clears the pending fields
    COMMITTED = "COMMITTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_STAGES = {PendingStage.COMMITTED, PendingStage.CANCELLED, PendingStage.EXPIRED}


# ---------- pending action variants ----------
class CreateSaleDraft(BaseModel):
    kind: Literal["CREATE_SALE"] = "CREATE_SALE"
    product: Optional[str] = None
    quantity: Optional[float] = None
    price_per_unit: Optional[float] = None
    total_price: Optional[float] = None
    sale_date: Optional[datetime] = None
    salesperson: Optional[str] = None
    customer_name: Optional[str] = None
    customer_type: Optional[str] = None
    notes: Optional[str] = None
    # fields the oracle flagged as missing on the last turn
    flagged_missing: List[str] = Field(default_factory=list)
    # open disambiguation: names of existing customers similar to customer_name
    customer_candidates: List[str] = Field(default_factory=list)
    allow_similar_customer: bool = False
    # stored on the sale; confirming the same draft twice records it once
    draft_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    MERGEABLE: ClassVar[Tuple[str, ...]] = (
        "product", "quantity", "price_per_unit", "total_price", "sale_date",
        "salesperson", "customer_name", "customer_type", "notes",
    )

    def merged_with(self, entities: Dict[str, Any]) -> "CreateSaleDraft":
        """This message's entities override the draft; the draft supplies the rest."""
        incoming = {k: entities.get(k) for k in self.MERGEABLE if entities.get(k) not in (None, "")}
        data = self.model_dump()
        gives_unit = "price_per_unit" in incoming
        gives_total = "total_price" in incoming
        # A newly stated price replaces both sides unless both were restated.
        if gives_unit and not gives_total:
            data["total_price"] = None
        if gives_total and not gives_unit:
            data["price_per_unit"] = None
        if "customer_name" in incoming and incoming["customer_name"] != self.customer_name:
            data["customer_candidates"] = []
            data["allow_similar_customer"] = False
        data.update(incoming)
        return CreateSaleDraft.model_validate(data)

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.product:
            missing.append("product")
        if not self.customer_name:
            missing.append("customer")
        if self.price_per_unit is None and self.total_price is None:
            missing.append("price")
        for flagged in self.flagged_missing:
            key = _MISSING_ALIASES.get(flagged, flagged)
            if key not in ASKABLE_FIELDS:
                continue
            if key not in missing and not self._has(key):
                missing.append(key)
        return missing

    def _has(self, key: str) -> bool:
        if key == "customer":
            return bool(self.customer_name)
        if key == "price":
            return self.price_per_unit is not None or self.total_price is not None
        return getattr(self, key, None) not in (None, "")


ASKABLE_FIELDS = ("product", "customer", "price", "quantity")

_MISSING_ALIASES = {
    "customerName": "customer",
    "customer_name": "customer",
    "pricePerUnit": "price",
    "price_per_unit": "price",
    "totalPrice": "price",
    "total_price": "price",
}


class UpdateSaleDraft(BaseModel):
    kind: Literal["UPDATE_SALE"] = "UPDATE_SALE"
    sale_number: int
    product: Optional[str] = None
    quantity: Optional[float] = None
    price_per_unit: Optional[float] = None
    total_price: Optional[float] = None
    sale_date: Optional[datetime] = None
    salesperson: Optional[str] = None
    customer_name: Optional[str] = None
    customer_type: Optional[str] = None
    notes: Optional[str] = None
    # human-readable "old" values keyed by field, for the confirmation summary
    previous: Dict[str, str] = Field(default_factory=dict)
    customer_candidates: List[str] = Field(default_factory=list)
    allow_similar_customer: bool = False

    CHANGEABLE: ClassVar[Tuple[str, ...]] = (
        "product", "quantity", "price_per_unit", "total_price", "sale_date",
        "salesperson", "customer_name", "notes",
    )

    def changes(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.CHANGEABLE if getattr(self, k) is not None}


class DeleteSaleDraft(BaseModel):
    kind: Literal["DELETE_SALE"] = "DELETE_SALE"
    sale_number: int
    summary: str = ""


PendingAction = Annotated[
    Union[CreateSaleDraft, UpdateSaleDraft, DeleteSaleDraft],
    Field(discriminator="kind"),
]

_pending_adapter: TypeAdapter = TypeAdapter(PendingAction)


def dump_pending_action(action: Optional[PendingAction]) -> Optional[str]:
    if action is None:
        return None
    return action.model_dump_json()


def load_pending_action(raw: Optional[str]) -> Optional[PendingAction]:
    if not raw:
        return None
    return _pending_adapter.validate_json(raw)


# ---------- dialogue state ----------
class DialogueSnapshot(BaseModel):
    """Read-only view of a session handed to the intent oracle."""

    model_config = ConfigDict(frozen=True)

    partition_key: str
    display_name: Optional[str] = None
    stage: PendingStage = PendingStage.NONE
    pending_kind: Optional[str] = None
    pending: Dict[str, Any] = Field(default_factory=dict)
    last_sale_number: Optional[int] = None
    last_customer_name: Optional[str] = None


class DialogueState(BaseModel):
    partition_key: str
    display_name: Optional[str] = None
    last_message_at: datetime = Field(default_factory=utcnow)
    pending_action: Optional[PendingAction] = None
    pending_confirmation: bool = False
    pending_expires_at: Optional[datetime] = None
    last_sale_number: Optional[int] = None
    last_customer_name: Optional[str] = None
    # persisted row version this copy was read at (0 = never stored)
    version: int = 0

    @field_validator("last_message_at", "pending_expires_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return None
        return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _pending_consistency(self) -> "DialogueState":
        if self.pending_confirmation and self.pending_action is None:
            raise ValueError("pending_confirmation requires a pending_action")
        if self.pending_action is not None and self.pending_expires_at is None:
            raise ValueError("a pending_action requires pending_expires_at")
        return self

    # ----- derived -----
    @property
    def stage(self) -> PendingStage:
        if self.pending_action is None:
            return PendingStage.NONE
        if self.pending_confirmation:
            return PendingStage.AWAITING_CONFIRMATION
        return PendingStage.DRAFTING

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.pending_action is None or self.pending_expires_at is None:
            return False
        return self.pending_expires_at <= (now or utcnow())

    # ----- transitions -----
    def stage_draft(self, action: PendingAction, ttl: timedelta, now: Optional[datetime] = None) -> None:
        self._set_pending(action, False, ttl, now)

    def await_confirmation(self, action: PendingAction, ttl: timedelta, now: Optional[datetime] = None) -> None:
        self._set_pending(action, True, ttl, now)

    def _set_pending(self, action: PendingAction, confirm: bool, ttl: timedelta, now: Optional[datetime]) -> None:
        before = self.stage
        self.pending_action = action
        self.pending_confirmation = confirm
        self.pending_expires_at = (now or utcnow()) + ttl
        logger.debug("Pending %s: %s -> %s", action.kind, before.value, self.stage.value)

    def clear_pending(self, outcome: PendingStage) -> PendingStage:
        if outcome not in TERMINAL_STAGES:
            raise ValueError(f"{outcome} is not a terminal stage")
        kind = self.pending_action.kind if self.pending_action else None
        self.pending_action = None
        self.pending_confirmation = False
        self.pending_expires_at = None
        if kind:
            logger.info("Pending %s -> %s", kind, outcome.value)
        return outcome

    def expire_if_stale(self, now: Optional[datetime] = None) -> bool:
        if self.is_expired(now):
            self.clear_pending(PendingStage.EXPIRED)
            return True
        return False

    def remember(self, *, sale_number: Optional[int] = None, customer_name: Optional[str] = None) -> None:
        if sale_number is not None:
            self.last_sale_number = sale_number
        if customer_name:
            self.last_customer_name = customer_name

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_message_at = now or utcnow()

    def adopt(self, other: "DialogueState") -> None:
        """Take over every field of a freshly loaded copy of this partition."""
        for name in type(self).model_fields:
            setattr(self, name, getattr(other, name))

    def snapshot(self) -> DialogueSnapshot:
        pending = self.pending_action
        return DialogueSnapshot(
            partition_key=self.partition_key,
            display_name=self.display_name,
            stage=self.stage,
            pending_kind=pending.kind if pending else None,
            pending=(
                pending.model_dump(mode="json", exclude_defaults=True, exclude={"draft_id"}) if pending else {}
            ),
            last_sale_number=self.last_sale_number,
            last_customer_name=self.last_customer_name,
        )


__all__ = [
    "PendingStage",
    "CreateSaleDraft",
    "UpdateSaleDraft",
    "DeleteSaleDraft",
    "PendingAction",
    "DialogueSnapshot",
    "DialogueState",
    "dump_pending_action",
    "load_pending_action",
]
