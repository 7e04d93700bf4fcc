from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class IntentAction(str, Enum):
    CREATE_SALE = "CREATE_SALE"
    CONFIRM_ACTION = "CONFIRM_ACTION"
    CANCEL_ACTION = "CANCEL_ACTION"
    UPDATE_SALE = "UPDATE_SALE"
    LIST_SALES = "LIST_SALES"
    DELETE_SALE = "DELETE_SALE"
    VIEW_CUSTOMER = "VIEW_CUSTOMER"
    UPDATE_CUSTOMER = "UPDATE_CUSTOMER"
    UNKNOWN = "UNKNOWN"


class IntentEntities(BaseModel):
    # sale
    product: Optional[str] = None
    quantity: Optional[float] = None
    price_per_unit: Optional[float] = None
    total_price: Optional[float] = None
    sale_date: Optional[datetime] = None
    salesperson: Optional[str] = None
    notes: Optional[str] = None
    # customer
    customer_name: Optional[str] = None
    customer_type: Optional[str] = None
    customer_document: Optional[str] = None
    customer_address: Optional[str] = None
    customer_notes: Optional[str] = None
    # references / filters
    sale_number: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def present(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Intent(BaseModel):
    action: IntentAction = IntentAction.UNKNOWN
    confidence: float = 0.0
    entities: IntentEntities = Field(default_factory=IntentEntities)
    missing_fields: List[str] = Field(default_factory=list)
    original_message: str = ""

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return max(0.0, min(1.0, float(v)))

    @classmethod
    def unknown(cls, message: str = "") -> "Intent":
        return cls(action=IntentAction.UNKNOWN, confidence=0.0, original_message=message)


__all__ = ["IntentAction", "IntentEntities", "Intent"]
