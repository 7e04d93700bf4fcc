# services/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class LedgerError(Exception):
    """Base class for expected failures of the customer/sales layer."""


class ValidationFailure(LedgerError, ValueError):
    """A draft failed validation. `problems` is a list of {"field", "message"}."""

    def __init__(self, problems: Sequence[Dict[str, str]]):
        self.problems: List[Dict[str, str]] = list(problems)
        joined = "; ".join(f"{p['field']}: {p['message']}" for p in self.problems)
        super().__init__(joined or "invalid data")

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationFailure":
        problems = []
        for err in exc.errors():
            loc = ".".join(str(x) for x in err.get("loc", ())) or "data"
            problems.append({"field": loc, "message": err.get("msg", "invalid value")})
        return cls(problems)

    @property
    def fields(self) -> List[str]:
        return [p["field"] for p in self.problems]


class SaleValidationError(ValidationFailure):
    pass


class CustomerValidationError(ValidationFailure):
    pass


class DisambiguationRequired(LedgerError):
    """Customer name is close to existing customers; the caller must choose."""

    def __init__(self, name: str, candidates: Sequence[Dict[str, Any]]):
        self.name = name
        self.candidates: List[Dict[str, Any]] = list(candidates)
        names = ", ".join(c["name"] for c in self.candidates)
        super().__init__(f"Customer '{name}' is similar to existing customers: {names}")


class NotFound(LedgerError, LookupError):
    pass


class SaleNotFound(NotFound):
    def __init__(self, sale_number: int):
        self.sale_number = sale_number
        super().__init__(f"Sale #{sale_number} not found")


class CustomerNotFound(NotFound):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Customer '{name}' not found")


class TransientStoreError(LedgerError):
    """Persistence kept failing after all retries."""

    def __init__(self, message: str, attempts: Optional[int] = None):
        self.attempts = attempts
        super().__init__(message)


__all__ = [
    "LedgerError",
    "ValidationFailure",
    "SaleValidationError",
    "CustomerValidationError",
    "DisambiguationRequired",
    "NotFound",
    "SaleNotFound",
    "CustomerNotFound",
    "TransientStoreError",
]
