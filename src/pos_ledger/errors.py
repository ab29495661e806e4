"""Error taxonomy raised by the business logic layer.

Validation and duplicate errors are raised before anything is written.
Sequence and stock errors raised after the transaction document exists are
wrapped in :class:`PartialReconciliationError` so callers can never mistake
them for a clean failure.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for structurally invalid commands (empty cart, missing fields)."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or document is unknown."""


class ProductNotFoundError(MissingReferenceError):
    """Raised when a product no longer exists in the record store."""

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Unknown product id: {product_id}")
        self.product_id = product_id


class DuplicateReturnError(BusinessRuleViolation):
    """Raised when the original invoice or purchase was already returned."""

    def __init__(self, original_number: str, existing_return_number: Optional[str]) -> None:
        existing = existing_return_number or "in progress"
        super().__init__(
            f"Invoice {original_number} has already been returned (Return #{existing})"
        )
        self.original_number = original_number
        self.existing_return_number = existing_return_number


class InsufficientStockError(BusinessRuleViolation):
    """Raised when one or more lines exceed the available stock."""

    def __init__(self, shortfalls: Sequence[Any]) -> None:
        details = ", ".join(
            f"{item.product_id}: need {item.requested}, available {item.available}"
            for item in shortfalls
        )
        super().__init__(f"Insufficient stock. {details}")
        self.shortfalls = tuple(shortfalls)


class SequenceUnavailableError(BusinessRuleViolation):
    """Raised when a sequence number could not be confirmed after retries."""


class StockContentionError(BusinessRuleViolation):
    """Raised when a stock compare-and-swap kept losing after retries."""


class UncompensatedStockError(BusinessRuleViolation):
    """Raised when a stock change stuck but neither its movement nor its undo could be written.

    The product already carries ``applied``; only the audit record is missing.
    """

    def __init__(self, product_id: str, applied: int, reference: str) -> None:
        super().__init__(
            f"Stock of {product_id} changed by {applied} for {reference} without a movement record"
        )
        self.product_id = product_id
        self.applied = applied
        self.reference = reference


class PartialReconciliationError(BusinessRuleViolation):
    """Raised when a transaction was persisted without its full stock effect.

    ``flagged`` reports whether the document was successfully marked as
    ``needs-reconciliation``; when it is ``False`` the store itself failed and
    an operator has to repair the document by hand.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        record_id: str,
        document_number: Optional[str],
        applied: Sequence[Any] = (),
        pending: Sequence[Any] = (),
        flagged: bool = True,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.record_id = record_id
        self.document_number = document_number
        self.applied = tuple(applied)
        self.pending = tuple(pending)
        self.flagged = flagged


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "MissingReferenceError",
    "ProductNotFoundError",
    "DuplicateReturnError",
    "InsufficientStockError",
    "SequenceUnavailableError",
    "StockContentionError",
    "UncompensatedStockError",
    "PartialReconciliationError",
]
