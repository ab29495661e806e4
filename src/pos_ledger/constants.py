"""Enumerations shared across the POS ledger modules.

Centralises the closed option sets (document kinds, movement reasons, return
types, disposal conditions and methods) so that the record store adapters,
the business logic layer, and the CLI rely on a single source of truth
instead of loosely validated strings.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

WALK_IN_CUSTOMER = "Walk-in Customer"


class Collection(str, Enum):
    """Enumerate the record store collections (one worksheet each)."""

    PRODUCTS = "Products"
    SALES = "Sales"
    PURCHASES = "Purchases"
    CUSTOMER_RETURNS = "CustomerReturns"
    SUPPLIER_RETURNS = "SupplierReturns"
    DISPOSALS = "Disposals"
    STOCK_MOVEMENTS = "StockMovements"
    COUNTERS = "Counters"


class SequenceName(str, Enum):
    """Enumerate the independent document numbering streams."""

    INVOICE = "invoice"
    SUPPLIER_INVOICE = "supplierInvoice"
    CUSTOMER_RETURN = "customerReturn"
    SUPPLIER_RETURN = "supplierReturn"


class TransactionKind(str, Enum):
    """Enumerate the mutating flows that produce a transaction document."""

    SALE = "sale"
    PURCHASE = "purchase"
    CUSTOMER_RETURN = "customer-return"
    SUPPLIER_RETURN = "supplier-return"
    DISPOSAL = "disposal"


class TransactionStatus(str, Enum):
    """Lifecycle status persisted on every transaction document."""

    COMPLETE = "complete"
    NEEDS_RECONCILIATION = "needs-reconciliation"
    CANCELLED = "cancelled"


class TransactionState(str, Enum):
    """In-flight states of a single orchestrator run."""

    VALIDATING = "validating"
    NUMBER_ISSUED = "number-issued"
    PERSISTED = "persisted"
    STOCK_APPLIED = "stock-applied"
    COMPLETE = "complete"
    FAILED = "failed"


class ReturnStatus(str, Enum):
    """Whether a sale or purchase has been returned."""

    NONE = "none"
    FULL = "full"


class MovementDirection(str, Enum):
    """Direction of a stock movement."""

    IN = "in"
    OUT = "out"


class MovementReason(str, Enum):
    """Canonical reasons recorded on stock movements."""

    SALE = "Sale"
    PURCHASE = "Purchase"
    TRADE_DISCOUNT = "Trade Discount"
    CUSTOMER_RETURN = "Customer Return"
    SUPPLIER_RETURN = "Supplier Return"
    DISPOSAL_RETURN_SUPPLIER = "Disposal - Return to Supplier"
    SALE_DISCARD = "Sale Discard"
    MANUAL_IN = "Manual Stock In"
    MANUAL_OUT = "Manual Stock Out"
    COMPENSATION = "Compensation"


class StockPolicy(str, Enum):
    """How the ledger treats a delta that would drive stock below zero."""

    FORBID_NEGATIVE = "forbid-negative"
    CLAMP_AT_ZERO = "clamp-at-zero"
    UNBOUNDED = "unbounded"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "cash"
    CARD = "card"
    MOBILE = "mobile"
    CREDIT = "credit"


class PaymentStatus(str, Enum):
    """Settlement status of a sale."""

    PAID = "paid"
    PENDING = "pending"


class ReturnType(str, Enum):
    """Whether a return references an original document."""

    MANUAL = "manual"
    INVOICE = "invoice"


class DisposalCondition(str, Enum):
    """Physical condition of disposed goods."""

    DAMAGED = "damaged"
    EXPIRED = "expired"
    DEFECTIVE = "defective"
    UNSOLD = "unsold"
    STOLEN = "stolen"


class DisposalMethod(str, Enum):
    """How disposed goods leave the shop floor."""

    DISCARD = "discard"
    DONATE = "donate"
    SELL_DISCOUNT = "sell-discount"
    RETURN_SUPPLIER = "return-supplier"
    RECYCLE = "recycle"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "WALK_IN_CUSTOMER",
    "Collection",
    "SequenceName",
    "TransactionKind",
    "TransactionStatus",
    "TransactionState",
    "ReturnStatus",
    "MovementDirection",
    "MovementReason",
    "StockPolicy",
    "PaymentMethod",
    "PaymentStatus",
    "ReturnType",
    "DisposalCondition",
    "DisposalMethod",
]
