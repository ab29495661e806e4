"""Typed records exchanged between the layers and their document encoding.

The record store persists plain JSON-compatible dictionaries. Everything the
business logic touches goes through the dataclasses below, and the
``serialize_*``/``deserialize_*`` pairs are the only place that knows how a
record maps onto a stored document. Monetary values are stored as strings so
:class:`~decimal.Decimal` precision survives the round trip; quantities are
plain integers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from .constants import (
    DisposalCondition,
    DisposalMethod,
    MovementDirection,
    MovementReason,
    PaymentMethod,
    PaymentStatus,
    ReturnStatus,
    ReturnType,
    StockPolicy,
    TransactionKind,
    TransactionStatus,
)


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a product document."""

    product_id: str
    name: str
    code: str = ""
    stock: int = 0
    purchase_cost: Decimal = Decimal("0")
    current_price: Decimal = Decimal("0")
    min_sale_price: Optional[Decimal] = None
    max_sale_price: Optional[Decimal] = None
    min_stock_level: Optional[int] = None
    max_stock_level: Optional[int] = None
    is_active: bool = True


@dataclass(frozen=True)
class LineItem:
    """One cart line embedded in every transaction document."""

    product_id: str
    quantity: int
    unit_price: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    free_quantity: int = 0
    name: str = ""
    reason: Optional[str] = None

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def final_unit_price(self) -> Decimal:
        if not self.quantity:
            return self.unit_price
        return self.unit_price - self.discount / self.quantity


@dataclass(frozen=True)
class StockEffect:
    """A pending stock delta for one product, produced by a flow.

    ``stock_applied`` marks a delta that already reached the product but whose
    movement record is still missing.
    """

    product_id: str
    delta: int
    reason: MovementReason
    policy: StockPolicy = StockPolicy.UNBOUNDED
    stock_applied: bool = False


@dataclass(frozen=True)
class StockShortfall:
    """A product whose available stock cannot cover the requested quantity."""

    product_id: str
    requested: int
    available: int


@dataclass(frozen=True)
class StockMovementRow:
    """Immutable audit record explaining one quantity change."""

    movement_id: Optional[str]
    product_id: str
    direction: MovementDirection
    quantity: int
    reason: str
    reference: str
    actor: str
    timestamp_iso: str


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a sale, purchase, return, or disposal document.

    Flow-specific columns stay ``None`` when they do not apply, mirroring a
    single wide ledger row rather than one class per document kind.
    """

    record_id: Optional[str]
    kind: TransactionKind
    document_number: Optional[str]
    lines: Tuple[LineItem, ...]
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    actor: str
    created_at: str
    status: TransactionStatus = TransactionStatus.COMPLETE
    reference: Optional[str] = None
    counterparty_id: Optional[str] = None
    counterparty_name: Optional[str] = None
    counterparty_contact: Optional[str] = None
    counterparty_address: Optional[str] = None
    return_status: Optional[ReturnStatus] = None
    payment_method: Optional[PaymentMethod] = None
    payment_status: Optional[PaymentStatus] = None
    return_type: Optional[ReturnType] = None
    disposal_condition: Optional[DisposalCondition] = None
    disposal_method: Optional[DisposalMethod] = None
    recovered_value: Optional[Decimal] = None
    loss_amount: Optional[Decimal] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    pending_effects: Tuple[StockEffect, ...] = field(default_factory=tuple)
    reconciliation_error: Optional[str] = None
    target_status: Optional[TransactionStatus] = None


def _decimal(raw: Any, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _optional_decimal(raw: Any) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw is not None else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _optional_int(raw: Any) -> Optional[int]:
    return int(raw) if raw is not None else None


def _enum_value(member: Any) -> Any:
    return member.value if member is not None else None


def serialize_product(record: ProductRow) -> Dict[str, Any]:
    """Convert a product dataclass into its stored document."""

    return {
        "id": record.product_id,
        "name": record.name,
        "code": record.code,
        "stock": int(record.stock),
        "purchase_cost": _money(record.purchase_cost),
        "current_price": _money(record.current_price),
        "min_sale_price": _money(record.min_sale_price),
        "max_sale_price": _money(record.max_sale_price),
        "min_stock_level": record.min_stock_level,
        "max_stock_level": record.max_stock_level,
        "is_active": record.is_active,
    }


def deserialize_product(document: Mapping[str, Any]) -> ProductRow:
    """Convert a stored product document into a :class:`ProductRow`.

    Missing numeric fields fall back to zero so that partially populated
    catalog entries created by other tools still load.
    """

    return ProductRow(
        product_id=str(document["id"]),
        name=str(document.get("name") or ""),
        code=str(document.get("code") or ""),
        stock=int(document.get("stock") or 0),
        purchase_cost=_decimal(document.get("purchase_cost")),
        current_price=_decimal(document.get("current_price")),
        min_sale_price=_optional_decimal(document.get("min_sale_price")),
        max_sale_price=_optional_decimal(document.get("max_sale_price")),
        min_stock_level=_optional_int(document.get("min_stock_level")),
        max_stock_level=_optional_int(document.get("max_stock_level")),
        is_active=bool(document.get("is_active", True)),
    )


def serialize_line(line: LineItem) -> Dict[str, Any]:
    return {
        "product_id": line.product_id,
        "name": line.name,
        "quantity": int(line.quantity),
        "unit_price": _money(line.unit_price),
        "discount": _money(line.discount),
        "final_unit_price": _money(line.final_unit_price),
        "free_quantity": int(line.free_quantity),
        "reason": line.reason,
    }


def deserialize_line(document: Mapping[str, Any]) -> LineItem:
    return LineItem(
        product_id=str(document["product_id"]),
        name=str(document.get("name") or ""),
        quantity=int(document.get("quantity") or 0),
        unit_price=_decimal(document.get("unit_price")),
        discount=_decimal(document.get("discount")),
        free_quantity=int(document.get("free_quantity") or 0),
        reason=document.get("reason"),
    )


def serialize_effect(effect: StockEffect) -> Dict[str, Any]:
    return {
        "product_id": effect.product_id,
        "delta": int(effect.delta),
        "reason": effect.reason.value,
        "policy": effect.policy.value,
        "stock_applied": bool(effect.stock_applied),
    }


def deserialize_effect(document: Mapping[str, Any]) -> StockEffect:
    return StockEffect(
        product_id=str(document["product_id"]),
        delta=int(document["delta"]),
        reason=MovementReason(document["reason"]),
        policy=StockPolicy(document.get("policy", StockPolicy.UNBOUNDED.value)),
        stock_applied=bool(document.get("stock_applied", False)),
    )


def serialize_movement(record: StockMovementRow) -> Dict[str, Any]:
    """Convert a movement dataclass into its stored document."""

    return {
        "item_id": record.product_id,
        "type": record.direction.value,
        "quantity": int(record.quantity),
        "reason": record.reason,
        "reference": record.reference,
        "staff": record.actor,
        "date": record.timestamp_iso,
    }


def deserialize_movement(document: Mapping[str, Any]) -> StockMovementRow:
    """Convert a stored movement document into a :class:`StockMovementRow`."""

    return StockMovementRow(
        movement_id=document.get("id"),
        product_id=str(document["item_id"]),
        direction=MovementDirection(document["type"]),
        quantity=int(document["quantity"]),
        reason=str(document.get("reason") or ""),
        reference=str(document.get("reference") or ""),
        actor=str(document.get("staff") or ""),
        timestamp_iso=str(document.get("date") or ""),
    )


def serialize_transaction(record: TransactionRow) -> Dict[str, Any]:
    """Convert a transaction dataclass into its stored document.

    The record id is deliberately left out: the store owns identifiers and
    echoes them back under ``"id"`` when documents are read.
    """

    return {
        "kind": record.kind.value,
        "document_number": record.document_number,
        "items": [serialize_line(line) for line in record.lines],
        "subtotal": _money(record.subtotal),
        "discount": _money(record.discount),
        "total": _money(record.total),
        "staff": record.actor,
        "created_at": record.created_at,
        "status": record.status.value,
        "reference": record.reference,
        "counterparty_id": record.counterparty_id,
        "counterparty_name": record.counterparty_name,
        "counterparty_contact": record.counterparty_contact,
        "counterparty_address": record.counterparty_address,
        "return_status": _enum_value(record.return_status),
        "payment_method": _enum_value(record.payment_method),
        "payment_status": _enum_value(record.payment_status),
        "return_type": _enum_value(record.return_type),
        "disposal_condition": _enum_value(record.disposal_condition),
        "disposal_method": _enum_value(record.disposal_method),
        "recovered_value": _money(record.recovered_value),
        "loss_amount": _money(record.loss_amount),
        "reason": record.reason,
        "notes": record.notes,
        "pending_effects": [serialize_effect(effect) for effect in record.pending_effects],
        "reconciliation_error": record.reconciliation_error,
        "target_status": _enum_value(record.target_status),
    }


def deserialize_transaction(document: Mapping[str, Any]) -> TransactionRow:
    """Convert a stored transaction document into a :class:`TransactionRow`."""

    def _optional_enum(enum_type, key):
        raw = document.get(key)
        return enum_type(raw) if raw is not None else None

    return TransactionRow(
        record_id=document.get("id"),
        kind=TransactionKind(document["kind"]),
        document_number=document.get("document_number"),
        lines=tuple(deserialize_line(item) for item in document.get("items") or ()),
        subtotal=_decimal(document.get("subtotal")),
        discount=_decimal(document.get("discount")),
        total=_decimal(document.get("total")),
        actor=str(document.get("staff") or ""),
        created_at=str(document.get("created_at") or ""),
        status=TransactionStatus(document.get("status", TransactionStatus.COMPLETE.value)),
        reference=document.get("reference"),
        counterparty_id=document.get("counterparty_id"),
        counterparty_name=document.get("counterparty_name"),
        counterparty_contact=document.get("counterparty_contact"),
        counterparty_address=document.get("counterparty_address"),
        return_status=_optional_enum(ReturnStatus, "return_status"),
        payment_method=_optional_enum(PaymentMethod, "payment_method"),
        payment_status=_optional_enum(PaymentStatus, "payment_status"),
        return_type=_optional_enum(ReturnType, "return_type"),
        disposal_condition=_optional_enum(DisposalCondition, "disposal_condition"),
        disposal_method=_optional_enum(DisposalMethod, "disposal_method"),
        recovered_value=_optional_decimal(document.get("recovered_value")),
        loss_amount=_optional_decimal(document.get("loss_amount")),
        reason=document.get("reason"),
        notes=document.get("notes"),
        pending_effects=tuple(
            deserialize_effect(item) for item in document.get("pending_effects") or ()
        ),
        reconciliation_error=document.get("reconciliation_error"),
        target_status=_optional_enum(TransactionStatus, "target_status"),
    )
