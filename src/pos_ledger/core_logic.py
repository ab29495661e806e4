"""Business logic layer for the POS ledger.

This module orchestrates the mutating flows (sale, purchase, customer return,
supplier return, disposal, sale discard, manual adjustment) on top of the
record store, the sequence counter and the stock ledger. Every flow follows
the same engine:

``validating -> number-issued -> persisted -> stock-applied -> complete``

The transaction document is written ahead of its stock effects: it is
created as ``needs-reconciliation`` with every pending effect listed, and
only flips to its target status once all effects are applied. A process
that dies halfway therefore always leaves a document that
:func:`reconcile_transaction` can finish.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, NoReturn, Optional, Sequence, Tuple, Union

from filelock import FileLock
from openpyxl.workbook import Workbook

from . import data_manager, discounts, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    WALK_IN_CUSTOMER,
    Collection,
    DisposalCondition,
    DisposalMethod,
    MovementDirection,
    MovementReason,
    PaymentMethod,
    PaymentStatus,
    ReturnStatus,
    ReturnType,
    SequenceName,
    StockPolicy,
    TransactionKind,
    TransactionState,
    TransactionStatus,
)
from .errors import (
    BusinessRuleViolation,
    DuplicateReturnError,
    InsufficientStockError,
    MissingReferenceError,
    PartialReconciliationError,
    UncompensatedStockError,
    ValidationError,
)
from .records import (
    LineItem,
    ProductRow,
    StockEffect,
    StockMovementRow,
    TransactionRow,
    deserialize_transaction,
    serialize_effect,
    serialize_product,
    serialize_transaction,
)
from .sequence_counter import SequenceCounter
from .stock_ledger import MANUAL_REFERENCE, StockLedger


KIND_COLLECTIONS: Dict[TransactionKind, Collection] = {
    TransactionKind.SALE: Collection.SALES,
    TransactionKind.PURCHASE: Collection.PURCHASES,
    TransactionKind.CUSTOMER_RETURN: Collection.CUSTOMER_RETURNS,
    TransactionKind.SUPPLIER_RETURN: Collection.SUPPLIER_RETURNS,
    TransactionKind.DISPOSAL: Collection.DISPOSALS,
}

RETURN_COLLECTIONS = (Collection.CUSTOMER_RETURNS, Collection.SUPPLIER_RETURNS)

_TRANSITIONS: Dict[TransactionState, Tuple[TransactionState, ...]] = {
    TransactionState.VALIDATING: (TransactionState.NUMBER_ISSUED, TransactionState.PERSISTED),
    TransactionState.NUMBER_ISSUED: (TransactionState.PERSISTED,),
    TransactionState.PERSISTED: (TransactionState.STOCK_APPLIED,),
    TransactionState.STOCK_APPLIED: (TransactionState.COMPLETE,),
    TransactionState.COMPLETE: (),
    TransactionState.FAILED: (),
}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and store references used by the BLL."""

    settings: data_manager.ConfigSettings
    store: data_manager.RecordStore
    counter: SequenceCounter
    ledger: StockLedger
    workbook: Optional[Workbook] = field(default=None, repr=False, compare=False)
    lock: Optional[FileLock] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class Customer:
    name: str = WALK_IN_CUSTOMER
    phone: Optional[str] = None
    customer_id: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class Supplier:
    supplier_id: Optional[str] = None
    name: str = ""
    contact: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for issuing a sale invoice.

    ``discount`` is a cart-level amount. When ``discount_percentage`` is given
    it takes precedence and the amount is derived from the cart subtotal.
    Line-level ``discount`` values are ignored and re-allocated.
    """

    lines: Tuple[LineItem, ...]
    actor: str
    discount: Decimal = Decimal("0")
    discount_percentage: Optional[Decimal] = None
    customer: Customer = field(default_factory=Customer)
    payment_method: PaymentMethod = PaymentMethod.CASH
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for recording a supplier purchase."""

    lines: Tuple[LineItem, ...]
    actor: str
    supplier: Supplier
    discount: Decimal = Decimal("0")
    discount_percentage: Optional[Decimal] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class CustomerReturnCommand:
    """User intent for taking goods back from a customer."""

    lines: Tuple[LineItem, ...]
    actor: str
    customer: Customer
    return_type: ReturnType = ReturnType.MANUAL
    original_invoice: Optional[str] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SupplierReturnCommand:
    """User intent for sending goods back to a supplier."""

    lines: Tuple[LineItem, ...]
    actor: str
    supplier: Supplier
    return_type: ReturnType = ReturnType.MANUAL
    original_invoice: Optional[str] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class DisposalCommand:
    """User intent for writing off damaged, expired or otherwise lost goods."""

    product_id: str
    quantity: int
    original_price: Decimal
    recovered_value: Decimal
    condition: DisposalCondition
    method: DisposalMethod
    actor: str
    reason: Optional[str] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class DiscardSaleCommand:
    invoice_number: str
    actor: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class AdjustmentCommand:
    product_id: str
    quantity: int
    direction: MovementDirection
    actor: str
    reference: str = MANUAL_REFERENCE


@dataclass(frozen=True)
class TransactionResult:
    """Outcome of a completed flow, including its state history."""

    record_id: str
    kind: TransactionKind
    document_number: Optional[str]
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    lines: Tuple[LineItem, ...]
    status: TransactionStatus
    states: Tuple[TransactionState, ...]
    movements: Tuple[StockMovementRow, ...] = ()


class _FlowRun:
    """State history of one orchestrator run."""

    def __init__(self, kind: TransactionKind, initial: TransactionState = TransactionState.VALIDATING) -> None:
        self.kind = kind
        self.states: List[TransactionState] = [initial]

    @property
    def state(self) -> TransactionState:
        return self.states[-1]

    def advance(self, target: TransactionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal {self.kind.value} transition {self.state.value} -> {target.value}")
        self.states.append(target)

    def fail(self) -> None:
        if self.state not in (TransactionState.FAILED, TransactionState.COMPLETE):
            self.states.append(TransactionState.FAILED)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC datetime."""

    return candidate if candidate is not None else datetime.now(UTC)


@contextmanager
def _validating(run: _FlowRun) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        run.fail()
        log.warning("%s rejected: %s", run.kind.value, exc)
        raise


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a workbook-backed store for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    The data file stays exclusively locked until :func:`release_context` is
    called, so a context must be released once its changes are persisted.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        data_manager.WorkbookLockedError: If another process holds the data
            file for longer than ``Concurrency.LockTimeout``.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    lock = data_manager.acquire_workbook_lock(settings.data_file, settings.lock_timeout)
    try:
        workbook = data_manager.open_workbook(settings.data_file)
    except Exception:
        data_manager.release_workbook_lock(lock)
        raise
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, data_manager.WorkbookRecordStore(workbook), workbook=workbook, lock=lock)


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    store: data_manager.RecordStore,
    *,
    workbook: Optional[Workbook] = None,
    lock: Optional[FileLock] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RuntimeContext:
    """Wire a counter and a ledger around ``store`` using the configured retry policy."""

    counter = SequenceCounter(
        store,
        max_attempts=settings.max_attempts,
        backoff_base=settings.backoff_base,
        sleep=sleep,
    )
    ledger = StockLedger(
        store,
        max_attempts=settings.max_attempts,
        backoff_base=settings.backoff_base,
        sleep=sleep,
    )
    return RuntimeContext(
        settings=settings, store=store, counter=counter, ledger=ledger, workbook=workbook, lock=lock
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Contexts built around a non-workbook store have nothing to save.
    """

    if context.workbook is None:
        log.debug("Runtime context has no workbook; nothing to persist")
        return
    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Raises:
        RuntimeError: If the context is not backed by a workbook.
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    if context.workbook is None:
        raise RuntimeError("Only workbook-backed contexts can be refreshed")
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_runtime_context(
        context.settings, data_manager.WorkbookRecordStore(workbook), workbook=workbook, lock=context.lock
    )


def release_context(context: RuntimeContext) -> None:
    """Give up the workbook lock. Unsaved changes are not written."""

    data_manager.release_workbook_lock(context.lock)


def require_positive_quantity(quantity: Any) -> None:
    """Validate that a quantity is a strictly positive whole number.

    Raises:
        ValidationError: If ``quantity`` is not an integer or is not positive.
    """

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """

    if Decimal(amount) < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")


def _require_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required")
    return str(value).strip()


def _validate_lines(context: RuntimeContext, lines: Sequence[LineItem]) -> Tuple[LineItem, ...]:
    """Check every cart line and fill in missing product names."""

    if not lines:
        raise ValidationError("At least one line item is required")

    checked = []
    for line in lines:
        require_positive_quantity(line.quantity)
        if isinstance(line.free_quantity, bool) or not isinstance(line.free_quantity, int) or line.free_quantity < 0:
            raise ValidationError("Free quantity must be a whole number of zero or more")
        unit_price = Decimal(str(line.unit_price))
        require_nonnegative_money(unit_price)
        product = context.ledger.get_product(line.product_id)
        checked.append(replace(line, unit_price=unit_price, discount=Decimal("0"), name=line.name or product.name))
    return tuple(checked)


def _resolve_cart_discount(
    context: RuntimeContext,
    amount: Decimal,
    percentage: Optional[Decimal],
    subtotal: Decimal,
) -> Decimal:
    quantum = context.settings.money_quantum
    if percentage is not None:
        cart_discount = discounts.CartDiscount.by_percentage(Decimal(str(percentage)), subtotal, quantum=quantum)
    else:
        cart_discount = discounts.CartDiscount.by_amount(Decimal(str(amount)), subtotal, quantum=quantum)
    if cart_discount.amount > subtotal:
        raise ValidationError(f"Discount {cart_discount.amount} exceeds the cart subtotal {subtotal}")
    return cart_discount.amount


def _apply_discount(
    context: RuntimeContext, lines: Tuple[LineItem, ...], total_discount: Decimal
) -> Tuple[LineItem, ...]:
    shares = discounts.allocate(
        [line.subtotal for line in lines],
        total_discount,
        quantum=context.settings.money_quantum,
    )
    return tuple(replace(line, discount=share) for line, share in zip(lines, shares))


def _cart_subtotal(lines: Sequence[LineItem]) -> Decimal:
    return sum((line.subtotal for line in lines), Decimal("0"))


def _group_effects(effects: Sequence[StockEffect]) -> Tuple[StockEffect, ...]:
    """Merge effects per product and reason, keeping first-seen order."""

    grouped: Dict[Tuple[str, MovementReason, StockPolicy], int] = {}
    for effect in effects:
        key = (effect.product_id, effect.reason, effect.policy)
        grouped[key] = grouped.get(key, 0) + effect.delta
    return tuple(
        StockEffect(product_id, delta, reason, policy)
        for (product_id, reason, policy), delta in grouped.items()
        if delta
    )


def _draft(
    kind: TransactionKind,
    command: Any,
    lines: Tuple[LineItem, ...],
    *,
    subtotal: Decimal,
    discount: Decimal,
    total: Decimal,
    **fields: Any,
) -> TransactionRow:
    return TransactionRow(
        record_id=None,
        kind=kind,
        document_number=None,
        lines=lines,
        subtotal=subtotal,
        discount=discount,
        total=total,
        actor=command.actor.strip(),
        created_at=_resolve_timestamp(command.timestamp).isoformat(),
        notes=command.notes,
        **fields,
    )


def _result(record: TransactionRow, run: _FlowRun, movements: Sequence[StockMovementRow]) -> TransactionResult:
    return TransactionResult(
        record_id=record.record_id or "",
        kind=record.kind,
        document_number=record.document_number,
        subtotal=record.subtotal,
        discount=record.discount,
        total=record.total,
        lines=record.lines,
        status=record.status,
        states=tuple(run.states),
        movements=tuple(movements),
    )


def _fail_after_persist(
    context: RuntimeContext,
    run: _FlowRun,
    *,
    collection: Collection,
    record: TransactionRow,
    applied: Sequence[StockEffect],
    pending: Sequence[StockEffect],
    error: Exception,
    rollback_status: Optional[TransactionStatus],
    on_abort: Optional[Callable[[], None]],
) -> NoReturn:
    """Roll the document back when nothing was applied, otherwise flag it.

    Always raises: either ``error`` itself after a clean rollback, or a
    :class:`PartialReconciliationError` chained to ``error``.
    """

    run.fail()
    record_id = record.record_id or ""

    if not applied and rollback_status is not None:
        try:
            context.store.update(
                collection,
                record_id,
                {
                    "status": rollback_status.value,
                    "pending_effects": [],
                    "target_status": None,
                    "reconciliation_error": str(error),
                },
            )
        except data_manager.RecordStoreError as exc:
            log.error("Rolling back %s %s failed: %s", record.kind.value, record_id, exc)
        else:
            log.warning(
                "Rolled back %s %s to '%s': %s",
                record.kind.value,
                record.document_number or record_id,
                rollback_status.value,
                error,
            )
            if on_abort is not None:
                on_abort()
            raise error

    flagged = True
    try:
        context.store.update(
            collection,
            record_id,
            {
                "status": TransactionStatus.NEEDS_RECONCILIATION.value,
                "pending_effects": [serialize_effect(effect) for effect in pending],
                "reconciliation_error": str(error),
            },
        )
    except data_manager.RecordStoreError as exc:
        flagged = False
        log.error("Could not flag %s %s for reconciliation: %s", record.kind.value, record_id, exc)

    label = record.document_number or record_id
    log.error(
        "%s %s persisted with %d of %d stock effects applied: %s",
        record.kind.value,
        label,
        len(applied),
        len(applied) + len(pending),
        error,
    )
    raise PartialReconciliationError(
        f"{record.kind.value} {label} needs reconciliation: {error}",
        kind=record.kind.value,
        record_id=record_id,
        document_number=record.document_number,
        applied=applied,
        pending=pending,
        flagged=flagged,
    ) from error


def _settle(
    context: RuntimeContext,
    run: _FlowRun,
    *,
    collection: Collection,
    record: TransactionRow,
    effects: Sequence[StockEffect],
    reference: str,
    final_status: TransactionStatus,
    rollback_status: Optional[TransactionStatus],
    on_abort: Optional[Callable[[], None]] = None,
) -> List[StockMovementRow]:
    """Apply ``effects`` one by one, then move the document to ``final_status``."""

    applied: List[StockEffect] = []
    movements: List[StockMovementRow] = []
    for index, effect in enumerate(effects):
        try:
            if effect.stock_applied:
                movement = context.ledger.record_movement(
                    effect.product_id,
                    effect.delta,
                    reason=effect.reason,
                    reference=reference,
                    actor=record.actor,
                )
            else:
                movement = context.ledger.apply(
                    effect.product_id,
                    effect.delta,
                    reason=effect.reason,
                    reference=reference,
                    actor=record.actor,
                    policy=effect.policy,
                )
        except UncompensatedStockError as exc:
            # The stock moved; only its movement is still owed.
            _fail_after_persist(
                context,
                run,
                collection=collection,
                record=record,
                applied=[*applied, effect],
                pending=(replace(effect, stock_applied=True), *effects[index + 1 :]),
                error=exc,
                rollback_status=rollback_status,
                on_abort=on_abort,
            )
        except (BusinessRuleViolation, data_manager.RecordStoreError) as exc:
            _fail_after_persist(
                context,
                run,
                collection=collection,
                record=record,
                applied=applied,
                pending=effects[index:],
                error=exc,
                rollback_status=rollback_status,
                on_abort=on_abort,
            )
        applied.append(effect)
        if movement is not None:
            movements.append(movement)
    run.advance(TransactionState.STOCK_APPLIED)

    try:
        if record.kind is TransactionKind.PURCHASE and final_status is TransactionStatus.COMPLETE:
            _refresh_purchase_costs(context, record)
        context.store.update(
            collection,
            record.record_id or "",
            {"status": final_status.value, "pending_effects": [], "target_status": None, "reconciliation_error": None},
        )
    except (BusinessRuleViolation, data_manager.RecordStoreError) as exc:
        _fail_after_persist(
            context,
            run,
            collection=collection,
            record=record,
            applied=applied,
            pending=(),
            error=exc,
            rollback_status=None,
            on_abort=None,
        )
    run.advance(TransactionState.COMPLETE)
    return movements


def _refresh_purchase_costs(context: RuntimeContext, record: TransactionRow) -> None:
    for line in record.lines:
        context.ledger.set_purchase_cost(line.product_id, line.final_unit_price)


def _commit(
    context: RuntimeContext,
    run: _FlowRun,
    *,
    collection: Collection,
    sequence: Optional[SequenceName],
    draft: TransactionRow,
    effects: Sequence[StockEffect],
    on_abort: Optional[Callable[[], None]] = None,
) -> TransactionResult:
    """Number, persist and settle a validated draft.

    Raises:
        SequenceUnavailableError: If no number could be issued. Nothing is
            persisted.
        RecordStoreError: If the document could not be created.
        PartialReconciliationError: If the document exists but its stock
            effects could not all be applied.
    """

    effects = _group_effects(effects)
    try:
        document_number = None
        if sequence is not None:
            document_number = context.counter.next(sequence)
            run.advance(TransactionState.NUMBER_ISSUED)
        record = replace(
            draft,
            document_number=document_number,
            status=TransactionStatus.NEEDS_RECONCILIATION,
            pending_effects=effects,
            target_status=TransactionStatus.COMPLETE,
        )
        record_id = context.store.create(collection, serialize_transaction(record))
    except (BusinessRuleViolation, data_manager.RecordStoreError) as exc:
        run.fail()
        log.error("%s aborted before persisting: %s", draft.kind.value, exc)
        if on_abort is not None:
            on_abort()
        raise

    record = replace(record, record_id=record_id)
    run.advance(TransactionState.PERSISTED)
    movements = _settle(
        context,
        run,
        collection=collection,
        record=record,
        effects=effects,
        reference=document_number or record_id,
        final_status=TransactionStatus.COMPLETE,
        rollback_status=TransactionStatus.CANCELLED,
        on_abort=on_abort,
    )
    record = replace(record, status=TransactionStatus.COMPLETE, pending_effects=())
    log.info(
        "Issued %s %s (total %s) by %s",
        record.kind.value,
        document_number or record_id,
        record.total,
        record.actor,
    )
    return _result(record, run, movements)


def _find_by_number(context: RuntimeContext, collection: Collection, number: str) -> Optional[TransactionRow]:
    """Latest document carrying ``number``, preferring ones that were not cancelled.

    Invoice numbers wrap, so older documents may share a number with a
    fresh one.
    """

    best: Optional[TransactionRow] = None
    best_key: Optional[Tuple[bool, str, int]] = None
    for index, document in enumerate(context.store.get_all(collection)):
        if document.get("document_number") != number:
            continue
        row = deserialize_transaction(document)
        key = (row.status is not TransactionStatus.CANCELLED, row.created_at, index)
        if best_key is None or key > best_key:
            best, best_key = row, key
    return best


def _find_existing_return(
    context: RuntimeContext, original_number: str, *, since: Optional[str] = None
) -> Optional[TransactionRow]:
    """First live return of ``original_number`` created at or after ``since``."""

    for collection in RETURN_COLLECTIONS:
        for document in context.store.get_all(collection):
            row = deserialize_transaction(document)
            if row.reference != original_number or row.status is TransactionStatus.CANCELLED:
                continue
            if since is not None and row.created_at < since:
                continue
            return row
    return None


def _guard_return(
    context: RuntimeContext,
    *,
    original_collection: Collection,
    original_number: Optional[str],
    require_original: bool,
) -> Optional[Callable[[], None]]:
    """Reject duplicate returns and claim the original document.

    The claim is a compare-and-swap of the original's ``return_status`` from
    ``none`` to ``full``, so two concurrent returns of the same document can
    never both pass. The returned callable releases the claim.
    """

    if original_number is None:
        if require_original:
            raise ValidationError("Invoice returns must reference the original invoice number")
        return None

    original = _find_by_number(context, original_collection, original_number)
    since = original.created_at if original is not None else None
    existing = _find_existing_return(context, original_number, since=since)
    if existing is not None:
        raise DuplicateReturnError(original_number, existing.document_number)

    if original is None:
        if require_original:
            raise MissingReferenceError(f"Unknown original document: {original_number}")
        return None

    path = f"{original_collection.value}/{original.record_id}/return_status"
    document = context.store.get(original_collection, original.record_id or "") or {}
    observed = document.get("return_status")
    if observed == ReturnStatus.FULL.value or not context.store.conditional_update(
        path, observed, ReturnStatus.FULL.value
    ):
        raise DuplicateReturnError(original_number, None)

    def release() -> None:
        try:
            if not context.store.conditional_update(path, ReturnStatus.FULL.value, observed):
                log.error("Return claim on %s changed before it could be released", original_number)
        except data_manager.RecordStoreError as exc:
            log.error("Releasing return claim on %s failed: %s", original_number, exc)

    current = context.store.get(original_collection, original.record_id or "") or {}
    if current.get("status") != TransactionStatus.COMPLETE.value:
        release()
        raise ValidationError(
            f"Document {original_number} is {current.get('status')} and cannot be returned"
        )
    return release


def issue_sale_invoice(context: RuntimeContext, command: SaleCommand) -> TransactionResult:
    """Sell the cart, allocate the cart discount and deduct stock.

    Availability of ``quantity + free_quantity`` per product is re-checked
    against the freshest stock read; if any product falls short the whole
    sale is rejected with every shortfall listed and nothing is written.

    Args:
        context (RuntimeContext): Active runtime context.
        command (SaleCommand): Cart, counterparty and payment details.

    Returns:
        TransactionResult: The invoice number, totals and per-line discounts.

    Raises:
        ValidationError: For an empty cart, invalid lines or discount, or a
            missing actor.
        ProductNotFoundError: If a line references an unknown product.
        InsufficientStockError: If the cart exceeds available stock.
        SequenceUnavailableError: If no invoice number could be issued.
        PartialReconciliationError: If stock could only be partially applied.
    """

    run = _FlowRun(TransactionKind.SALE)
    with _validating(run):
        _require_text(command.actor, "Actor")
        payment_method = _coerce_enum(PaymentMethod, command.payment_method, "payment method")
        lines = _validate_lines(context, command.lines)
        subtotal = _cart_subtotal(lines)
        discount = _resolve_cart_discount(context, command.discount, command.discount_percentage, subtotal)

        requirements: Dict[str, int] = {}
        for line in lines:
            requirements[line.product_id] = requirements.get(line.product_id, 0) + line.quantity + line.free_quantity
        shortfalls = context.ledger.shortfalls(requirements)
        if shortfalls:
            raise InsufficientStockError(shortfalls)

        lines = _apply_discount(context, lines, discount)

    customer = command.customer
    draft = _draft(
        TransactionKind.SALE,
        command,
        lines,
        subtotal=subtotal,
        discount=discount,
        total=subtotal - discount,
        counterparty_id=customer.customer_id,
        counterparty_name=(customer.name or "").strip() or WALK_IN_CUSTOMER,
        counterparty_contact=customer.phone,
        counterparty_address=customer.address,
        return_status=ReturnStatus.NONE,
        payment_method=payment_method,
        payment_status=PaymentStatus.PENDING if payment_method is PaymentMethod.CREDIT else PaymentStatus.PAID,
    )
    effects = []
    for line in lines:
        effects.append(StockEffect(line.product_id, -line.quantity, MovementReason.SALE, StockPolicy.FORBID_NEGATIVE))
        effects.append(
            StockEffect(line.product_id, -line.free_quantity, MovementReason.TRADE_DISCOUNT, StockPolicy.FORBID_NEGATIVE)
        )
    return _commit(
        context,
        run,
        collection=Collection.SALES,
        sequence=SequenceName.INVOICE,
        draft=draft,
        effects=effects,
    )


def issue_purchase(context: RuntimeContext, command: PurchaseCommand) -> TransactionResult:
    """Receive goods from a supplier, add stock and refresh purchase costs.

    Paid and free units are recorded as separate ``Purchase`` and ``Trade
    Discount`` movements. Each product's purchase cost becomes the line's
    final unit price once the stock is in.
    """

    run = _FlowRun(TransactionKind.PURCHASE)
    with _validating(run):
        _require_text(command.actor, "Actor")
        _require_text(command.supplier.supplier_id, "Supplier id")
        _require_text(command.supplier.name, "Supplier name")
        lines = _validate_lines(context, command.lines)
        subtotal = _cart_subtotal(lines)
        discount = _resolve_cart_discount(context, command.discount, command.discount_percentage, subtotal)
        lines = _apply_discount(context, lines, discount)

    supplier = command.supplier
    draft = _draft(
        TransactionKind.PURCHASE,
        command,
        lines,
        subtotal=subtotal,
        discount=discount,
        total=subtotal - discount,
        counterparty_id=supplier.supplier_id,
        counterparty_name=supplier.name.strip(),
        counterparty_contact=supplier.contact,
        counterparty_address=supplier.address,
        return_status=ReturnStatus.NONE,
    )
    effects = []
    for line in lines:
        effects.append(StockEffect(line.product_id, line.quantity, MovementReason.PURCHASE))
        effects.append(StockEffect(line.product_id, line.free_quantity, MovementReason.TRADE_DISCOUNT))
    return _commit(
        context,
        run,
        collection=Collection.PURCHASES,
        sequence=SequenceName.SUPPLIER_INVOICE,
        draft=draft,
        effects=effects,
    )


def issue_customer_return(context: RuntimeContext, command: CustomerReturnCommand) -> TransactionResult:
    """Take goods back from a customer and restock them.

    Raises:
        ValidationError: For missing customer details or invalid lines.
        DuplicateReturnError: If the referenced invoice was already returned.
        MissingReferenceError: If an invoice return references an unknown sale.
    """

    run = _FlowRun(TransactionKind.CUSTOMER_RETURN)
    release = None
    with _validating(run):
        _require_text(command.actor, "Actor")
        _require_text(command.customer.name, "Customer name")
        _require_text(command.customer.phone, "Customer phone")
        lines = _validate_lines(context, command.lines)
        release = _guard_return(
            context,
            original_collection=Collection.SALES,
            original_number=command.original_invoice,
            require_original=command.return_type is ReturnType.INVOICE,
        )

    subtotal = _cart_subtotal(lines)
    customer = command.customer
    draft = _draft(
        TransactionKind.CUSTOMER_RETURN,
        command,
        lines,
        subtotal=subtotal,
        discount=Decimal("0"),
        total=subtotal,
        reference=command.original_invoice,
        counterparty_id=customer.customer_id,
        counterparty_name=customer.name.strip(),
        counterparty_contact=customer.phone,
        counterparty_address=customer.address,
        return_type=command.return_type,
    )
    effects = [StockEffect(line.product_id, line.quantity, MovementReason.CUSTOMER_RETURN) for line in lines]
    return _commit(
        context,
        run,
        collection=Collection.CUSTOMER_RETURNS,
        sequence=SequenceName.CUSTOMER_RETURN,
        draft=draft,
        effects=effects,
        on_abort=release,
    )


def issue_supplier_return(context: RuntimeContext, command: SupplierReturnCommand) -> TransactionResult:
    """Send goods back to a supplier. Stock is reduced but never below zero."""

    run = _FlowRun(TransactionKind.SUPPLIER_RETURN)
    release = None
    with _validating(run):
        _require_text(command.actor, "Actor")
        _require_text(command.supplier.name, "Supplier name")
        _require_text(command.supplier.contact, "Supplier contact")
        lines = _validate_lines(context, command.lines)
        release = _guard_return(
            context,
            original_collection=Collection.PURCHASES,
            original_number=command.original_invoice,
            require_original=command.return_type is ReturnType.INVOICE,
        )

    subtotal = _cart_subtotal(lines)
    supplier = command.supplier
    draft = _draft(
        TransactionKind.SUPPLIER_RETURN,
        command,
        lines,
        subtotal=subtotal,
        discount=Decimal("0"),
        total=subtotal,
        reference=command.original_invoice,
        counterparty_id=supplier.supplier_id,
        counterparty_name=supplier.name.strip(),
        counterparty_contact=supplier.contact,
        counterparty_address=supplier.address,
        return_type=command.return_type,
    )
    effects = [
        StockEffect(line.product_id, -line.quantity, MovementReason.SUPPLIER_RETURN, StockPolicy.CLAMP_AT_ZERO)
        for line in lines
    ]
    return _commit(
        context,
        run,
        collection=Collection.SUPPLIER_RETURNS,
        sequence=SequenceName.SUPPLIER_RETURN,
        draft=draft,
        effects=effects,
        on_abort=release,
    )


def _coerce_enum(enum_type, value: Any, label: str):
    try:
        return enum_type(value)
    except ValueError:
        options = ", ".join(member.value for member in enum_type)
        raise ValidationError(f"Invalid {label} '{value}'. Expected one of: {options}") from None


def issue_disposal(context: RuntimeContext, command: DisposalCommand) -> TransactionResult:
    """Record disposed goods and their loss.

    Disposals carry no document number; the record id identifies them and is
    used as the movement reference. Only the ``return-supplier`` method moves
    stock, adding the disposed quantity back.
    """

    run = _FlowRun(TransactionKind.DISPOSAL)
    with _validating(run):
        _require_text(command.actor, "Actor")
        condition = _coerce_enum(DisposalCondition, command.condition, "disposal condition")
        method = _coerce_enum(DisposalMethod, command.method, "disposal method")
        require_positive_quantity(command.quantity)
        original_price = Decimal(str(command.original_price))
        recovered_value = Decimal(str(command.recovered_value))
        require_nonnegative_money(original_price)
        require_nonnegative_money(recovered_value)
        product = context.ledger.get_product(command.product_id)

    line = LineItem(
        product_id=product.product_id,
        quantity=command.quantity,
        unit_price=original_price,
        name=product.name,
        reason=command.reason,
    )
    original_value = line.subtotal
    draft = _draft(
        TransactionKind.DISPOSAL,
        command,
        (line,),
        subtotal=original_value,
        discount=Decimal("0"),
        total=original_value,
        disposal_condition=condition,
        disposal_method=method,
        recovered_value=recovered_value,
        loss_amount=discounts.loss_amount(original_value, recovered_value),
        reason=command.reason,
    )
    effects = []
    if method is DisposalMethod.RETURN_SUPPLIER:
        effects.append(StockEffect(product.product_id, command.quantity, MovementReason.DISPOSAL_RETURN_SUPPLIER))
    return _commit(
        context,
        run,
        collection=Collection.DISPOSALS,
        sequence=None,
        draft=draft,
        effects=effects,
    )


def discard_sale(context: RuntimeContext, command: DiscardSaleCommand) -> TransactionResult:
    """Cancel a completed sale and put its paid and free units back in stock.

    The sale is claimed by a compare-and-swap of its status, after which its
    ``return_status`` is checked; a return claims ``return_status`` first and
    checks the status afterwards. Discarding and returning the same sale are
    therefore mutually exclusive.

    Raises:
        MissingReferenceError: If no sale carries ``invoice_number``.
        ValidationError: If the sale is not complete or was already returned.
        PartialReconciliationError: If the stock could only partially be
            restored.
    """

    run = _FlowRun(TransactionKind.SALE)
    with _validating(run):
        _require_text(command.actor, "Actor")
        sale = _find_by_number(context, Collection.SALES, command.invoice_number)
        if sale is None:
            raise MissingReferenceError(f"Unknown invoice: {command.invoice_number}")
        if sale.status is not TransactionStatus.COMPLETE:
            raise ValidationError(f"Invoice {command.invoice_number} is {sale.status.value} and cannot be discarded")

        status_path = f"{Collection.SALES.value}/{sale.record_id}/status"
        if not context.store.conditional_update(
            status_path, TransactionStatus.COMPLETE.value, TransactionStatus.NEEDS_RECONCILIATION.value
        ):
            raise ValidationError(f"Invoice {command.invoice_number} changed while discarding; try again")

        current = context.store.get(Collection.SALES, sale.record_id or "") or {}
        if current.get("return_status") == ReturnStatus.FULL.value:
            context.store.conditional_update(
                status_path, TransactionStatus.NEEDS_RECONCILIATION.value, TransactionStatus.COMPLETE.value
            )
            raise ValidationError(f"Invoice {command.invoice_number} has been returned and cannot be discarded")

    effects = _group_effects(
        [StockEffect(line.product_id, line.quantity + line.free_quantity, MovementReason.SALE_DISCARD) for line in sale.lines]
    )
    try:
        context.store.update(
            Collection.SALES,
            sale.record_id or "",
            {
                "pending_effects": [serialize_effect(effect) for effect in effects],
                "target_status": TransactionStatus.CANCELLED.value,
                "reason": command.reason,
            },
        )
    except data_manager.RecordStoreError as exc:
        run.fail()
        log.error("Discard of invoice %s aborted before persisting: %s", command.invoice_number, exc)
        try:
            context.store.conditional_update(
                status_path, TransactionStatus.NEEDS_RECONCILIATION.value, TransactionStatus.COMPLETE.value
            )
        except data_manager.RecordStoreError as restore_exc:
            log.error("Could not restore invoice %s to complete: %s", command.invoice_number, restore_exc)
        raise
    run.advance(TransactionState.PERSISTED)
    record = replace(sale, actor=command.actor.strip())
    movements = _settle(
        context,
        run,
        collection=Collection.SALES,
        record=record,
        effects=effects,
        reference=command.invoice_number,
        final_status=TransactionStatus.CANCELLED,
        rollback_status=TransactionStatus.COMPLETE,
    )
    log.info("Discarded invoice %s by %s", command.invoice_number, record.actor)
    return _result(replace(record, status=TransactionStatus.CANCELLED, pending_effects=()), run, movements)


def adjust_stock(context: RuntimeContext, command: AdjustmentCommand) -> Optional[StockMovementRow]:
    """Manual stock in or out from the inventory screen."""

    actor = _require_text(command.actor, "Actor")
    require_positive_quantity(command.quantity)
    direction = _coerce_enum(MovementDirection, command.direction, "direction")
    return context.ledger.adjust(
        command.product_id,
        command.quantity,
        direction,
        actor=actor,
        reference=command.reference or MANUAL_REFERENCE,
    )


def reconcile_transaction(context: RuntimeContext, kind: TransactionKind, record_id: str) -> TransactionResult:
    """Apply the pending stock effects of a flagged document and settle it.

    Raises:
        MissingReferenceError: If the document does not exist.
        ValidationError: If the document does not need reconciliation.
        PartialReconciliationError: If some effects still cannot be applied;
            the document stays flagged with whatever remains.
    """

    collection = KIND_COLLECTIONS[kind]
    document = context.store.get(collection, record_id)
    if document is None:
        raise MissingReferenceError(f"Unknown {kind.value} record: {record_id}")
    record = deserialize_transaction(document)
    if record.status is not TransactionStatus.NEEDS_RECONCILIATION:
        raise ValidationError(f"{kind.value} {record_id} is {record.status.value}; nothing to reconcile")

    run = _FlowRun(kind, initial=TransactionState.PERSISTED)
    final_status = record.target_status or TransactionStatus.COMPLETE
    movements = _settle(
        context,
        run,
        collection=collection,
        record=record,
        effects=record.pending_effects,
        reference=record.document_number or record_id,
        final_status=final_status,
        rollback_status=None,
    )
    log.info("Reconciled %s %s", kind.value, record.document_number or record_id)
    return _result(replace(record, status=final_status, pending_effects=()), run, movements)


def add_product(context: RuntimeContext, product: ProductRow) -> ProductRow:
    """Register a new product in the catalog.

    Raises:
        ValidationError: If the id is taken or a field is invalid.
    """

    _require_text(product.product_id, "Product id")
    _require_text(product.name, "Product name")
    if isinstance(product.stock, bool) or not isinstance(product.stock, int) or product.stock < 0:
        raise ValidationError("Opening stock must be a whole number of zero or more")
    require_nonnegative_money(product.purchase_cost)
    require_nonnegative_money(product.current_price)
    if context.store.get(Collection.PRODUCTS, product.product_id) is not None:
        raise ValidationError(f"Product already exists: {product.product_id}")
    context.store.create(Collection.PRODUCTS, serialize_product(product), record_id=product.product_id)
    log.info("Added product %s (%s) with stock %d", product.product_id, product.name, product.stock)
    return context.ledger.get_product(product.product_id)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[ProductRow]:
    return context.ledger.list_products(include_inactive=include_inactive)


def low_stock_products(context: RuntimeContext) -> List[ProductRow]:
    """Active products at or below their configured minimum stock level."""

    return [
        product
        for product in context.ledger.list_products()
        if product.min_stock_level is not None and product.stock <= product.min_stock_level
    ]


def list_transactions(context: RuntimeContext, kind: Optional[TransactionKind] = None) -> List[TransactionRow]:
    kinds = [kind] if kind is not None else list(KIND_COLLECTIONS)
    rows = [
        deserialize_transaction(document)
        for each in kinds
        for document in context.store.get_all(KIND_COLLECTIONS[each])
    ]
    return sorted(rows, key=lambda row: row.created_at)


def find_transaction(context: RuntimeContext, kind: TransactionKind, document_number: str) -> TransactionRow:
    """Look up a transaction by its document number.

    Raises:
        MissingReferenceError: If no document of ``kind`` carries the number.
    """

    row = _find_by_number(context, KIND_COLLECTIONS[kind], document_number)
    if row is None:
        raise MissingReferenceError(f"Unknown {kind.value} document: {document_number}")
    return row


def list_movements(context: RuntimeContext, product_id: Optional[str] = None) -> List[StockMovementRow]:
    return context.ledger.movements(product_id)


def counter_snapshot(context: RuntimeContext) -> Dict[str, int]:
    """Last issued value of every sequence."""

    return {name: context.counter.peek(name) for name in context.counter.namespaces}


TransactionCommand = Union[
    SaleCommand,
    PurchaseCommand,
    CustomerReturnCommand,
    SupplierReturnCommand,
    DisposalCommand,
]
