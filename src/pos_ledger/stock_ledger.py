"""Product stock levels and their append-only movement audit trail.

``Products/<id>/stock`` is only ever written through a compare-and-swap, so
concurrent sales, purchases and returns of the same product never lose an
update. Each confirmed stock change is followed by exactly one movement
record; if the movement cannot be written the stock change is compensated
before the error propagates. When the compensation fails as well the change
is reported as applied through :class:`UncompensatedStockError`.
"""

from __future__ import annotations

import time
from dataclasses import replace
from datetime import UTC, datetime
from typing import Callable, Dict, List, Mapping, Optional

from . import data_manager, log
from .constants import Collection, MovementDirection, MovementReason, StockPolicy
from .errors import (
    BusinessRuleViolation,
    InsufficientStockError,
    ProductNotFoundError,
    StockContentionError,
    UncompensatedStockError,
    ValidationError,
)
from .records import (
    ProductRow,
    StockMovementRow,
    StockShortfall,
    deserialize_movement,
    deserialize_product,
    serialize_movement,
)


MANUAL_REFERENCE = "Inventory Manual"


def _stock_path(product_id: str) -> str:
    return f"{Collection.PRODUCTS.value}/{product_id}/stock"


class StockLedger:
    """Apply stock deltas with retries and record a movement for each one."""

    def __init__(
        self,
        store: data_manager.RecordStore,
        *,
        max_attempts: int = data_manager.DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = data_manager.DEFAULT_BACKOFF_BASE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep

    def _swap_stock(self, product_id: str, transform: Callable[[int], int]) -> tuple[int, int]:
        def _compute(document):
            if document is None:
                raise ProductNotFoundError(product_id)
            return transform(int(document.get("stock") or 0))

        try:
            previous, new = data_manager.compare_and_swap(
                self.store,
                _stock_path(product_id),
                _compute,
                max_attempts=self.max_attempts,
                backoff_base=self.backoff_base,
                sleep=self._sleep,
            )
        except data_manager.ContentionError as exc:
            raise StockContentionError(
                f"Stock of {product_id} kept changing; gave up after {exc.attempts} attempts"
            ) from exc
        return int(previous or 0), new

    def apply(
        self,
        product_id: str,
        delta: int,
        *,
        reason: MovementReason,
        reference: str,
        actor: str,
        policy: StockPolicy = StockPolicy.UNBOUNDED,
    ) -> Optional[StockMovementRow]:
        """Change the stock of ``product_id`` by ``delta`` and log the movement.

        Args:
            product_id (str): Product to adjust.
            delta (int): Signed quantity change; zero is a no-op.
            reason (MovementReason): Reason written on the movement.
            reference (str): Document number or other reference for the audit
                trail.
            actor (str): Who performed the change.
            policy (StockPolicy): What to do when the result would be negative.
                ``forbid-negative`` raises, ``clamp-at-zero`` stops at zero and
                ``unbounded`` applies the delta unchecked.

        Returns:
            StockMovementRow | None: The stored movement, or ``None`` for a
                zero delta.

        Raises:
            ProductNotFoundError: If the product does not exist.
            InsufficientStockError: If ``policy`` forbids the resulting level.
            StockContentionError: If the compare-and-swap kept losing.
            RecordStoreError: If the movement could not be written. The stock
                change has been compensated by then.
            UncompensatedStockError: If the movement could not be written and
                the compensation failed too, so the change stays applied.
        """

        if delta == 0:
            return None

        def _next_level(current: int) -> int:
            candidate = current + delta
            if candidate >= 0 or policy is StockPolicy.UNBOUNDED:
                return candidate
            if policy is StockPolicy.CLAMP_AT_ZERO:
                return 0
            log.warning("Rejected stock change of %s for %s: only %d available", delta, product_id, current)
            raise InsufficientStockError([StockShortfall(product_id, -delta, current)])

        previous, new = self._swap_stock(product_id, _next_level)
        applied = new - previous
        movement = self._movement(product_id, delta, reason, reference, actor)
        try:
            movement_id = self.store.create(Collection.STOCK_MOVEMENTS, serialize_movement(movement))
        except data_manager.RecordStoreError as exc:
            log.error("Movement for %s (%s) could not be written; compensating stock", product_id, reference)
            try:
                self._swap_stock(product_id, lambda current: current - applied)
            except (BusinessRuleViolation, data_manager.RecordStoreError) as undo_exc:
                log.error("Compensation of %s by %d failed: %s", product_id, -applied, undo_exc)
                raise UncompensatedStockError(product_id, applied, reference) from exc
            raise

        log.info("Stock of %s: %d -> %d (%s %s)", product_id, previous, new, reason.value, reference)
        return replace(movement, movement_id=movement_id)

    def record_movement(
        self,
        product_id: str,
        delta: int,
        *,
        reason: MovementReason,
        reference: str,
        actor: str,
    ) -> StockMovementRow:
        """Write the movement for a delta that already reached the product."""

        movement = self._movement(product_id, delta, reason, reference, actor)
        movement_id = self.store.create(Collection.STOCK_MOVEMENTS, serialize_movement(movement))
        log.info("Recorded late movement of %s for %s (%s %s)", delta, product_id, reason.value, reference)
        return replace(movement, movement_id=movement_id)

    @staticmethod
    def _movement(
        product_id: str, delta: int, reason: MovementReason, reference: str, actor: str
    ) -> StockMovementRow:
        return StockMovementRow(
            movement_id=None,
            product_id=product_id,
            direction=MovementDirection.IN if delta > 0 else MovementDirection.OUT,
            quantity=abs(delta),
            reason=reason.value,
            reference=reference,
            actor=actor,
            timestamp_iso=datetime.now(UTC).isoformat(),
        )

    def shortfalls(self, requirements: Mapping[str, int]) -> List[StockShortfall]:
        """List every product whose current stock cannot cover its requirement.

        Raises:
            ProductNotFoundError: If any product id is unknown.
        """

        missing = []
        for product_id, requested in requirements.items():
            product = self.get_product(product_id)
            if requested > product.stock:
                missing.append(StockShortfall(product_id, requested, product.stock))
        return missing

    def adjust(
        self,
        product_id: str,
        quantity: int,
        direction: MovementDirection,
        *,
        actor: str,
        reference: str = MANUAL_REFERENCE,
    ) -> Optional[StockMovementRow]:
        """Manual stock in or out. Stock out stops at zero."""

        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero")
        if direction is MovementDirection.IN:
            return self.apply(
                product_id, quantity, reason=MovementReason.MANUAL_IN, reference=reference, actor=actor
            )
        return self.apply(
            product_id,
            -quantity,
            reason=MovementReason.MANUAL_OUT,
            reference=reference,
            actor=actor,
            policy=StockPolicy.CLAMP_AT_ZERO,
        )

    def movements(self, product_id: Optional[str] = None) -> List[StockMovementRow]:
        rows = [deserialize_movement(document) for document in self.store.get_all(Collection.STOCK_MOVEMENTS)]
        if product_id is not None:
            rows = [row for row in rows if row.product_id == product_id]
        return sorted(rows, key=lambda row: row.timestamp_iso)

    def get_product(self, product_id: str) -> ProductRow:
        document = self.store.get(Collection.PRODUCTS, product_id)
        if document is None:
            raise ProductNotFoundError(product_id)
        return deserialize_product(document)

    def list_products(self, *, include_inactive: bool = False) -> List[ProductRow]:
        products = [deserialize_product(document) for document in self.store.get_all(Collection.PRODUCTS)]
        if not include_inactive:
            products = [product for product in products if product.is_active]
        return products

    def stock_levels(self) -> Dict[str, int]:
        return {product.product_id: product.stock for product in self.list_products(include_inactive=True)}

    def set_purchase_cost(self, product_id: str, cost) -> None:
        if self.store.get(Collection.PRODUCTS, product_id) is None:
            raise ProductNotFoundError(product_id)
        self.store.update(Collection.PRODUCTS, product_id, {"purchase_cost": str(cost)})
