"""Lot consumption: deduct stock across a product's lots, newest first.

Selling and removing stock share one algorithm. A request is checked against
the caller's :class:`~lotkeeper.aggregation.LotIndex` snapshot before anything
is written, then the lots are re-read inside a store transaction and drained
in index order. A lot that reaches zero is deleted. If live stock no longer
covers the request the transaction aborts with
:class:`~lotkeeper.core_logic.InsufficientStockError` and no lot changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from . import log
from .aggregation import AggregatedProduct, LotIndex
from .constants import SheetName
from .core_logic import (
    BusinessRuleViolation,
    InsufficientStockError,
    Outcome,
    ValidationError,
    _resolve_timestamp,
    describe_error,
    generate_document_id,
    require_nonnegative_money,
    require_positive_quantity,
    require_text,
    to_epoch_millis,
)
from .data_manager import LotRow, SaleRow
from .store import StoreError, Transaction, WorkbookStore, WriteOp


@dataclass(frozen=True)
class LotMutation:
    """Change applied to one lot by a consumption."""

    lot_id: str
    previous_quantity: int
    deducted: int

    @property
    def new_quantity(self) -> int:
        return self.previous_quantity - self.deducted

    @property
    def is_delete(self) -> bool:
        return self.new_quantity == 0


@dataclass(frozen=True)
class ConsumptionResult:
    product_name: str
    requested_quantity: int
    lots_touched: Tuple[LotMutation, ...]
    sale: Optional[SaleRow] = None


def plan_consumption(lots: Sequence[LotRow], requested_quantity: int) -> Tuple[List[LotMutation], int]:
    """Work out which lots cover ``requested_quantity``.

    Lots are taken in the given order and empty lots are skipped.

    Returns:
        tuple[list[LotMutation], int]: The planned mutations and the quantity
            the lots could not cover.
    """

    remaining = requested_quantity
    mutations: List[LotMutation] = []
    for lot in lots:
        if remaining <= 0:
            break
        if lot.quantity <= 0:
            continue
        deducted = min(remaining, lot.quantity)
        mutations.append(LotMutation(lot.lot_id, lot.quantity, deducted))
        remaining -= deducted
    return mutations, remaining


def check_availability(product_name: str, requested_quantity: int, index: LotIndex) -> int:
    """Validate a request against the snapshot before touching the store.

    Returns:
        int: Quantity available according to ``index``.

    Raises:
        ValidationError: For a non-positive request, an unknown product, or a
            request above the snapshot total.
    """

    require_positive_quantity(requested_quantity)
    if not index.lots_for(product_name):
        log.warning("No stock for '%s'", product_name)
        raise ValidationError(f"No stock for {product_name}")
    available = index.available(product_name)
    if requested_quantity > available:
        log.warning("Requested %s of '%s' but only %s available", requested_quantity, product_name, available)
        raise ValidationError(f"Only {available} available to remove/sell")
    return available


async def consume(
    store: WorkbookStore,
    product_name: str,
    requested_quantity: int,
    index: LotIndex,
    *,
    sale: Optional[SaleRow] = None,
) -> ConsumptionResult:
    """Deduct ``requested_quantity`` of ``product_name`` in one transaction.

    Args:
        store (WorkbookStore): Store holding the lots.
        product_name (str): Exact product name as grouped by the aggregation.
        requested_quantity (int): Units to deduct; must be positive.
        index (LotIndex): Snapshot giving the canonical lot order.
        sale (SaleRow | None): Sale entry appended in the same transaction.

    Returns:
        ConsumptionResult: Every lot touched, in consumption order.

    Raises:
        ValidationError: If the request fails the snapshot checks.
        InsufficientStockError: If live quantities no longer cover it.
        StoreError: If the store fails to commit.
    """

    check_availability(product_name, requested_quantity, index)
    lots = index.lots_for(product_name)

    async def apply(transaction: Transaction) -> List[LotMutation]:
        live: List[LotRow] = []
        for lot in lots:
            current = await transaction.get(SheetName.LOTS, lot.lot_id)
            if current is None or current.quantity <= 0:
                continue
            live.append(current)

        mutations, remaining = plan_consumption(live, requested_quantity)
        if remaining > 0:
            raise InsufficientStockError(product_name, requested_quantity, requested_quantity - remaining)

        for mutation in mutations:
            if mutation.is_delete:
                transaction.delete(SheetName.LOTS, mutation.lot_id)
            else:
                transaction.update(SheetName.LOTS, mutation.lot_id, {"quantity": mutation.new_quantity})
        if sale is not None:
            transaction.insert(SheetName.SALES, sale)
        return mutations

    try:
        mutations = await store.run_transaction(apply)
    except InsufficientStockError as exc:
        log.warning("Consumption of %s x '%s' aborted: %s", requested_quantity, product_name, exc)
        raise

    log.info(
        "Consumed %s x '%s' across %d lot(s)%s",
        requested_quantity,
        product_name,
        len(mutations),
        f" (sale '{sale.sale_id}')" if sale is not None else "",
    )
    return ConsumptionResult(product_name, requested_quantity, tuple(mutations), sale)


def build_sale(
    product: AggregatedProduct,
    quantity: int,
    unit_price: Decimal,
    buyer_name: str,
    *,
    timestamp: Optional[datetime] = None,
) -> SaleRow:
    """Create the ledger entry for selling ``quantity`` units of ``product``."""

    require_nonnegative_money(unit_price)
    when = _resolve_timestamp(timestamp)
    return SaleRow(
        sale_id=generate_document_id(prefix="S", when=when),
        product_name=product.product_name,
        category=product.category,
        unit_price=unit_price,
        quantity=quantity,
        timestamp=to_epoch_millis(when),
        buyer_name=(buyer_name or "").strip(),
        total=unit_price * quantity,
    )


async def sell_product(
    store: WorkbookStore,
    product: AggregatedProduct,
    quantity: int,
    unit_price: Decimal,
    buyer_name: str,
    index: LotIndex,
    *,
    timestamp: Optional[datetime] = None,
) -> Outcome:
    """Sell stock and record the sale atomically.

    The returned outcome carries the :class:`ConsumptionResult` on success.
    Callers should re-fetch the inventory afterwards.
    """

    try:
        sale = build_sale(product, quantity, unit_price, buyer_name, timestamp=timestamp)
        result = await consume(store, product.product_name, quantity, index, sale=sale)
    except (BusinessRuleViolation, StoreError) as exc:
        log.warning("Sale of '%s' rejected: %s", product.product_name, exc)
        return Outcome.failure(describe_error(exc), exc)
    return Outcome.success(f"Sold {quantity} x {product.product_name}", result)


async def remove_product(store: WorkbookStore, product_name: str, quantity: int, index: LotIndex) -> Outcome:
    """Write off stock (shrinkage) without recording a sale."""

    try:
        result = await consume(store, product_name, quantity, index)
    except (BusinessRuleViolation, StoreError) as exc:
        log.warning("Removal of '%s' rejected: %s", product_name, exc)
        return Outcome.failure(describe_error(exc), exc)
    return Outcome.success(f"Removed {quantity} x {product_name}", result)


async def update_product_info(
    store: WorkbookStore,
    product_name: str,
    index: LotIndex,
    *,
    new_name: str,
    category: str,
    size: str,
    serial_number: Optional[str],
) -> Outcome:
    """Rewrite descriptive fields on every lot backing a product.

    All lots change in one batch write. Every value is stored trimmed, so a
    blank serial number is stored as an empty string.
    """

    lots = index.lots_for(product_name)
    if not lots:
        log.warning("Update requested for unknown product '%s'", product_name)
        return Outcome.failure(f"No stock for {product_name}")

    try:
        field_values = {
            "product_name": require_text(new_name, "Product name"),
            "category": (category or "").strip(),
            "size": (size or "").strip(),
            "serial_number": (serial_number or "").strip(),
        }
        await store.batch_write([WriteOp.update(SheetName.LOTS, lot.lot_id, field_values) for lot in lots])
    except (ValidationError, StoreError) as exc:
        log.warning("Product info update for '%s' failed: %s", product_name, exc)
        return Outcome.failure(describe_error(exc), exc)

    log.info("Updated %d lot(s) of '%s' -> '%s'", len(lots), product_name, field_values["product_name"])
    return Outcome.success(f"Updated {field_values['product_name']}", len(lots))
