"""Order intake and the admin purchase workflow.

Sales agents register orders; an admin then buys against an order, which
creates one purchase lot and, in the same transaction, either deletes the
order (fully purchased) or reduces its quantity. Commission for the order's
agent is accrued afterwards.

Orders created before ``orderId`` mirrored the document id may only be
reachable by their document id, so admin-side lookups go through
:func:`resolve_order_documents`.
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from . import commission, log
from .constants import SheetName
from .core_logic import (
    BusinessRuleViolation,
    MissingReferenceError,
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
from .data_manager import LotRow, OrderRow
from .store import DocumentNotFoundError, StoreError, Transaction, WorkbookStore, WriteOp


def generate_serial_number(category: str, order_id: str, suffix: Optional[str] = None) -> str:
    """Build a lot serial as ``CAT-ORDR-XXXX``.

    Uniqueness is best effort: the random part has only four hex digits.
    """

    suffix = suffix if suffix is not None else uuid.uuid4().hex
    return f"{category[:3].upper()}-{order_id[:4].upper()}-{suffix[:4].upper()}"


def order_key(order: OrderRow) -> str:
    """Logical identifier of ``order``, falling back to its document id."""

    return order.order_id.strip() or order.doc_id


# ----------------------------------------------------------------------
# Order intake (sales agent side)
# ----------------------------------------------------------------------
async def list_orders(store: WorkbookStore, seller_id: Optional[str] = None) -> List[OrderRow]:
    """Return orders sorted by ``order_id``, blank ids replaced by the doc id."""

    filters = {"seller_id": seller_id} if seller_id else None
    orders = await store.query_orders(filters)
    normalized = [
        order if order.order_id.strip() else dataclasses.replace(order, order_id=order.doc_id)
        for order in orders
    ]
    return sorted(normalized, key=lambda order: order.order_id)


async def is_order_combination_unique(
    store: WorkbookStore,
    seller_id: str,
    product_name: str,
    category: str,
    size: str,
    fit: str,
) -> bool:
    matches = await store.query_orders(
        {
            "seller_id": seller_id,
            "product_name": product_name,
            "category": category,
            "size": size,
            "fit": fit,
        }
    )
    return not matches


async def is_product_name_unique(store: WorkbookStore, seller_id: str, product_name: str) -> bool:
    matches = await store.query_orders({"seller_id": seller_id, "product_name": product_name})
    return not matches


async def create_order(
    store: WorkbookStore,
    *,
    seller_id: str,
    product_name: str,
    category: str,
    size: str,
    fit: str,
    quantity: int,
    unit_price: Decimal,
    when: Optional[datetime] = None,
) -> Outcome:
    """Register a new order for ``seller_id``.

    The generated document id doubles as the order's ``order_id``. A seller
    cannot hold two orders with the same product, category, size and fit.
    """

    try:
        seller_id = require_text(seller_id, "Seller id")
        product_name = require_text(product_name, "Product name")
        category, size, fit = (category or "").strip(), (size or "").strip(), (fit or "").strip()
        require_positive_quantity(quantity)
        require_nonnegative_money(unit_price)
        if not await is_order_combination_unique(store, seller_id, product_name, category, size, fit):
            raise ValidationError("An order with this product, category, size and fit already exists")

        doc_id = generate_document_id(prefix="O", when=when)
        order = OrderRow(
            doc_id=doc_id,
            order_id=doc_id,
            seller_id=seller_id,
            product_name=product_name,
            category=category,
            size=size,
            fit=fit,
            quantity=quantity,
            unit_price=unit_price,
        )
        await store.insert_order(order)
    except (BusinessRuleViolation, StoreError) as exc:
        log.warning("Order creation for seller '%s' rejected: %s", seller_id, exc)
        return Outcome.failure(describe_error(exc), exc)

    log.info("Created order '%s' for seller '%s' (%s x %s)", order.order_id, seller_id, quantity, product_name)
    return Outcome.success("Order created", order)


async def delete_order(store: WorkbookStore, doc_id: str) -> Outcome:
    """Delete an order by its document id, as its owning agent does."""

    try:
        await store.delete_order(doc_id)
    except DocumentNotFoundError as exc:
        log.warning("Order '%s' not found for deletion", doc_id)
        return Outcome.failure("Order not found", exc)
    except StoreError as exc:
        log.error("Failed to delete order '%s': %s", doc_id, exc)
        return Outcome.failure(describe_error(exc), exc)
    log.info("Deleted order '%s'", doc_id)
    return Outcome.success("Order deleted")


async def record_agent_purchase(store: WorkbookStore, order: OrderRow, *, timestamp: Optional[datetime] = None) -> Outcome:
    """Record a non-admin purchase covering the whole order.

    These lots never earn commission.
    """

    when = _resolve_timestamp(timestamp)
    lot = LotRow(
        lot_id=generate_document_id(prefix="L", when=when),
        order_id=order_key(order),
        seller_id=order.seller_id,
        admin_id="",
        product_name=order.product_name,
        category=order.category,
        size=order.size,
        quantity=order.quantity,
        unit_price=order.unit_price,
        total_cost=order.unit_price * order.quantity,
        serial_number=None,
        purchase_timestamp=to_epoch_millis(when),
        is_admin_purchase=False,
    )
    try:
        await store.insert(SheetName.LOTS, lot)
    except StoreError as exc:
        log.error("Agent purchase for order '%s' failed: %s", lot.order_id, exc)
        return Outcome.failure(describe_error(exc), exc)
    log.info("Recorded agent purchase '%s' for order '%s'", lot.lot_id, lot.order_id)
    return Outcome.success("Purchase recorded", lot)


# ----------------------------------------------------------------------
# Dual-keyed order lookup (admin side)
# ----------------------------------------------------------------------
async def resolve_order_documents(source: Union[WorkbookStore, Transaction], key: str) -> List[OrderRow]:
    """Find the order documents an admin-side ``key`` refers to.

    Compatibility shim for orders whose ``order_id`` field does not match
    their document id. Precedence:

    1. every order whose ``order_id`` field equals ``key``;
    2. otherwise the order whose document id equals ``key``.

    ``source`` may be the store or an open transaction; inside a transaction
    the lookup reads live committed state.

    Returns:
        list[OrderRow]: Matches of the first step that found any, or an empty
            list.
    """

    by_field = await source.query(SheetName.ORDERS, {"order_id": key})
    if by_field:
        return by_field

    by_doc_id = await source.get(SheetName.ORDERS, key)
    if by_doc_id is not None:
        log.warning("Order '%s' resolved by document id fallback", key)
        return [by_doc_id]
    return []


async def delete_order_best_effort(store: WorkbookStore, key: str) -> int:
    """Delete every order ``key`` resolves to.

    Finding nothing is not an error.

    Returns:
        int: Number of documents deleted.
    """

    documents = await resolve_order_documents(store, key)
    if not documents:
        log.info("No order found for '%s'; nothing to delete", key)
        return 0
    await store.batch_write([WriteOp.delete(SheetName.ORDERS, doc.doc_id) for doc in documents])
    log.info("Deleted %d order document(s) for '%s'", len(documents), key)
    return len(documents)


def settle_order(transaction: Transaction, documents: List[OrderRow], purchased: int) -> int:
    """Buffer the order writes for buying ``purchased`` units.

    ``documents`` are the live matches of one order key; the first one holds
    the quantity. Buying everything deletes every match, otherwise the first
    match is reduced.

    Returns:
        int: Quantity left on the order.

    Raises:
        ValidationError: If the live quantity is below ``purchased``.
    """

    primary = documents[0]
    remaining = primary.quantity - purchased
    if remaining < 0:
        raise ValidationError("Cannot purchase more than available quantity")
    if remaining == 0:
        for doc in documents:
            transaction.delete(SheetName.ORDERS, doc.doc_id)
    else:
        transaction.update(SheetName.ORDERS, primary.doc_id, {"quantity": remaining})
    return remaining


async def remove_order(store: WorkbookStore, key: str) -> Outcome:
    """Admin-side order removal through the dual-keyed lookup."""

    if not (key or "").strip():
        log.warning("Order removal requested with a blank id")
        return Outcome.failure("Invalid order id")
    try:
        deleted = await delete_order_best_effort(store, key.strip())
    except StoreError as exc:
        log.error("Failed to remove order '%s': %s", key, exc)
        return Outcome.failure(describe_error(exc), exc)
    return Outcome.success("Order removed", deleted)


# ----------------------------------------------------------------------
# Admin purchase
# ----------------------------------------------------------------------
def build_purchase_lot(order: OrderRow, quantity: int, *, admin_id: str, when: datetime) -> LotRow:
    key = order_key(order)
    return LotRow(
        lot_id=generate_document_id(prefix="L", when=when),
        order_id=key,
        seller_id=order.seller_id,
        admin_id=admin_id,
        product_name=order.product_name,
        category=order.category,
        size=order.size,
        quantity=quantity,
        unit_price=order.unit_price,
        total_cost=order.unit_price * quantity,
        serial_number=generate_serial_number(order.category, key),
        purchase_timestamp=to_epoch_millis(when),
        is_admin_purchase=True,
    )


async def purchase_order(
    store: WorkbookStore,
    order: OrderRow,
    quantity: int,
    *,
    admin_id: str,
    timestamp: Optional[datetime] = None,
) -> Outcome:
    """Buy ``quantity`` units against ``order``.

    ``order`` only names the order; its quantity may be stale. Steps:

    1. In one transaction, re-read the live order through the dual-keyed
       lookup, reject the request when the live quantity cannot cover it,
       insert one admin purchase lot and delete or reduce the order. Nothing
       is written when any of this fails.
    2. Accrue commission for the order's agent. Failure here yields a partial
       outcome carrying a warning; the purchase stands.

    Returns:
        Outcome: The created :class:`LotRow` is the outcome's value whenever
            the lot was written.
    """

    key = order_key(order)
    try:
        admin_id = require_text(admin_id, "Admin id")
        require_positive_quantity(quantity)
        when = _resolve_timestamp(timestamp)

        async def apply(transaction: Transaction) -> Tuple[LotRow, int]:
            documents = await resolve_order_documents(transaction, key)
            if not documents:
                raise MissingReferenceError("Order not found")
            lot = build_purchase_lot(documents[0], quantity, admin_id=admin_id, when=when)
            transaction.insert(SheetName.LOTS, lot)
            return lot, settle_order(transaction, documents, quantity)

        lot, remaining = await store.run_transaction(apply)
    except (BusinessRuleViolation, StoreError) as exc:
        log.warning("Purchase against order '%s' rejected: %s", key, exc)
        return Outcome.failure(describe_error(exc), exc)

    log.info(
        "Admin '%s' purchased %s x '%s' for order '%s' (lot '%s', total=%s, remaining=%s)",
        admin_id,
        quantity,
        lot.product_name,
        lot.order_id,
        lot.lot_id,
        lot.total_cost,
        remaining,
    )

    accrual = await commission.accrue(store, lot.seller_id, lot.total_cost, timestamp=timestamp)
    if not accrual.ok:
        return Outcome.partial(
            f"Purchase completed but commission update failed: {accrual.message}", lot, accrual.error
        )
    if accrual.is_partial:
        return Outcome.partial(accrual.message, lot, accrual.error)

    return Outcome.success(f"Successfully purchased {quantity} x {lot.category} ({lot.size})", lot)
