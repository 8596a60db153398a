"""Commission accrual and commission reporting.

Two figures exist side by side and are intentionally not reconciled:

* the persisted running total on each agent, incremented by :func:`accrue`
  after every admin purchase and audited by one commission record per event;
* the live per-order figures from :func:`summarize_order_purchases`, recomputed
  from the purchase lots that still reference the order.

Lots drained to zero are deleted, so the live figures can drop below what the
running total accrued.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Optional

from . import log
from .constants import COMMISSION_RATE, DEFAULT_RECENT_LIMIT, UNCATEGORIZED, CommissionType, SheetName
from .core_logic import (
    MissingReferenceError,
    Outcome,
    _resolve_timestamp,
    describe_error,
    generate_document_id,
    to_epoch_millis,
)
from .data_manager import AgentRow, CommissionRow, LotRow, OrderRow
from .store import ListenerRegistration, StoreError, Transaction, WorkbookStore

CENT = Decimal("0.01")


def compute_commission(sale_amount: Decimal) -> Decimal:
    """Return ``sale_amount`` times the commission rate.

    The product is kept exact so a stored record always satisfies
    ``commission_amount == sale_amount * commission_rate``. Use
    :func:`to_cents` for display.
    """

    return Decimal(sale_amount) * COMMISSION_RATE


def to_cents(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


async def accrue(
    store: WorkbookStore,
    seller_id: str,
    sale_amount: Decimal,
    *,
    timestamp: Optional[datetime] = None,
) -> Outcome:
    """Add commission on ``sale_amount`` to the agent's running total.

    The running total is updated first and the audit record appended
    afterwards. The two writes are independent: when only the record fails
    the outcome is partial and the total keeps its new value.

    Returns:
        Outcome: The agent's new running total on success or partial success.
    """

    amount = compute_commission(sale_amount)

    async def apply(transaction: Transaction) -> Decimal:
        agent = await transaction.get(SheetName.AGENTS, seller_id)
        if agent is None:
            raise MissingReferenceError("Sales agent not found")
        new_total = agent.total_commission + amount
        transaction.update(SheetName.AGENTS, seller_id, {"total_commission": new_total})
        return new_total

    try:
        new_total = await store.run_transaction(apply)
    except (MissingReferenceError, StoreError) as exc:
        log.error("Commission accrual for '%s' failed: %s", seller_id, exc)
        return Outcome.failure(describe_error(exc), exc)

    when = _resolve_timestamp(timestamp)
    record = CommissionRow(
        commission_id=generate_document_id(prefix="C", when=when),
        seller_id=seller_id,
        sale_amount=Decimal(sale_amount),
        commission_amount=amount,
        commission_rate=COMMISSION_RATE,
        timestamp=to_epoch_millis(when),
        type=CommissionType.ADMIN_PURCHASE.value,
    )
    try:
        await store.append_commission(record)
    except StoreError as exc:
        log.error("Commission record for '%s' not written: %s", seller_id, exc)
        return Outcome.partial("Commission updated but record creation failed", new_total, exc)

    log.info("Accrued commission %s for '%s' (running total=%s)", amount, seller_id, new_total)
    return Outcome.success("Commission updated", new_total)


async def add_agent(store: WorkbookStore, agent_id: str, agent_name: str) -> Outcome:
    """Register a sales agent with a zero running total."""

    agent_id = (agent_id or "").strip()
    if not agent_id:
        return Outcome.failure("Agent id is required")
    agent = AgentRow(agent_id=agent_id, agent_name=(agent_name or "").strip(), total_commission=Decimal("0.00"))
    try:
        await store.insert(SheetName.AGENTS, agent)
    except StoreError as exc:
        log.warning("Agent '%s' not added: %s", agent_id, exc)
        return Outcome.failure(describe_error(exc), exc)
    log.info("Added sales agent '%s'", agent_id)
    return Outcome.success("Agent added", agent)


# ----------------------------------------------------------------------
# Live per-order figures
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class OrderPurchaseTotals:
    order_id: str
    total_sold: Decimal
    commission: Decimal
    purchase_count: int
    admin_only: bool


def summarize_order_purchases(order_id: str, lots: Iterable[LotRow]) -> OrderPurchaseTotals:
    """Total the purchases recorded against one order.

    Admin purchases are used when there are any; otherwise every purchase of
    the order counts.
    """

    lots = [lot for lot in lots if lot.order_id == order_id]
    admin_lots = [lot for lot in lots if lot.is_admin_purchase]
    source = admin_lots if admin_lots else lots
    total = sum((lot.total_cost for lot in source), Decimal("0"))
    return OrderPurchaseTotals(
        order_id=order_id,
        total_sold=total,
        commission=compute_commission(total),
        purchase_count=len(source),
        admin_only=bool(admin_lots),
    )


async def order_commission(store: WorkbookStore, order_id: str) -> OrderPurchaseTotals:
    lots = await store.query_lots(order_id=order_id)
    return summarize_order_purchases(order_id, lots)


class LiveOrderTotals:
    """Keep :class:`OrderPurchaseTotals` for one order current.

    :meth:`attach` and :meth:`detach` are idempotent; attaching again starts
    from a fresh full read.
    """

    def __init__(
        self,
        store: WorkbookStore,
        order_id: str,
        on_update: Optional[Callable[[OrderPurchaseTotals], None]] = None,
    ) -> None:
        self._store = store
        self._order_id = order_id
        self._on_update = on_update
        self._registration: Optional[ListenerRegistration] = None
        self.latest: Optional[OrderPurchaseTotals] = None

    @property
    def attached(self) -> bool:
        return self._registration is not None and self._registration.active

    def attach(self) -> None:
        if self.attached:
            return
        self._registration = self._store.listen(
            SheetName.LOTS, self._handle_snapshot, filters={"order_id": self._order_id}
        )

    def detach(self) -> None:
        if self._registration is not None:
            self._registration.remove()
            self._registration = None

    def _handle_snapshot(self, lots: List[LotRow]) -> None:
        self.latest = summarize_order_purchases(self._order_id, lots)
        log.debug("Order '%s' totals: %s", self._order_id, self.latest)
        if self._on_update is not None:
            self._on_update(self.latest)


# ----------------------------------------------------------------------
# Per-seller report
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class CommissionReport:
    seller_id: str
    by_category: Dict[str, Decimal]
    total_commission: Decimal
    recent_purchases: List[LotRow]


def commission_by_category(
    seller_id: str,
    lots: Iterable[LotRow],
    orders: Iterable[OrderRow],
    *,
    recent_limit: int = DEFAULT_RECENT_LIMIT,
) -> CommissionReport:
    """Bucket a seller's admin-purchase commission by category.

    The category comes from the purchased order when it still exists, then
    from the lot itself, then ``UNCATEGORIZED``.
    """

    order_categories: Dict[str, str] = {}
    for order in orders:
        if order.category.strip():
            order_categories[order.doc_id] = order.category
            if order.order_id.strip():
                order_categories[order.order_id] = order.category

    purchases = [lot for lot in lots if lot.seller_id == seller_id and lot.is_admin_purchase]
    by_category: Dict[str, Decimal] = {}
    for lot in purchases:
        category = order_categories.get(lot.order_id) or lot.category.strip() or UNCATEGORIZED
        by_category[category] = by_category.get(category, Decimal("0")) + compute_commission(lot.total_cost)

    recent = sorted(purchases, key=lambda lot: lot.purchase_timestamp, reverse=True)[:recent_limit]
    return CommissionReport(
        seller_id=seller_id,
        by_category=dict(sorted(by_category.items())),
        total_commission=sum(by_category.values(), Decimal("0")),
        recent_purchases=recent,
    )


async def seller_commission_report(store: WorkbookStore, seller_id: str) -> CommissionReport:
    lots = await store.query_lots(seller_id=seller_id, is_admin_purchase=True)
    orders = await store.query_orders({"seller_id": seller_id})
    return commission_by_category(seller_id, lots, orders)


async def list_commission_records(store: WorkbookStore, seller_id: Optional[str] = None) -> List[CommissionRow]:
    filters = {"seller_id": seller_id} if seller_id else None
    return await store.query(SheetName.COMMISSIONS, filters, order_by="timestamp", descending=True)
