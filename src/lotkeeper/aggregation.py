"""Inventory aggregation: group purchase lots into per-product views.

Lots sharing the exact same ``product_name`` form one product. Inside a group
lots are kept newest-first, which is also the order the consumption engine
drains them in. The grouping is returned together with a :class:`LotIndex`
snapshot that the caller owns; nothing is cached at module level.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import log
from .constants import UNCATEGORIZED
from .data_manager import LotRow
from .store import WorkbookStore


@dataclass(frozen=True)
class AggregatedProduct:
    """Per-product view derived from its non-exhausted lots.

    Representative fields come from the newest lot; quantities and costs are
    sums over every lot of the product.
    """

    product_name: str
    category: str
    size: str
    representative_serial: Optional[str]
    total_quantity: int
    total_cost: Decimal
    representative_unit_price: Decimal
    newest_timestamp: int
    representative_lot_id: str
    representative_order_id: str
    is_admin_purchase: bool


@dataclass(frozen=True)
class LotIndex:
    """Read-only ``product_name -> lots`` snapshot, newest lot first."""

    lots: Mapping[str, Tuple[LotRow, ...]]

    def lots_for(self, product_name: str) -> Tuple[LotRow, ...]:
        return self.lots.get(product_name, ())

    def available(self, product_name: str) -> int:
        return sum(lot.quantity for lot in self.lots_for(product_name))

    def __contains__(self, product_name: object) -> bool:
        return product_name in self.lots


def _newest_first(lots: Iterable[LotRow]) -> List[LotRow]:
    return sorted(lots, key=lambda lot: lot.purchase_timestamp, reverse=True)


def _summarize(group: Tuple[LotRow, ...]) -> AggregatedProduct:
    head = group[0]
    return AggregatedProduct(
        product_name=head.product_name,
        category=head.category,
        size=head.size,
        representative_serial=head.serial_number,
        total_quantity=sum(lot.quantity for lot in group),
        total_cost=sum((lot.total_cost for lot in group), Decimal("0")),
        representative_unit_price=head.unit_price,
        newest_timestamp=head.purchase_timestamp,
        representative_lot_id=head.lot_id,
        representative_order_id=head.order_id,
        is_admin_purchase=head.is_admin_purchase,
    )


def aggregate(lots: Iterable[LotRow], category_filter: Optional[str] = None) -> Tuple[List[AggregatedProduct], LotIndex]:
    """Group lots into aggregated products.

    Args:
        lots (Iterable[LotRow]): Lots as returned by the store. Without a
            category filter they are expected newest-first already.
        category_filter (str | None): When given, only lots of that exact
            category are kept.

    Returns:
        tuple[list[AggregatedProduct], LotIndex]: Products sorted by their
            newest lot, newest first, and the index backing them.

    Exhausted lots (``quantity <= 0``) never contribute to a product. Running
    the function again on the same input yields the same output.
    """

    candidates = [lot for lot in lots if lot.quantity > 0]
    if category_filter is not None:
        candidates = [lot for lot in candidates if lot.category == category_filter]
    # stable, so an already sorted input keeps its order
    candidates = _newest_first(candidates)

    groups: Dict[str, List[LotRow]] = {}
    for lot in candidates:
        groups.setdefault(lot.product_name, []).append(lot)

    frozen = {name: tuple(group) for name, group in groups.items()}
    products = sorted((_summarize(group) for group in frozen.values()), key=lambda p: p.newest_timestamp, reverse=True)
    log.debug("Aggregated %d lot(s) into %d product(s)", len(candidates), len(products))
    return products, LotIndex(MappingProxyType(frozen))


async def fetch_inventory(store: WorkbookStore, category: Optional[str] = None) -> Tuple[List[AggregatedProduct], LotIndex]:
    """Read lots from the store and aggregate them.

    Without ``category`` the store returns lots sorted newest-first; with it
    the store filters by category and sorting happens client side.
    """

    if category:
        lots = await store.query_lots(category=category)
        return aggregate(lots, category_filter=category)
    lots = await store.query_lots(newest_first=True)
    return aggregate(lots)


def category_quantities(lots: Iterable[LotRow]) -> Dict[str, int]:
    """Sum admin-purchased lot quantities per category.

    Blank categories are reported under ``UNCATEGORIZED``.
    """

    totals: Dict[str, int] = {}
    for lot in lots:
        if not lot.is_admin_purchase:
            continue
        category = lot.category.strip() or UNCATEGORIZED
        totals[category] = totals.get(category, 0) + lot.quantity
    return dict(sorted(totals.items()))


async def fetch_category_quantities(store: WorkbookStore) -> Dict[str, int]:
    lots = await store.query_lots(is_admin_purchase=True)
    return category_quantities(lots)
