"""Sales dashboard figures computed from the sale ledger."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Optional

from . import log
from .constants import DEFAULT_RECENT_LIMIT, TOP_PRODUCTS_LIMIT, UNCATEGORIZED, SheetName
from .data_manager import SaleRow
from .store import ListenerRegistration, WorkbookStore

CENT = Decimal("0.01")


@dataclass(frozen=True)
class ProductSales:
    product_name: str
    units: int
    revenue: Decimal


@dataclass(frozen=True)
class DashboardSnapshot:
    category_revenue: Dict[str, Decimal]
    top_products: List[ProductSales]
    recent_sales: List[SaleRow]
    total_revenue: Decimal
    sale_count: int


def category_revenue(sales: Iterable[SaleRow]) -> Dict[str, Decimal]:
    """Revenue per category, largest first, rounded to cents."""

    totals: Dict[str, Decimal] = {}
    for sale in sales:
        category = sale.category.strip() or UNCATEGORIZED
        totals[category] = totals.get(category, Decimal("0")) + sale.total
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return {category: amount.quantize(CENT, rounding=ROUND_HALF_UP) for category, amount in ranked}


def top_products(sales: Iterable[SaleRow], limit: int = TOP_PRODUCTS_LIMIT) -> List[ProductSales]:
    """Best sellers by units sold, ties broken by revenue.

    Negative quantities count as zero units.
    """

    units: Dict[str, int] = {}
    revenue: Dict[str, Decimal] = {}
    for sale in sales:
        units[sale.product_name] = units.get(sale.product_name, 0) + max(0, sale.quantity)
        revenue[sale.product_name] = revenue.get(sale.product_name, Decimal("0")) + sale.total
    ranked = sorted(units, key=lambda name: (units[name], revenue[name]), reverse=True)
    return [ProductSales(name, units[name], revenue[name]) for name in ranked[:limit]]


def recent_sales(sales: Iterable[SaleRow], limit: int = DEFAULT_RECENT_LIMIT) -> List[SaleRow]:
    return sorted(sales, key=lambda sale: sale.timestamp, reverse=True)[:limit]


def build_dashboard(sales: Iterable[SaleRow], recent_limit: int = DEFAULT_RECENT_LIMIT) -> DashboardSnapshot:
    sales = list(sales)
    return DashboardSnapshot(
        category_revenue=category_revenue(sales),
        top_products=top_products(sales),
        recent_sales=recent_sales(sales, recent_limit),
        total_revenue=sum((sale.total for sale in sales), Decimal("0")),
        sale_count=len(sales),
    )


class SalesDashboard:
    """Live dashboard over the sale ledger.

    :meth:`reset` detaches from the store and clears the last snapshot;
    :meth:`resume` attaches again and rebuilds from a full read. Both are
    idempotent.
    """

    def __init__(
        self,
        store: WorkbookStore,
        on_update: Optional[Callable[[DashboardSnapshot], None]] = None,
        *,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
    ) -> None:
        self._store = store
        self._on_update = on_update
        self._recent_limit = recent_limit
        self._registration: Optional[ListenerRegistration] = None
        self.latest: Optional[DashboardSnapshot] = None

    @property
    def attached(self) -> bool:
        return self._registration is not None and self._registration.active

    def resume(self) -> None:
        if self.attached:
            return
        self._registration = self._store.listen(
            SheetName.SALES, self._handle_snapshot, order_by="timestamp", descending=True
        )

    def reset(self) -> None:
        if self._registration is not None:
            self._registration.remove()
            self._registration = None
        self.latest = None

    def _handle_snapshot(self, sales: List[SaleRow]) -> None:
        self.latest = build_dashboard(sales, self._recent_limit)
        log.debug("Dashboard refreshed from %d sale(s)", self.latest.sale_count)
        if self._on_update is not None:
            self._on_update(self.latest)
