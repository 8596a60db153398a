"""Tests for the sales dashboard figures."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import pytest

from lotkeeper import reporting

from conftest import make_sale


def test_category_revenue_sorted_descending_and_rounded():
    """Revenue per category is ranked and rounded to cents."""

    sales = [
        make_sale("S1", category="Shirts", quantity=1, unit_price="10.005"),
        make_sale("S2", category="Pants", quantity=2, unit_price="20.00"),
        make_sale("S3", category="", quantity=1, unit_price="1.00"),
    ]
    revenue = reporting.category_revenue(sales)
    assert list(revenue) == ["Pants", "Shirts", "Uncategorized"]
    assert revenue["Shirts"] == Decimal("10.01")


def test_top_products_ranked_by_units_then_revenue():
    """Units decide first; revenue breaks ties; negative quantities count as zero."""

    sales = [
        make_sale("S1", product_name="A", quantity=3, unit_price="1.00"),
        make_sale("S2", product_name="B", quantity=3, unit_price="2.00"),
        make_sale("S3", product_name="C", quantity=5, unit_price="1.00"),
        make_sale("S4", product_name="D", quantity=-4, unit_price="1.00"),
    ]
    top = reporting.top_products(sales)
    assert [entry.product_name for entry in top] == ["C", "B", "A", "D"]
    assert top[-1].units == 0


def test_top_products_limit():
    """Only the best five products are returned by default."""

    sales = [make_sale(f"S{i}", product_name=f"P{i}", quantity=i) for i in range(1, 8)]
    assert [entry.product_name for entry in reporting.top_products(sales)] == ["P7", "P6", "P5", "P4", "P3"]


def test_recent_sales_newest_first():
    """Recent sales are the newest N by timestamp."""

    sales = [make_sale(f"S{i}", timestamp=i) for i in range(10)]
    assert [sale.sale_id for sale in reporting.recent_sales(sales, 3)] == ["S9", "S8", "S7"]


def test_build_dashboard_totals():
    """The snapshot bundles every figure."""

    snapshot = reporting.build_dashboard([make_sale("S1", quantity=2, unit_price="4.00")])
    assert snapshot.total_revenue == Decimal("8.00")
    assert snapshot.sale_count == 1


@pytest.mark.asyncio
async def test_sales_dashboard_reset_and_resume(store):
    """The live dashboard follows the ledger until reset, then rebuilds on resume."""

    on_update = Mock()
    dashboard = reporting.SalesDashboard(store, on_update)
    dashboard.resume()
    dashboard.resume()
    assert dashboard.latest.sale_count == 0
    assert on_update.call_count == 1

    await store.append_sale(make_sale("S1"))
    assert dashboard.latest.sale_count == 1

    dashboard.reset()
    assert dashboard.latest is None
    await store.append_sale(make_sale("S2"))
    assert dashboard.latest is None

    dashboard.resume()
    assert dashboard.latest.sale_count == 2
    assert dashboard.attached
