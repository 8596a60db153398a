"""In-memory search over aggregated products."""

from __future__ import annotations

from typing import Iterable, List, Optional, Union

from .aggregation import AggregatedProduct
from .constants import SearchField


def _field_value(product: AggregatedProduct, field: SearchField) -> str:
    if field is SearchField.NAME:
        return product.product_name
    if field is SearchField.SERIAL:
        return product.representative_serial or ""
    if field is SearchField.SIZE:
        return product.size
    return product.category


def matches_query(product: AggregatedProduct, query: str, field: SearchField) -> bool:
    """Case-insensitive substring match; a blank query matches everything."""

    needle = (query or "").strip().lower()
    if not needle:
        return True
    return needle in _field_value(product, field).lower()


def matches_scanned_code(product: AggregatedProduct, code: Optional[str]) -> bool:
    """True when ``code`` equals the serial, name or order id, ignoring case.

    A blank code applies no filter. Otherwise the code is compared as scanned,
    surrounding whitespace included.
    """

    if not (code or "").strip():
        return True
    code = code.lower()
    candidates = (
        (product.representative_serial or "").lower(),
        product.product_name.lower(),
        product.representative_order_id.lower(),
    )
    return code in candidates


def filter_products(
    products: Iterable[AggregatedProduct],
    query: str,
    field: Union[SearchField, str] = SearchField.NAME,
    scanned_code: Optional[str] = None,
) -> List[AggregatedProduct]:
    """Filter aggregated products by text query and optional scanned code.

    Both filters must match. Input order is preserved.

    Raises:
        ValueError: If ``field`` is not a :class:`SearchField` value.
    """

    field = SearchField(field)
    return [
        product
        for product in products
        if matches_query(product, query, field) and matches_scanned_code(product, scanned_code)
    ]
