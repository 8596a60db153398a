"""Enumerations and fixed values shared across lotkeeper modules.

Centralises domain constants so that the store, the inventory engines, and
the CLI rely on a single source of truth for collection names, search fields
and the commission policy.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Fixed commission paid to a sales agent on every admin purchase of their order.
COMMISSION_RATE = Decimal("0.10")

# Bucket used when a lot or order carries no category.
UNCATEGORIZED = "Uncategorized"

# How many rows the "recent" report sections return by default.
DEFAULT_RECENT_LIMIT = 5
TOP_PRODUCTS_LIMIT = 5


class SheetName(str, Enum):
    """Enumerate the workbook sheets backing each store collection."""

    LOTS = "Purchases"
    ORDERS = "Orders"
    SALES = "Sales"
    AGENTS = "Agents"
    COMMISSIONS = "Commissions"


class SearchField(str, Enum):
    """Aggregated-product attribute targeted by a text search."""

    NAME = "Name"
    SERIAL = "S.Num"
    SIZE = "Size"
    CATEGORY = "Cate."


class OutcomeStatus(str, Enum):
    """Three-way result of a mutating workflow."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class WriteKind(str, Enum):
    """Kinds of buffered writes accepted by transactions and batches."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class CommissionType(str, Enum):
    """Source event recorded on a commission audit record."""

    ADMIN_PURCHASE = "admin_purchase"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "COMMISSION_RATE",
    "UNCATEGORIZED",
    "DEFAULT_RECENT_LIMIT",
    "TOP_PRODUCTS_LIMIT",
    "SheetName",
    "SearchField",
    "OutcomeStatus",
    "WriteKind",
    "CommissionType",
]
