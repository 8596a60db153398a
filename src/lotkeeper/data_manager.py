"""Data access layer for lotkeeper.

This module provides low-level helpers that read from and write to the
master workbook that backs the document store. Business logic belongs
elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows keyed by their document identifier.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
LOTS_SHEET = SheetName.LOTS.value
ORDERS_SHEET = SheetName.ORDERS.value
SALES_SHEET = SheetName.SALES.value
AGENTS_SHEET = SheetName.AGENTS.value
COMMISSIONS_SHEET = SheetName.COMMISSIONS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_admin_id: str


@dataclass(frozen=True)
class LotRow:
    """In-memory view of a row from the ``Purchases`` sheet (one lot)."""

    lot_id: str
    order_id: str
    seller_id: str
    admin_id: str
    product_name: str
    category: str
    size: str
    quantity: int
    unit_price: Decimal
    total_cost: Decimal
    serial_number: Optional[str]
    purchase_timestamp: int
    is_admin_purchase: bool


@dataclass(frozen=True)
class OrderRow:
    """In-memory view of a row from the ``Orders`` sheet.

    ``doc_id`` is the store's native identifier while ``order_id`` is the
    logical identifier agents and admins refer to. Historical rows may carry
    a blank or mismatching ``order_id``.
    """

    doc_id: str
    order_id: str
    seller_id: str
    product_name: str
    category: str
    size: str
    fit: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the append-only ``Sales`` sheet."""

    sale_id: str
    product_name: str
    category: str
    unit_price: Decimal
    quantity: int
    timestamp: int
    buyer_name: str
    total: Decimal


@dataclass(frozen=True)
class AgentRow:
    """In-memory view of a row from the ``Agents`` sheet."""

    agent_id: str
    agent_name: str
    total_commission: Decimal


@dataclass(frozen=True)
class CommissionRow:
    """In-memory view of a row from the ``Commissions`` audit sheet."""

    commission_id: str
    seller_id: str
    sale_amount: Decimal
    commission_amount: Decimal
    commission_rate: Decimal
    timestamp: int
    type: str


Row = Union[LotRow, OrderRow, SaleRow, AgentRow, CommissionRow]


# Header titles, in worksheet order, paired with the dataclass attribute they
# hold. The first pair of each sheet is the document key.
SHEET_FIELDS: Mapping[str, Tuple[Tuple[str, str], ...]] = {
    LOTS_SHEET: (
        ("lot_id", "LotID"),
        ("order_id", "OrderID"),
        ("seller_id", "SellerID"),
        ("admin_id", "AdminID"),
        ("product_name", "ProductName"),
        ("category", "Category"),
        ("size", "Size"),
        ("quantity", "Quantity"),
        ("unit_price", "UnitPrice"),
        ("total_cost", "TotalCost"),
        ("serial_number", "SerialNumber"),
        ("purchase_timestamp", "PurchaseTimestamp"),
        ("is_admin_purchase", "IsAdminPurchase"),
    ),
    ORDERS_SHEET: (
        ("doc_id", "DocID"),
        ("order_id", "OrderID"),
        ("seller_id", "SellerID"),
        ("product_name", "ProductName"),
        ("category", "Category"),
        ("size", "Size"),
        ("fit", "Fit"),
        ("quantity", "Quantity"),
        ("unit_price", "UnitPrice"),
    ),
    SALES_SHEET: (
        ("sale_id", "SaleID"),
        ("product_name", "ProductName"),
        ("category", "Category"),
        ("unit_price", "UnitPrice"),
        ("quantity", "Quantity"),
        ("timestamp", "Timestamp"),
        ("buyer_name", "BuyerName"),
        ("total", "Total"),
    ),
    AGENTS_SHEET: (
        ("agent_id", "AgentID"),
        ("agent_name", "AgentName"),
        ("total_commission", "TotalCommission"),
    ),
    COMMISSIONS_SHEET: (
        ("commission_id", "CommissionID"),
        ("seller_id", "SellerID"),
        ("sale_amount", "SaleAmount"),
        ("commission_amount", "CommissionAmount"),
        ("commission_rate", "CommissionRate"),
        ("timestamp", "Timestamp"),
        ("type", "Type"),
    ),
}

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    sheet: [header for _, header in pairs] for sheet, pairs in SHEET_FIELDS.items()
}

ROW_TYPES: Mapping[str, type] = {
    LOTS_SHEET: LotRow,
    ORDERS_SHEET: OrderRow,
    SALES_SHEET: SaleRow,
    AGENTS_SHEET: AgentRow,
    COMMISSIONS_SHEET: CommissionRow,
}


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Validation of
    required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` paths are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback, and then
    resolved to an absolute form.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_admin = parser.get("Defaults", "DefaultAdmin")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_admin_id=default_admin,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def validate_workbook(workbook: Workbook) -> None:
    """Check that every collection sheet exists with the expected headers.

    Raises:
        KeyError: If a sheet is missing or its header row differs from
            :data:`SHEET_COLUMNS`.
    """

    for sheet_name, columns in SHEET_COLUMNS.items():
        if sheet_name not in workbook.sheetnames:
            raise KeyError(f"Missing worksheet: {sheet_name}")
        headers = [cell.value for cell in workbook[sheet_name][1]][: len(columns)]
        if headers != list(columns):
            raise KeyError(f"Unexpected headers on '{sheet_name}': {headers}")


def key_field(sheet_name: str) -> str:
    """Return the dataclass attribute holding the document key of a sheet."""

    return SHEET_FIELDS[sheet_name][0][0]


def column_for(sheet_name: str, field_name: str) -> str:
    """Translate a dataclass attribute into its worksheet header.

    Raises:
        KeyError: If ``field_name`` is not stored on ``sheet_name``.
    """

    for attribute, header in SHEET_FIELDS[sheet_name]:
        if attribute == field_name:
            return header
    raise KeyError(f"Unknown {sheet_name} field: {field_name}")


def iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[Row]:
    """Iterate over the records stored on ``sheet_name``.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted into the sheet's dataclass via its deserializer.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        sheet_name (str): One of the :class:`~lotkeeper.constants.SheetName`
            values.

    Yields:
        Row: One structured record for each meaningful row in the sheet.
    """

    deserialize = DESERIALIZERS[sheet_name]
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize(raw)


def get_row(workbook: Workbook, sheet_name: str, key_value: str) -> Optional[Row]:
    """Return the record whose document key equals ``key_value``, if any."""

    row_index = locate_row(workbook, sheet_name, SHEET_COLUMNS[sheet_name][0], key_value)
    if row_index is None:
        return None
    sheet = workbook[sheet_name]
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return DESERIALIZERS[sheet_name](raw)


def append_row(workbook: Workbook, sheet_name: str, record: Row) -> None:
    """Append a record to its worksheet.

    The dataclass is serialized into the exact column ordering expected by the
    sheet before being appended. Numerical fields remain
    :class:`~decimal.Decimal` instances so precision survives until the
    workbook is saved.

    Args:
        workbook (Workbook): Workbook whose sheet should be modified.
        sheet_name (str): Target worksheet.
        record (Row): Structured data ready for persistence.

    Raises:
        TypeError: If ``record`` is not the dataclass stored on ``sheet_name``.
    """

    expected = ROW_TYPES[sheet_name]
    if not isinstance(record, expected):
        raise TypeError(f"{sheet_name} expects {expected.__name__}, got {type(record).__name__}")
    workbook[sheet_name].append(serialize_row(record))


def update_row(workbook: Workbook, sheet_name: str, key_value: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing record.

    The function locates the row whose document key matches ``key_value``,
    translates each attribute name into its header, and writes the provided
    values into the corresponding cells. Only the specified fields are
    modified. The document key itself cannot be rewritten.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        sheet_name (str): Target worksheet.
        key_value (str): Document key used to locate the target row.
        field_values (Mapping[str, Any]): Mapping of attribute names to
            replacement values.

    Raises:
        KeyError: If the record or any referenced field cannot be found, or if
            the update targets the key column.
    """

    key_column = SHEET_COLUMNS[sheet_name][0]
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} record not found: {key_value}")

    sheet = workbook[sheet_name]
    headers = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(headers)}

    for field_name, value in field_values.items():
        column = column_for(sheet_name, field_name)
        if column == key_column:
            raise KeyError(f"Cannot rewrite document key of {sheet_name}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


def delete_row(workbook: Workbook, sheet_name: str, key_value: str) -> None:
    """Remove the record whose document key matches ``key_value``.

    Raises:
        KeyError: If no record matches.
    """

    row_index = locate_row(workbook, sheet_name, SHEET_COLUMNS[sheet_name][0], key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} record not found: {key_value}")
    workbook[sheet_name].delete_rows(row_index, 1)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The function constructs a mapping from header titles to column indices,
    verifies that ``key_column`` exists, and scans the worksheet for the first
    row whose value equals ``key_value``. The header row itself is not
    considered during matching.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_row(record: Row) -> list[object]:
    """Convert a row dataclass into its worksheet column ordering.

    Field declaration order on every row dataclass matches
    :data:`SHEET_FIELDS`, so the values can be read off in order.
    """

    return [getattr(record, item.name) for item in fields(record)]


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    if raw is None:
        return 0
    return int(Decimal(str(raw)))


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _to_optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_lot(raw_row: Sequence[object]) -> LotRow:
    """Convert a raw ``Purchases`` row into a :class:`LotRow`.

    Missing quantities become ``0`` so the row reads as exhausted, a missing
    ``TotalCost`` is derived from unit price times quantity, and a missing
    admin flag defaults to ``False``.
    """

    (
        lot_id,
        order_id,
        seller_id,
        admin_id,
        product_name,
        category,
        size,
        quantity_raw,
        unit_price_raw,
        total_cost_raw,
        serial_number,
        purchase_timestamp_raw,
        is_admin_purchase,
    ) = raw_row[:13]

    quantity = _to_int(quantity_raw)
    unit_price = _to_decimal(unit_price_raw)
    if total_cost_raw is None:
        total_cost = unit_price * quantity
    else:
        total_cost = _to_decimal(total_cost_raw)

    return LotRow(
        lot_id=str(lot_id),
        order_id=_to_text(order_id),
        seller_id=_to_text(seller_id),
        admin_id=_to_text(admin_id),
        product_name=_to_text(product_name),
        category=_to_text(category),
        size=_to_text(size),
        quantity=quantity,
        unit_price=unit_price,
        total_cost=total_cost,
        serial_number=_to_optional_text(serial_number),
        purchase_timestamp=_to_int(purchase_timestamp_raw),
        is_admin_purchase=bool(is_admin_purchase),
    )


def deserialize_order(raw_row: Sequence[object]) -> OrderRow:
    """Convert a raw ``Orders`` row into an :class:`OrderRow`."""

    doc_id, order_id, seller_id, product_name, category, size, fit, quantity_raw, unit_price_raw = raw_row[:9]
    return OrderRow(
        doc_id=str(doc_id),
        order_id=_to_text(order_id),
        seller_id=_to_text(seller_id),
        product_name=_to_text(product_name),
        category=_to_text(category),
        size=_to_text(size),
        fit=_to_text(fit),
        quantity=_to_int(quantity_raw),
        unit_price=_to_decimal(unit_price_raw),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a :class:`SaleRow`.

    When the stored total is blank it is recomputed as unit price times
    quantity, matching how the ledger defines revenue.
    """

    sale_id, product_name, category, unit_price_raw, quantity_raw, timestamp_raw, buyer_name, total_raw = raw_row[:8]
    unit_price = _to_decimal(unit_price_raw)
    quantity = _to_int(quantity_raw)
    total = _to_decimal(total_raw) if total_raw is not None else unit_price * quantity
    return SaleRow(
        sale_id=str(sale_id),
        product_name=_to_text(product_name),
        category=_to_text(category),
        unit_price=unit_price,
        quantity=quantity,
        timestamp=_to_int(timestamp_raw),
        buyer_name=_to_text(buyer_name),
        total=total,
    )


def deserialize_agent(raw_row: Sequence[object]) -> AgentRow:
    """Convert a raw ``Agents`` row into an :class:`AgentRow`."""

    agent_id, agent_name, total_commission_raw = raw_row[:3]
    return AgentRow(
        agent_id=str(agent_id),
        agent_name=_to_text(agent_name),
        total_commission=_to_decimal(total_commission_raw),
    )


def deserialize_commission(raw_row: Sequence[object]) -> CommissionRow:
    """Convert a raw ``Commissions`` row into a :class:`CommissionRow`."""

    (
        commission_id,
        seller_id,
        sale_amount_raw,
        commission_amount_raw,
        commission_rate_raw,
        timestamp_raw,
        record_type,
    ) = raw_row[:7]
    return CommissionRow(
        commission_id=str(commission_id),
        seller_id=_to_text(seller_id),
        sale_amount=_to_decimal(sale_amount_raw),
        commission_amount=_to_decimal(commission_amount_raw),
        commission_rate=_to_decimal(commission_rate_raw, default="0"),
        timestamp=_to_int(timestamp_raw),
        type=_to_text(record_type),
    )


DESERIALIZERS: Mapping[str, Callable[[Sequence[object]], Any]] = {
    LOTS_SHEET: deserialize_lot,
    ORDERS_SHEET: deserialize_order,
    SALES_SHEET: deserialize_sale,
    AGENTS_SHEET: deserialize_agent,
    COMMISSIONS_SHEET: deserialize_commission,
}
