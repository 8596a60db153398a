"""Asynchronous document store backed by the master workbook.

:class:`WorkbookStore` exposes the narrow data-access interface the inventory
engines rely on: collection queries, single-document writes, all-or-nothing
transactions, batch writes and snapshot listeners. Each collection is one
worksheet of the workbook managed by :mod:`lotkeeper.data_manager`.

Every mutation runs while holding an :class:`asyncio.Lock`. Transactions read
live committed state, buffer their writes, validate every target once the
callback returns and only then apply the writes together. Nothing written by
a failed transaction reaches the workbook.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import SheetName, WriteKind
from .data_manager import AgentRow, CommissionRow, LotRow, OrderRow, Row, SaleRow


T = TypeVar("T")
SnapshotCallback = Callable[[List[Row]], None]


class StoreError(Exception):
    """Raised when the backing store rejects or fails an operation."""


class DocumentNotFoundError(StoreError):
    """Raised when a write targets a document that does not exist."""


@dataclass(frozen=True)
class WriteOp:
    """Single buffered write used by transactions and batch writes."""

    kind: WriteKind
    collection: str
    key: Optional[str] = None
    record: Optional[Row] = None
    field_values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def insert(cls, collection: str, record: Row) -> "WriteOp":
        return cls(WriteKind.INSERT, _collection_name(collection), key=_record_key(collection, record), record=record)

    @classmethod
    def update(cls, collection: str, key: str, field_values: Mapping[str, Any]) -> "WriteOp":
        return cls(WriteKind.UPDATE, _collection_name(collection), key=key, field_values=dict(field_values))

    @classmethod
    def delete(cls, collection: str, key: str) -> "WriteOp":
        return cls(WriteKind.DELETE, _collection_name(collection), key=key)


def _collection_name(collection: str) -> str:
    try:
        return SheetName(collection).value
    except ValueError as exc:
        raise StoreError(f"Unknown collection: {collection}") from exc


def _record_key(collection: str, record: Row) -> str:
    return getattr(record, data_manager.key_field(_collection_name(collection)))


def _matches(record: Row, filters: Mapping[str, Any]) -> bool:
    return all(getattr(record, name) == value for name, value in filters.items())


class Transaction:
    """Read-modify-write unit handed to :meth:`WorkbookStore.run_transaction`.

    Reads return committed state; buffered writes become visible only after
    the transaction commits.
    """

    def __init__(self, store: "WorkbookStore") -> None:
        self._store = store
        self._writes: List[WriteOp] = []

    @property
    def writes(self) -> Sequence[WriteOp]:
        return tuple(self._writes)

    async def get(self, collection: str, key: str) -> Optional[Row]:
        return self._store._read_one(_collection_name(collection), key)

    async def query(self, collection: str, filters: Optional[Mapping[str, Any]] = None) -> List[Row]:
        return self._store._read_many(_collection_name(collection), filters or {})

    def insert(self, collection: str, record: Row) -> None:
        self._writes.append(WriteOp.insert(collection, record))

    def update(self, collection: str, key: str, field_values: Mapping[str, Any]) -> None:
        self._writes.append(WriteOp.update(collection, key, field_values))

    def delete(self, collection: str, key: str) -> None:
        self._writes.append(WriteOp.delete(collection, key))


class ListenerRegistration:
    """Handle returned by :meth:`WorkbookStore.listen`.

    :meth:`remove` may be called any number of times.
    """

    def __init__(self, store: "WorkbookStore", token: int) -> None:
        self._store = store
        self._token = token
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def remove(self) -> None:
        if not self._active:
            return
        self._active = False
        self._store._listeners.pop(self._token, None)
        log.debug("Detached listener %s", self._token)


@dataclass
class _Listener:
    collection: str
    callback: SnapshotCallback
    filters: Mapping[str, Any]
    order_by: Optional[str]
    descending: bool
    limit: Optional[int]


class WorkbookStore:
    """Document store whose collections are worksheets of one workbook.

    Args:
        workbook (Workbook): Live ``openpyxl`` workbook holding every
            collection sheet.
        data_file (Path | None): Destination used by :meth:`persist`.
    """

    def __init__(self, workbook: Workbook, data_file: Optional[Path] = None) -> None:
        self._workbook = workbook
        self._data_file = data_file
        self._lock = asyncio.Lock()
        self._listeners: Dict[int, _Listener] = {}
        self._next_token = 0

    @property
    def workbook(self) -> Workbook:
        return self._workbook

    # ------------------------------------------------------------------
    # Generic collection access
    # ------------------------------------------------------------------
    async def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        """Return every record of ``collection`` whose attributes equal ``filters``.

        Args:
            collection (str): Collection (sheet) name.
            filters (Mapping[str, Any] | None): Attribute equality filters.
            order_by (str | None): Attribute to sort by. Ties keep sheet order.
            descending (bool): Sort direction for ``order_by``.
            limit (int | None): Maximum number of records to return.

        Raises:
            StoreError: If the collection or a filter attribute is unknown.
        """

        return self._select(_collection_name(collection), filters or {}, order_by, descending, limit)

    async def get(self, collection: str, key: str) -> Optional[Row]:
        return self._read_one(_collection_name(collection), key)

    async def insert(self, collection: str, record: Row) -> Row:
        await self.batch_write([WriteOp.insert(collection, record)])
        return record

    async def update(self, collection: str, key: str, field_values: Mapping[str, Any]) -> None:
        await self.batch_write([WriteOp.update(collection, key, field_values)])

    async def delete(self, collection: str, key: str) -> None:
        await self.batch_write([WriteOp.delete(collection, key)])

    async def batch_write(self, ops: Sequence[WriteOp]) -> None:
        """Apply ``ops`` together, or none of them if any target is invalid."""

        if not ops:
            return
        async with self._lock:
            self._commit(ops)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` as one atomic read-modify-write unit.

        ``fn`` receives a :class:`Transaction`. Its buffered writes are
        committed only when it returns normally; any exception it raises
        propagates and discards them. Other mutations wait until the
        transaction finishes, so availability checks made inside ``fn`` hold
        at commit time. ``fn`` must use the transaction handle rather than the
        store's own write methods.

        Returns:
            T: Whatever ``fn`` returned.
        """

        async with self._lock:
            transaction = Transaction(self)
            result = await fn(transaction)
            self._commit(transaction.writes)
        return result

    async def persist(self) -> None:
        """Save the workbook to the configured data file."""

        if self._data_file is None:
            raise StoreError("Store has no data file to persist to")
        async with self._lock:
            try:
                await asyncio.to_thread(data_manager.save_workbook, self._workbook, self._data_file)
            except OSError as exc:
                log.error("Failed to persist workbook '%s': %s", self._data_file, exc)
                raise StoreError(f"Failed to save workbook: {exc}") from exc
        log.info("Persisted workbook '%s'", self._data_file)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def listen(
        self,
        collection: str,
        callback: SnapshotCallback,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> ListenerRegistration:
        """Deliver query snapshots of ``collection`` to ``callback``.

        The first snapshot is delivered immediately; a new full snapshot
        follows every commit that touches the collection.
        """

        name = _collection_name(collection)
        listener = _Listener(name, callback, dict(filters or {}), order_by, descending, limit)
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener
        log.debug("Attached listener %s on '%s'", token, name)
        self._deliver(listener)
        return ListenerRegistration(self, token)

    def _deliver(self, listener: _Listener) -> None:
        snapshot = self._select(
            listener.collection, listener.filters, listener.order_by, listener.descending, listener.limit
        )
        try:
            listener.callback(snapshot)
        except Exception:
            log.exception("Listener on '%s' failed while handling a snapshot", listener.collection)

    def _notify(self, collections: Set[str]) -> None:
        for listener in list(self._listeners.values()):
            if listener.collection in collections:
                self._deliver(listener)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _read_many(self, collection: str, filters: Mapping[str, Any]) -> List[Row]:
        try:
            rows = list(data_manager.iter_rows(self._workbook, collection))
            return [row for row in rows if _matches(row, filters)]
        except AttributeError as exc:
            raise StoreError(f"Unknown filter field on {collection}: {exc}") from exc
        except (KeyError, ValueError, TypeError) as exc:
            raise StoreError(f"Failed to read {collection}: {exc}") from exc

    def _read_one(self, collection: str, key: str) -> Optional[Row]:
        try:
            return data_manager.get_row(self._workbook, collection, key)
        except (KeyError, ValueError, TypeError) as exc:
            raise StoreError(f"Failed to read {collection}/{key}: {exc}") from exc

    def _select(
        self,
        collection: str,
        filters: Mapping[str, Any],
        order_by: Optional[str],
        descending: bool,
        limit: Optional[int],
    ) -> List[Row]:
        rows = self._read_many(collection, filters)
        if order_by is not None:
            try:
                rows.sort(key=lambda row: getattr(row, order_by), reverse=descending)
            except AttributeError as exc:
                raise StoreError(f"Unknown order field on {collection}: {order_by}") from exc
        if limit is not None:
            rows = rows[:limit]
        return rows

    def _validate(self, ops: Sequence[WriteOp]) -> None:
        keys: Dict[str, Set[str]] = {}
        for op in ops:
            if op.collection not in keys:
                keys[op.collection] = {
                    _record_key(op.collection, row) for row in data_manager.iter_rows(self._workbook, op.collection)
                }
            present = keys[op.collection]
            if op.kind is WriteKind.INSERT:
                expected = data_manager.ROW_TYPES[op.collection]
                if not isinstance(op.record, expected):
                    raise StoreError(f"{op.collection} expects {expected.__name__} records")
                if not op.key:
                    raise StoreError(f"Cannot insert into {op.collection} without a document id")
                if op.key in present:
                    raise StoreError(f"Document '{op.key}' already exists in {op.collection}")
                present.add(op.key)
            elif op.kind is WriteKind.UPDATE:
                if op.key not in present:
                    raise DocumentNotFoundError(f"No document '{op.key}' in {op.collection}")
                for name in op.field_values:
                    try:
                        header = data_manager.column_for(op.collection, name)
                    except KeyError as exc:
                        raise StoreError(str(exc)) from exc
                    if header == data_manager.SHEET_COLUMNS[op.collection][0]:
                        raise StoreError(f"Cannot rewrite the document id of {op.collection}")
            else:
                if op.key not in present:
                    raise DocumentNotFoundError(f"No document '{op.key}' in {op.collection}")
                present.discard(op.key)

    def _commit(self, ops: Sequence[WriteOp]) -> None:
        if not ops:
            return
        self._validate(ops)
        for op in ops:
            try:
                if op.kind is WriteKind.INSERT:
                    data_manager.append_row(self._workbook, op.collection, op.record)
                elif op.kind is WriteKind.UPDATE:
                    data_manager.update_row(self._workbook, op.collection, op.key, field_values=op.field_values)
                else:
                    data_manager.delete_row(self._workbook, op.collection, op.key)
            except (KeyError, ValueError, TypeError) as exc:
                log.error("Write %s on %s/%s failed: %s", op.kind.value, op.collection, op.key, exc)
                raise StoreError(f"Failed to apply write to {op.collection}: {exc}") from exc
        log.debug("Committed %d write(s)", len(ops))
        self._notify({op.collection for op in ops})

    # ------------------------------------------------------------------
    # Named collection helpers
    # ------------------------------------------------------------------
    async def query_lots(
        self,
        *,
        category: Optional[str] = None,
        seller_id: Optional[str] = None,
        product_name: Optional[str] = None,
        order_id: Optional[str] = None,
        is_admin_purchase: Optional[bool] = None,
        newest_first: bool = False,
    ) -> List[LotRow]:
        """Query purchase lots, optionally sorted by purchase time descending."""

        filters = {
            name: value
            for name, value in (
                ("category", category),
                ("seller_id", seller_id),
                ("product_name", product_name),
                ("order_id", order_id),
                ("is_admin_purchase", is_admin_purchase),
            )
            if value is not None
        }
        order_by = "purchase_timestamp" if newest_first else None
        return await self.query(SheetName.LOTS, filters, order_by=order_by, descending=True)

    async def query_orders(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[OrderRow]:
        return await self.query(SheetName.ORDERS, filters, order_by=order_by, descending=descending)

    async def insert_order(self, order: OrderRow) -> OrderRow:
        return await self.insert(SheetName.ORDERS, order)

    async def update_order_field(self, doc_id: str, field_name: str, value: Any) -> None:
        await self.update(SheetName.ORDERS, doc_id, {field_name: value})

    async def delete_order(self, doc_id: str) -> None:
        await self.delete(SheetName.ORDERS, doc_id)

    async def append_sale(self, sale: SaleRow) -> SaleRow:
        return await self.insert(SheetName.SALES, sale)

    async def query_sales(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[str] = "timestamp",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[SaleRow]:
        return await self.query(SheetName.SALES, filters, order_by=order_by, descending=descending, limit=limit)

    async def get_agent(self, agent_id: str) -> Optional[AgentRow]:
        return await self.get(SheetName.AGENTS, agent_id)

    async def append_commission(self, record: CommissionRow) -> CommissionRow:
        return await self.insert(SheetName.COMMISSIONS, record)
