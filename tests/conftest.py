"""Shared pytest fixtures and utilities for lotkeeper tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR,):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from lotkeeper import cli, constants, core_logic, data_manager  # noqa: E402
from lotkeeper.setup_workbook import build_master_workbook, create_master_workbook  # noqa: E402
from lotkeeper.store import WorkbookStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_ADMIN_ID = "ADMIN-1"
DEFAULT_AGENT_ID = "AG-1"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultAdmin = {default_admin_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_admin_id: str
    schema_version: str
    store_name: str


def make_agent(agent_id: str = DEFAULT_AGENT_ID, total: str = "0.00") -> data_manager.AgentRow:
    return data_manager.AgentRow(agent_id=agent_id, agent_name=f"Agent {agent_id}", total_commission=Decimal(total))


def make_lot(
    lot_id: str,
    *,
    product_name: str = "X",
    quantity: int = 1,
    timestamp: int = 100,
    unit_price: str = "5.00",
    category: str = "Shirts",
    size: str = "M",
    order_id: str = "O-1",
    seller_id: str = DEFAULT_AGENT_ID,
    serial_number: str | None = None,
    is_admin_purchase: bool = True,
) -> data_manager.LotRow:
    """Build a lot row with sensible defaults."""

    price = Decimal(unit_price)
    return data_manager.LotRow(
        lot_id=lot_id,
        order_id=order_id,
        seller_id=seller_id,
        admin_id=DEFAULT_ADMIN_ID if is_admin_purchase else "",
        product_name=product_name,
        category=category,
        size=size,
        quantity=quantity,
        unit_price=price,
        total_cost=price * quantity,
        serial_number=serial_number,
        purchase_timestamp=timestamp,
        is_admin_purchase=is_admin_purchase,
    )


def make_order(
    doc_id: str = "O-1",
    *,
    order_id: str | None = None,
    quantity: int = 10,
    unit_price: str = "5.00",
    seller_id: str = DEFAULT_AGENT_ID,
    product_name: str = "Blue Shirt",
    category: str = "Shirts",
    size: str = "M",
    fit: str = "Slim",
) -> data_manager.OrderRow:
    """Build an order row; ``order_id`` defaults to the document id."""

    return data_manager.OrderRow(
        doc_id=doc_id,
        order_id=doc_id if order_id is None else order_id,
        seller_id=seller_id,
        product_name=product_name,
        category=category,
        size=size,
        fit=fit,
        quantity=quantity,
        unit_price=Decimal(unit_price),
    )


def make_sale(
    sale_id: str,
    *,
    product_name: str = "X",
    category: str = "Shirts",
    quantity: int = 1,
    unit_price: str = "10.00",
    timestamp: int = 100,
) -> data_manager.SaleRow:
    price = Decimal(unit_price)
    return data_manager.SaleRow(
        sale_id=sale_id,
        product_name=product_name,
        category=category,
        unit_price=price,
        quantity=quantity,
        timestamp=timestamp,
        buyer_name="Walk-in",
        total=price * quantity,
    )


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        agents: tuple[data_manager.AgentRow, ...] = (),
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, agents=agents, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_admin_id: str = DEFAULT_ADMIN_ID,
        agents: tuple[data_manager.AgentRow, ...] = (),
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", agents=agents)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                default_admin_id=default_admin_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_admin_id=default_admin_id,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> WorkbookStore:
    """Return an in-memory store seeded with one sales agent."""

    return WorkbookStore(build_master_workbook(agents=(make_agent(),)))


@pytest.fixture
def store_factory() -> Callable[..., WorkbookStore]:
    """Build in-memory stores pre-populated with rows."""

    def _create(
        *,
        lots: tuple[data_manager.LotRow, ...] = (),
        orders: tuple[data_manager.OrderRow, ...] = (),
        sales: tuple[data_manager.SaleRow, ...] = (),
        agents: tuple[data_manager.AgentRow, ...] = (),
    ) -> WorkbookStore:
        workbook = build_master_workbook(agents=agents)
        for lot in lots:
            data_manager.append_row(workbook, data_manager.LOTS_SHEET, lot)
        for order in orders:
            data_manager.append_row(workbook, data_manager.ORDERS_SHEET, order)
        for sale in sales:
            data_manager.append_row(workbook, data_manager.SALES_SHEET, sale)
        return WorkbookStore(workbook)

    return _create


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="lotkeeper", description="lotkeeper CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    async def _noop(*_):
        return 0

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            _noop,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Time fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fixed_moment() -> datetime:
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
