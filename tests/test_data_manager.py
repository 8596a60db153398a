"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from lotkeeper import constants, data_manager  # noqa: E402
from lotkeeper import setup_workbook
from lotkeeper.setup_workbook import build_master_workbook

from conftest import make_agent, make_lot, make_order, make_sale


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Store"
    assert parser.get("Defaults", "DefaultAdmin") == "ADMIN-1"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_admin_id == "ADMIN-1"
    assert settings.store_name == "Test Store"


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_master_workbook_has_every_collection_sheet(master_workbook_path):
    """The bootstrap workbook should carry one sheet per collection with headers."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.validate_workbook(workbook)
    assert set(workbook.sheetnames) == {member.value for member in constants.SheetName}


def test_validate_workbook_rejects_missing_sheet():
    """A workbook without a collection sheet should be rejected."""

    workbook = build_master_workbook()
    del workbook[constants.SheetName.SALES.value]
    with pytest.raises(KeyError):
        data_manager.validate_workbook(workbook)


def test_save_workbook_round_trips_lot_rows(master_workbook_path):
    """Lots written through append_row should deserialize identically after a save."""

    workbook = data_manager.open_workbook(master_workbook_path)
    lot = make_lot("L1", quantity=3, unit_price="4.50", timestamp=1_700_000_000_123, serial_number="SHI-O1-ABCD")
    data_manager.append_row(workbook, data_manager.LOTS_SHEET, lot)
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.refresh_workbook(master_workbook_path)
    rows = list(data_manager.iter_rows(reloaded, data_manager.LOTS_SHEET))
    assert rows == [lot]


def test_save_workbook_creates_parent_directories(tmp_path):
    """save_workbook should create missing parent folders."""

    destination = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(build_master_workbook(), destination)
    assert isinstance(openpyxl.load_workbook(destination), OpenpyxlWorkbook)


def test_append_row_rejects_wrong_record_type():
    """A record must match the dataclass stored on the target sheet."""

    workbook = build_master_workbook()
    with pytest.raises(TypeError):
        data_manager.append_row(workbook, data_manager.LOTS_SHEET, make_order())


def test_iter_rows_skips_blank_rows():
    """Fully empty rows should not produce records."""

    workbook = build_master_workbook()
    data_manager.append_row(workbook, data_manager.ORDERS_SHEET, make_order("O-1"))
    workbook[data_manager.ORDERS_SHEET].append([None] * 9)
    data_manager.append_row(workbook, data_manager.ORDERS_SHEET, make_order("O-2", fit="Loose"))

    rows = list(data_manager.iter_rows(workbook, data_manager.ORDERS_SHEET))
    assert [row.doc_id for row in rows] == ["O-1", "O-2"]


def test_get_row_returns_record_or_none():
    """get_row should look records up by their document key."""

    workbook = build_master_workbook(agents=(make_agent("AG-7", "12.50"),))
    agent = data_manager.get_row(workbook, data_manager.AGENTS_SHEET, "AG-7")
    assert agent.total_commission == Decimal("12.50")
    assert data_manager.get_row(workbook, data_manager.AGENTS_SHEET, "AG-404") is None


def test_update_row_changes_only_named_fields():
    """update_row should rewrite the selected fields and leave others untouched."""

    workbook = build_master_workbook()
    data_manager.append_row(workbook, data_manager.LOTS_SHEET, make_lot("L1", quantity=5))
    data_manager.update_row(workbook, data_manager.LOTS_SHEET, "L1", field_values={"quantity": 2})

    (lot,) = data_manager.iter_rows(workbook, data_manager.LOTS_SHEET)
    assert lot.quantity == 2
    assert lot.product_name == "X"


def test_update_row_rejects_unknown_field_and_key_column():
    """Unknown fields and the key column cannot be updated."""

    workbook = build_master_workbook()
    data_manager.append_row(workbook, data_manager.LOTS_SHEET, make_lot("L1"))
    with pytest.raises(KeyError):
        data_manager.update_row(workbook, data_manager.LOTS_SHEET, "L1", field_values={"colour": "red"})
    with pytest.raises(KeyError):
        data_manager.update_row(workbook, data_manager.LOTS_SHEET, "L1", field_values={"lot_id": "L2"})


def test_update_row_missing_record_raises():
    """Updating an unknown key should raise KeyError."""

    workbook = build_master_workbook()
    with pytest.raises(KeyError):
        data_manager.update_row(workbook, data_manager.LOTS_SHEET, "L404", field_values={"quantity": 1})


def test_delete_row_removes_record():
    """delete_row should physically remove the row."""

    workbook = build_master_workbook()
    for sale_id in ("S1", "S2", "S3"):
        data_manager.append_row(workbook, data_manager.SALES_SHEET, make_sale(sale_id))
    data_manager.delete_row(workbook, data_manager.SALES_SHEET, "S2")

    assert [sale.sale_id for sale in data_manager.iter_rows(workbook, data_manager.SALES_SHEET)] == ["S1", "S3"]
    with pytest.raises(KeyError):
        data_manager.delete_row(workbook, data_manager.SALES_SHEET, "S2")


def test_locate_row_unknown_column_raises():
    """locate_row should reject unknown header titles."""

    workbook = build_master_workbook()
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.LOTS_SHEET, "Nope", "L1")


def test_deserialize_lot_fills_missing_values():
    """Blank cells should become safe defaults and a derived total cost."""

    raw = ("L1", None, None, None, "Cap", None, None, 4, "2.50", None, None, None, None)
    lot = data_manager.deserialize_lot(raw)
    assert lot.quantity == 4
    assert lot.total_cost == Decimal("10.00")
    assert lot.serial_number is None
    assert lot.purchase_timestamp == 0
    assert lot.is_admin_purchase is False


def test_deserialize_sale_recomputes_blank_total():
    """A sale without a stored total should be valued at price times quantity."""

    raw = ("S1", "Cap", "Hats", "3.00", 2, 100, "Ann", None)
    assert data_manager.deserialize_sale(raw).total == Decimal("6.00")


def test_serialize_row_matches_sheet_columns():
    """serialize_row should follow the header ordering of the sheet."""

    order = make_order("O-9")
    values = data_manager.serialize_row(order)
    assert len(values) == len(data_manager.SHEET_COLUMNS[data_manager.ORDERS_SHEET])
    assert values[0] == "O-9"


def test_column_for_translates_attributes():
    """Attribute names should map to worksheet headers."""

    assert data_manager.column_for(data_manager.LOTS_SHEET, "purchase_timestamp") == "PurchaseTimestamp"
    assert data_manager.key_field(data_manager.COMMISSIONS_SHEET) == "commission_id"
    with pytest.raises(KeyError):
        data_manager.column_for(data_manager.LOTS_SHEET, "nope")


# ---------------------------------------------------------------------------
# Workbook bootstrap
# ---------------------------------------------------------------------------


def test_setup_main_creates_workbook_with_agents(tmp_path: Path, capsys):
    """The bootstrap script writes every sheet and seeds requested agents."""

    destination = tmp_path / "store.xlsx"
    assert setup_workbook.main([str(destination), "--agent", "AG-1=Ann"]) == 0
    assert "Successfully created" in capsys.readouterr().out

    workbook = data_manager.open_workbook(destination)
    data_manager.validate_workbook(workbook)
    (agent,) = data_manager.iter_rows(workbook, data_manager.AGENTS_SHEET)
    assert (agent.agent_id, agent.agent_name) == ("AG-1", "Ann")


def test_setup_main_refuses_to_overwrite(tmp_path: Path, capsys):
    """An existing workbook is kept unless --overwrite is given."""

    destination = tmp_path / "store.xlsx"
    setup_workbook.create_master_workbook(destination)
    assert setup_workbook.main([str(destination)]) == 1
    assert "already exists" in capsys.readouterr().err
    assert setup_workbook.main([str(destination), "--overwrite"]) == 0


def test_setup_main_rejects_malformed_agent(tmp_path: Path):
    with pytest.raises(SystemExit):
        setup_workbook.main([str(tmp_path / "x.xlsx"), "--agent", "nameless"])
