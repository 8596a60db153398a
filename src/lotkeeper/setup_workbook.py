"""Bootstrap an empty master workbook for the document store."""

from __future__ import annotations

import argparse
import sys
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .data_manager import AGENTS_SHEET, SHEET_COLUMNS, AgentRow, append_row, save_workbook

DATA_FILE = "lotkeeper_store.xlsx"


def build_master_workbook(agents: Sequence[AgentRow] = ()) -> Workbook:
    """Create an in-memory workbook with every collection sheet and header.

    Args:
        agents (Sequence[AgentRow]): Optional sales agents to seed.

    Returns:
        Workbook: Workbook ready to be saved or wrapped by the store.
    """

    wb = openpyxl.Workbook()
    # drop the default sheet
    if "Sheet" in wb.sheetnames:
        del wb["Sheet"]

    bold_font = Font(bold=True)

    for sheet_name, columns in SHEET_COLUMNS.items():
        ws = wb.create_sheet(title=sheet_name)
        for col_idx, column_name in enumerate(columns, 1):
            cell = ws.cell(row=1, column=col_idx)
            cell.value = column_name
            cell.font = bold_font
        log.debug("Created sheet '%s'", sheet_name)

    for agent in agents:
        append_row(wb, AGENTS_SHEET, agent)
        log.info("Seeded sales agent '%s'", agent.agent_id)

    return wb


def create_master_workbook(destination: Path, *, agents: Sequence[AgentRow] = (), overwrite: bool = False) -> Path:
    """Write a fresh master workbook to ``destination``.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"'{destination}' already exists. Remove it to re-initialize.")

    workbook = build_master_workbook(agents)
    save_workbook(workbook, destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="lotkeeper-setup",
        description="Initialize a new lotkeeper workbook.",
    )
    parser.add_argument("destination", nargs="?", default=DATA_FILE, type=Path)
    parser.add_argument("--overwrite", action="store_true", help="Replace an existing workbook")
    parser.add_argument(
        "--agent",
        action="append",
        default=[],
        metavar="ID=NAME",
        help="Seed a sales agent (repeatable)",
    )
    args = parser.parse_args(argv)

    agents = []
    for entry in args.agent:
        agent_id, sep, agent_name = entry.partition("=")
        if not sep or not agent_id.strip():
            parser.error(f"Invalid --agent value '{entry}', expected ID=NAME")
        agents.append(AgentRow(agent_id=agent_id.strip(), agent_name=agent_name.strip(), total_commission=Decimal("0")))

    try:
        path = create_master_workbook(args.destination, agents=agents, overwrite=args.overwrite)
    except FileExistsError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Successfully created '{path}'.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
