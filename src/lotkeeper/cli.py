"""Command-line entry points for lotkeeper.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the inventory workflows, and printing
their results. Executors are coroutines; :func:`main` drives them with
:func:`asyncio.run`.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import aggregation, commission, consumption, core_logic, log, purchasing, reporting, search
from .constants import OutcomeStatus, SearchField
from .store import StoreError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], Awaitable[int]]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="lotkeeper",
        description="Command-line tools for the lotkeeper inventory store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as purchases and sales."""
    specs = {
        "add-agent": register_add_agent_command(subparsers),
        "add-order": register_add_order_command(subparsers),
        "delete-order": register_delete_order_command(subparsers),
        "remove-order": register_remove_order_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "sell": register_sell_command(subparsers),
        "remove-stock": register_remove_stock_command(subparsers),
        "update-product": register_update_product_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "categories": register_categories_command(subparsers),
        "orders": register_orders_command(subparsers),
        "sales-report": register_sales_report_command(subparsers),
        "commission": register_commission_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_agent_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-agent``."""
    name = "add-agent"
    help_text = "Register a sales agent."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--agent-id", required=True)
        parser.add_argument("--agent-name", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_agent)


def register_add_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-order``."""
    name = "add-order"
    help_text = "Create a sales-agent order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--seller-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--category", default="")
        parser.add_argument("--size", default="")
        parser.add_argument("--fit", default="")
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_order)


def register_delete_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-order``."""
    name = "delete-order"
    help_text = "Delete an order by its document id (agent side)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--doc-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_order)


def register_remove_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-order``."""
    name = "remove-order"
    help_text = "Remove an order by order id or document id (admin side)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_order)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Purchase stock against an order and accrue commission."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--admin-id", default=None, help="Defaults to [Defaults] DefaultAdmin.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Sell stock of a product and record the sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--buyer-name", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell)


def register_remove_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-stock``."""
    name = "remove-stock"
    help_text = "Write off stock of a product without a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--quantity", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_stock)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Rename or re-describe every lot of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--new-name", required=True)
        parser.add_argument("--category", default="")
        parser.add_argument("--size", default="")
        parser.add_argument("--serial", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Show aggregated stock, optionally filtered."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", default=None)
        parser.add_argument("--query", default="")
        parser.add_argument(
            "--field",
            choices=[member.value for member in SearchField],
            default=SearchField.NAME.value,
        )
        parser.add_argument("--scan", default=None, help="Scanned serial, name or order id.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_categories_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``categories``."""
    name = "categories"
    help_text = "Show admin-purchased quantities per category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_categories_report, mutates=False)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List open orders."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--seller-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report, mutates=False)


def register_sales_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales-report``."""
    name = "sales-report"
    help_text = "Show revenue per category, top products and recent sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--recent", type=int, default=5)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report, mutates=False)


def register_commission_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``commission``."""
    name = "commission"
    help_text = "Show a seller's commission, or live totals for one order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--seller-id", default=None)
        target.add_argument("--order-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_commission_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


async def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return await spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_quantity(raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise core_logic.ValidationError(f"Invalid quantity: {raw}") from exc


def parse_money(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise core_logic.ValidationError(f"Invalid amount: {raw}") from exc


def translate_add_order(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-order request."""
    return {
        "seller_id": args.seller_id,
        "product_name": args.product_name,
        "category": args.category,
        "size": args.size,
        "fit": args.fit,
        "quantity": parse_quantity(args.quantity),
        "unit_price": parse_money(args.unit_price),
    }


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an update-product request."""
    return {
        "new_name": args.new_name,
        "category": args.category,
        "size": args.size,
        "serial_number": args.serial,
    }


def report_outcome(outcome: core_logic.Outcome) -> int:
    """Print a workflow outcome and map it to an exit code."""
    if outcome.status is OutcomeStatus.FAILURE:
        print(f"Error: {outcome.message}")
        if outcome.error is None or isinstance(outcome.error, core_logic.BusinessRuleViolation):
            return 2
        return 1
    if outcome.is_partial:
        log.warning("%s", outcome.message)
        print(f"Warning: {outcome.message}")
        return 0
    print(outcome.message)
    return 0


async def load_product(
    context: core_logic.RuntimeContext, product_name: str
) -> Tuple[aggregation.AggregatedProduct, aggregation.LotIndex]:
    """Fetch the inventory and pick one product by exact name."""
    products, index = await aggregation.fetch_inventory(context.store)
    for product in products:
        if product.product_name == product_name:
            return product, index
    raise core_logic.ValidationError(f"No stock for {product_name}")


async def run_add_agent(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-agent workflow."""
    outcome = await commission.add_agent(context.store, args.agent_id, args.agent_name)
    return report_outcome(outcome)


async def run_add_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order intake workflow."""
    payload = translate_add_order(args)
    outcome = await purchasing.create_order(context.store, **payload)
    if outcome.ok:
        print(f"Order id: {outcome.value.order_id}")
    return report_outcome(outcome)


async def run_delete_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the agent-side order deletion."""
    return report_outcome(await purchasing.delete_order(context.store, args.doc_id))


async def run_remove_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the admin-side order removal."""
    return report_outcome(await purchasing.remove_order(context.store, args.order_id))


async def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the admin purchase workflow."""
    quantity = parse_quantity(args.quantity)
    documents = await purchasing.resolve_order_documents(context.store, args.order_id)
    if not documents:
        raise core_logic.MissingReferenceError("Order not found")
    admin_id = args.admin_id or context.settings.default_admin_id
    outcome = await purchasing.purchase_order(context.store, documents[0], quantity, admin_id=admin_id)
    return report_outcome(outcome)


async def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sell workflow."""
    quantity = parse_quantity(args.quantity)
    unit_price = parse_money(args.unit_price)
    product, index = await load_product(context, args.product_name)
    outcome = await consumption.sell_product(context.store, product, quantity, unit_price, args.buyer_name, index)
    return report_outcome(outcome)


async def run_remove_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock removal workflow."""
    quantity = parse_quantity(args.quantity)
    _, index = await aggregation.fetch_inventory(context.store)
    outcome = await consumption.remove_product(context.store, args.product_name, quantity, index)
    return report_outcome(outcome)


async def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the product info update."""
    payload = translate_update_product(args)
    _, index = await aggregation.fetch_inventory(context.store)
    outcome = await consumption.update_product_info(context.store, args.product_name, index, **payload)
    return report_outcome(outcome)


async def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the aggregated stock view."""
    products, _ = await aggregation.fetch_inventory(context.store, args.category)
    for product in search.filter_products(products, args.query, args.field, args.scan):
        print(
            f"{product.product_name} | {product.category} | {product.size} | "
            f"{product.representative_serial or '-'} | qty={product.total_quantity} | cost={product.total_cost}"
        )
    return 0


async def run_categories_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print admin-purchased quantities per category."""
    for category, quantity in (await aggregation.fetch_category_quantities(context.store)).items():
        print(f"{category}: {quantity}")
    return 0


async def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print open orders."""
    for order in await purchasing.list_orders(context.store, args.seller_id):
        print(
            f"{order.order_id} | {order.seller_id} | {order.product_name} | {order.category} | "
            f"{order.size} | {order.fit} | qty={order.quantity} | price={order.unit_price}"
        )
    return 0


async def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the sales dashboard."""
    sales = await context.store.query_sales()
    snapshot = reporting.build_dashboard(sales, args.recent)
    print(f"Sales: {snapshot.sale_count} | revenue={snapshot.total_revenue}")
    for category, revenue in snapshot.category_revenue.items():
        print(f"  {category}: {revenue}")
    for entry in snapshot.top_products:
        print(f"  top {entry.product_name}: units={entry.units} revenue={entry.revenue}")
    for sale in snapshot.recent_sales:
        print(f"  recent {sale.sale_id}: {sale.quantity} x {sale.product_name} = {sale.total}")
    return 0


async def run_commission_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a seller's commission report or one order's live totals."""
    if args.order_id:
        totals = await commission.order_commission(context.store, args.order_id)
        print(
            f"Order {totals.order_id}: total sold={totals.total_sold} "
            f"commission={commission.to_cents(totals.commission)}"
        )
        return 0

    report = await commission.seller_commission_report(context.store, args.seller_id)
    agent = await context.store.get_agent(args.seller_id)
    if agent is not None:
        print(f"Running total: {commission.to_cents(agent.total_commission)}")
    print(f"Total commission: {commission.to_cents(report.total_commission)}")
    for category, amount in report.by_category.items():
        print(f"  {category}: {commission.to_cents(amount)}")
    for lot in report.recent_purchases:
        print(f"  recent {lot.lot_id}: {lot.quantity} x {lot.product_name} = {lot.total_cost}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


async def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        await core_logic.persist_context(context)
    except StoreError as error:
        raise RuntimeError(str(error)) from error


async def run_command(args: argparse.Namespace, command_table: Mapping[str, CommandSpec]) -> int:
    """Load the context, run one command and persist its writes."""
    context = load_runtime_context(getattr(args, "config", None))
    spec = command_table.get(args.command)
    if spec is not None and spec.mutates:
        core_logic.ensure_schema_version(context)
    exit_code = await dispatch_command(context, args, command_table)
    if exit_code == 0 and spec is not None and spec.mutates:
        await persist_workbook(context)
    return exit_code


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        return asyncio.run(run_command(args, command_table))
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
