"""Command-line entry points for the stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results as JSON. Keeping the CLI thin ensures the same
parser configuration can be reused by tests, scripts, or any alternative
front-end that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, queries
from .errors import BusinessRuleViolation, StorageError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the stock ledger workbook.",
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
    """Declare mutating CLI commands such as stock entries."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "add-supplier": register_add_supplier_command(subparsers),
        "stock-entry": register_stock_entry_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and summaries."""
    specs = {
        "entries": register_entries_command(subparsers),
        "entry": register_entry_command(subparsers),
        "stock": register_stock_command(subparsers),
        "stats": register_stats_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_line_spec(raw: str) -> core_logic.LineRequest:
    """Parse ``CODE:QTY`` or ``CODE:QTY:COST`` into a line request.

    Raises:
        argparse.ArgumentTypeError: If the value does not have two or three
            parts or a number cannot be parsed.
    """
    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise argparse.ArgumentTypeError(f"Expected CODE:QTY[:COST], got '{raw}'")
    try:
        quantity = Decimal(parts[1])
        unit_cost = Decimal(parts[2]) if len(parts) == 3 and parts[2] != "" else None
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid number in line '{raw}'") from exc
    return core_logic.LineRequest(product_code=parts[0], quantity=quantity, unit_cost=unit_cost)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-code", required=True)
        parser.add_argument("--description", required=True)
        parser.add_argument("--unit", default=None)
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.add_argument("--user-id", dest="user_id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_add_supplier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-supplier``."""
    name = "add-supplier"
    help_text = "Register a new supplier in the Suppliers sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--supplier-name", required=True)
        parser.add_argument("--document", default=None)
        parser.add_argument("--supplier-type", default=None)
        parser.add_argument("--user-id", dest="user_id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_supplier)


def register_stock_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-entry``."""
    name = "stock-entry"
    help_text = "Record incoming stock with one or more lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount-paid", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            type=parse_line_spec,
            required=True,
            metavar="CODE:QTY[:COST]",
            help="Line to record; repeat for several products. Omit COST to derive it.",
        )
        parser.add_argument("--tax-inclusive", action="store_true", help="The amount paid includes tax.")
        parser.add_argument("--supplier-id", dest="supplier_id", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.add_argument("--user-id", dest="user_id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_entry)


def register_entries_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``entries``."""
    name = "entries"
    help_text = "List stock entries, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--page", default=1)
        parser.add_argument("--limit", default=None)
        parser.add_argument("--search", default=None)
        parser.add_argument("--supplier-id", dest="supplier_id", default=None)
        parser.add_argument("--date-from", dest="date_from", default=None, help="Inclusive start date (YYYY-MM-DD).")
        parser.add_argument("--date-to", dest="date_to", default=None, help="Inclusive end date (YYYY-MM-DD).")
        parser.add_argument("--tax-inclusive", action=argparse.BooleanOptionalAction, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_entries_report)


def register_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``entry``."""
    name = "entry"
    help_text = "Show one stock entry with its lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--number", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_entry_report)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--include-inactive", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Summarize stock entries over the last days."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--days", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else None
    return core_logic.load_runtime_context(target)


def dispatch_command(
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
    return spec.execute(context, args)


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


def emit(payload: Any) -> None:
    """Print a JSON document to stdout."""
    json.dump(payload, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "product_code": args.product_code,
        "description": args.description,
        "unit": args.unit,
        "is_active": not getattr(args, "inactive", False),
        "user_id": args.user_id,
    }


def translate_add_supplier(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-supplier request."""
    return {
        "supplier_id": args.supplier_id,
        "supplier_name": args.supplier_name,
        "document": args.document,
        "supplier_type": args.supplier_type,
        "user_id": args.user_id,
    }


def translate_stock_entry(args: argparse.Namespace) -> core_logic.StockEntryCommand:
    """Translate CLI args into a stock entry command object."""
    return core_logic.StockEntryCommand(
        amount_paid=args.amount_paid,
        lines=tuple(args.lines),
        tax_inclusive=args.tax_inclusive,
        supplier_id=args.supplier_id,
        notes=args.notes,
        user_id=args.user_id,
    )


def translate_entries(args: argparse.Namespace) -> queries.EntryQuery:
    """Translate CLI args into a ledger listing query."""
    return queries.EntryQuery(
        page=args.page,
        limit=args.limit,
        search=args.search,
        supplier_id=args.supplier_id,
        date_from=args.date_from,
        date_to=args.date_to,
        tax_inclusive=args.tax_inclusive,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    payload = translate_add_product(args)
    product = core_logic.add_product(context, **payload)
    emit({"product_code": product.product_code, "description": product.description, "is_active": product.is_active})
    return 0


def run_add_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-supplier workflow in the BLL."""
    payload = translate_add_supplier(args)
    supplier = core_logic.add_supplier(context, **payload)
    emit({"supplier_id": supplier.supplier_id, "supplier_name": supplier.supplier_name})
    return 0


def run_stock_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock entry workflow via the BLL."""
    command = translate_stock_entry(args)
    entry = core_logic.create_stock_entry(context, command)
    emit(entry.to_dict())
    return 0


def run_entries_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger listing workflow."""
    page = queries.list_entries(context, translate_entries(args))
    emit(
        {
            "items": [item.to_dict() for item in page.items],
            "pagination": page.pagination(),
            "filters": page.filters,
        }
    )
    return 0


def run_entry_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the single-entry read workflow."""
    emit(queries.get_entry(context, args.number).to_dict())
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    balances = core_logic.stock_balances(context, include_inactive=getattr(args, "include_inactive", False))
    emit({code: str(balance) for code, balance in balances.items()})
    return 0


def run_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger summary workflow."""
    stats = queries.summarize_entries(context, days=args.days)
    emit(stats.to_dict())
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        emit(error.to_dict())
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, StorageError):
        log.error("%s", error)
        emit(error.to_dict())
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    sys.exit(main())
