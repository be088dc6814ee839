"""Command-line entry points for the shop ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business layer, and printing the
results. The daily order reconciliation runs once at the start of every
session (it self-limits to once per calendar day).
"""

from __future__ import annotations

import argparse
import csv
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, order_sync, reconciliation, sales, set_console_level, setup_store
from .bulk_import import IMPORT_FIELDS, import_rows
from .constants import IGNORE_COLUMN, MARKER_DATE_FORMAT, ImportEntity, TransactionType
from .data_manager import PurchaseItem, StoreUnavailable


SubParsers = argparse._SubParsersAction  # type: ignore[type-arg]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Command-line tools for the shop ledger: accounts, bread orders, checkout and stock.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.ini (defaults to the nearest config.ini above the working directory).",
    )
    parser.add_argument(
        "--skip-reconcile",
        action="store_true",
        help="Do not run the daily order reconciliation at startup.",
    )
    parser.add_argument("--verbose", action="store_true", help="Echo informational log records to stderr.")
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "init": register_init_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "delete-customer": register_delete_customer_command(subparsers),
        "add-transaction": register_add_transaction_command(subparsers),
        "edit-transaction": register_edit_transaction_command(subparsers),
        "delete-transaction": register_delete_transaction_command(subparsers),
        "add-expense": register_add_expense_command(subparsers),
        "delete-expense": register_delete_expense_command(subparsers),
        "add-supplier": register_add_supplier_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "adjust-stock": register_adjust_stock_command(subparsers),
        "add-order": register_add_order_command(subparsers),
        "update-order": register_update_order_command(subparsers),
        "delete-order": register_delete_order_command(subparsers),
        "reset-orders": register_reset_orders_command(subparsers),
        "sale": register_sale_command(subparsers),
        "import-csv": register_import_csv_command(subparsers),
        "import-backup": register_import_backup_command(subparsers),
        "set-bread-price": register_set_bread_price_command(subparsers),
        "reconcile": register_reconcile_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and audits."""
    specs = {
        "debts": register_debts_command(subparsers),
        "audit": register_audit_command(subparsers),
        "expenses": register_expenses_command(subparsers),
        "export-backup": register_export_backup_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Write command registrations
# ---------------------------------------------------------------------------


def register_init_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create an empty data file and config.ini."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--directory", type=Path, default=Path.cwd())
        parser.add_argument("--data-file", default=setup_store.DEFAULT_DATA_FILE)
        parser.add_argument("--shop-name", default="My Shop")
        parser.add_argument("--bread-price", default=None)
        parser.add_argument("--currency", default=None)
        parser.add_argument("--overwrite", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init)


def register_add_customer_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Open a new customer credit account."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default="")
        parser.add_argument("--email", default="")
        parser.add_argument("--settlement-day", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_delete_customer_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``delete-customer``."""
    name = "delete-customer"
    help_text = "Delete a customer and their transactions."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_customer)


def register_add_transaction_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-transaction``."""
    name = "add-transaction"
    help_text = "Record a manual debt or payment on a customer account."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--type", choices=[member.value for member in TransactionType], required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_transaction)


def register_edit_transaction_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``edit-transaction``."""
    name = "edit-transaction"
    help_text = "Change the amount or description of a transaction."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--amount", default=None)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_transaction)


def register_delete_transaction_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``delete-transaction``."""
    name = "delete-transaction"
    help_text = "Delete a transaction and revert its balance effect."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_transaction)


def register_add_expense_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-expense``."""
    name = "add-expense"
    help_text = "Record a shop expense."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--description", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--date", default=None, help="Day of the expense (YYYY-MM-DD); defaults to now.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_expense)


def register_delete_expense_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``delete-expense``."""
    name = "delete-expense"
    help_text = "Delete a recorded expense."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--expense-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_expense)


def register_add_supplier_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-supplier``."""
    name = "add-supplier"
    help_text = "Register a new supplier."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", default="")
        parser.add_argument("--contact", default="")
        parser.add_argument("--phone", default="")
        parser.add_argument("--visit-day", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_supplier)


def register_purchase_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record a supplier purchase invoice and receive its stock."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument(
            "--item",
            action="append",
            required=True,
            metavar="NAME:QUANTITY:UNIT_PRICE[:PRODUCT_ID]",
        )
        parser.add_argument("--description", required=True)
        parser.add_argument("--amount-paid", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_add_product_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", default="")
        parser.add_argument("--selling-price", required=True)
        parser.add_argument("--purchase-price", default="0")
        parser.add_argument("--barcode", action="append", default=[])
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--min-stock", type=int, default=0)
        parser.add_argument("--supplier-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_adjust_stock_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""
    name = "adjust-stock"
    help_text = "Add or remove units of a product."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--delta", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_stock)


def register_add_order_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-order``."""
    name = "add-order"
    help_text = "Take a bread order."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--unit-price", default=None)
        parser.add_argument("--paid", action="store_true")
        parser.add_argument("--pinned", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_order)


def register_update_order_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``update-order``."""
    name = "update-order"
    help_text = "Change a bread order and resynchronize its transactions."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--quantity", type=int, default=None)
        customer = parser.add_mutually_exclusive_group()
        customer.add_argument("--customer-id", default=None)
        customer.add_argument("--detach-customer", action="store_true")
        paid = parser.add_mutually_exclusive_group()
        paid.add_argument("--paid", dest="is_paid", action="store_true", default=None)
        paid.add_argument("--unpaid", dest="is_paid", action="store_false")
        delivered = parser.add_mutually_exclusive_group()
        delivered.add_argument("--delivered", dest="is_delivered", action="store_true", default=None)
        delivered.add_argument("--undelivered", dest="is_delivered", action="store_false")
        pinned = parser.add_mutually_exclusive_group()
        pinned.add_argument("--pin", dest="is_pinned", action="store_true", default=None)
        pinned.add_argument("--unpin", dest="is_pinned", action="store_false")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_order)


def register_delete_order_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``delete-order``."""
    name = "delete-order"
    help_text = "Delete a bread order and its linked transactions."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_order)


def register_reset_orders_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``reset-orders``."""
    name = "reset-orders"
    help_text = "Remove every bread order that is not pinned."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reset_orders)


def register_sale_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Check out a cart at the register."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item", action="append", required=True, metavar="PRODUCT_ID:QUANTITY")
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--total", default=None)
        parser.add_argument("--amount-paid", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_import_csv_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``import-csv``."""
    name = "import-csv"
    help_text = "Import customers, suppliers or products from a CSV file."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity", choices=[member.value for member in ImportEntity], required=True)
        parser.add_argument("--file", type=Path, required=True)
        parser.add_argument(
            "--map",
            action="append",
            default=[],
            metavar="HEADER=FIELD",
            help="Column mapping; unmapped headers matching a field name map to it, others are ignored.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_csv)


def register_import_backup_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``import-backup``."""
    name = "import-backup"
    help_text = "Replace all data with the contents of a JSON backup."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--input", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_backup)


def register_set_bread_price_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``set-bread-price``."""
    name = "set-bread-price"
    help_text = "Set the unit price used for new bread orders."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--price", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_bread_price)


def register_reconcile_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Run the daily order reconciliation now."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", default=None, help="Day to reconcile for (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile)


# ---------------------------------------------------------------------------
# Read command registrations
# ---------------------------------------------------------------------------


def register_debts_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``debts``."""
    name = "debts"
    help_text = "Display outstanding customer balances."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_debts_report)


def register_audit_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Check stored balances against the transaction log."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--repair", action="store_true", help="Rewrite drifting balances.")
        parser.add_argument("--purge-orphans", action="store_true", help="Remove transactions of deleted customers.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit)


def register_expenses_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``expenses``."""
    name = "expenses"
    help_text = "List expenses with their total per category."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", default=None)
        parser.add_argument("--from", dest="start", default=None, help="First day included (YYYY-MM-DD).")
        parser.add_argument("--to", dest="end", default=None, help="Last day included (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expenses_report)


def register_export_backup_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``export-backup``."""
    name = "export-backup"
    help_text = "Write all data to a JSON backup file."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_backup)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)  # type: ignore[arg-type]


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def translate_purchase_items(raw_items: Sequence[str]) -> List[PurchaseItem]:
    """Parse ``NAME:QUANTITY:UNIT_PRICE[:PRODUCT_ID]`` values."""
    items: List[PurchaseItem] = []
    for raw in raw_items:
        parts = raw.split(":")
        if len(parts) not in (3, 4):
            raise core_logic.ValidationError(f"Invalid purchase item '{raw}'")
        product_id = parts[3].strip() if len(parts) == 4 and parts[3].strip() else None
        items.append(
            PurchaseItem(
                product_id=product_id,
                product_name=parts[0].strip(),
                quantity=int(parts[1]),
                unit_price=core_logic.to_money(parts[2], field_name="unit price"),
            )
        )
    return items


def translate_purchase(args: argparse.Namespace) -> core_logic.PurchaseInvoiceCommand:
    """Translate CLI args into a purchase invoice command object."""
    return core_logic.PurchaseInvoiceCommand(
        supplier_id=args.supplier_id,
        items=translate_purchase_items(args.item),
        description=args.description,
        amount_paid=core_logic.to_money(args.amount_paid, field_name="amount paid"),
    )


def translate_cart(raw_items: Sequence[str]) -> List[sales.CartItem]:
    """Parse ``PRODUCT_ID:QUANTITY`` values into cart lines."""
    cart: List[sales.CartItem] = []
    for raw in raw_items:
        product_id, separator, quantity = raw.rpartition(":")
        if not separator or not product_id:
            raise core_logic.ValidationError(f"Invalid cart item '{raw}'")
        try:
            cart.append(sales.CartItem(product_id=product_id, quantity=int(quantity)))
        except ValueError as exc:
            raise core_logic.ValidationError(f"Invalid quantity in cart item '{raw}'") from exc
    return cart


def translate_sale(args: argparse.Namespace) -> tuple[List[sales.CartItem], sales.SaleDetails]:
    """Translate CLI args into cart lines and sale details."""
    details = sales.SaleDetails(
        customer_id=args.customer_id,
        total=core_logic.to_money(args.total, field_name="total") if args.total is not None else None,
        amount_paid=core_logic.to_money(args.amount_paid, field_name="amount paid"),
    )
    return translate_cart(args.item), details


def translate_update_order(args: argparse.Namespace) -> order_sync.BreadOrderPatch:
    """Translate CLI args into a bread-order patch."""
    customer_id: Any = core_logic.UNSET
    if args.detach_customer:
        customer_id = None
    elif args.customer_id is not None:
        customer_id = args.customer_id
    return order_sync.BreadOrderPatch(
        name=args.name,
        quantity=args.quantity,
        is_paid=args.is_paid,
        is_delivered=args.is_delivered,
        is_pinned=args.is_pinned,
        customer_id=customer_id,
    )


def translate_column_mapping(entity: ImportEntity, headers: Sequence[str], raw_pairs: Sequence[str]) -> Dict[str, str]:
    """Build the header-to-field mapping for a CSV import.

    Explicit ``HEADER=FIELD`` pairs win; remaining headers map to a field of
    the same name when there is one and are ignored otherwise.
    """
    explicit: Dict[str, str] = {}
    for pair in raw_pairs:
        header, separator, target = pair.partition("=")
        if not separator:
            raise core_logic.ValidationError(f"Invalid column mapping '{pair}'")
        explicit[header.strip()] = target.strip()
    fields = IMPORT_FIELDS[entity]
    mapping: Dict[str, str] = {}
    for header in headers:
        if header in explicit:
            mapping[header] = explicit[header]
        else:
            mapping[header] = header if header in fields else IGNORE_COLUMN
    return mapping


def translate_day(raw: Optional[str], *, field_name: str) -> Optional[datetime]:
    """Parse a ``YYYY-MM-DD`` argument into a UTC midnight timestamp."""
    if raw is None:
        return None
    try:
        return datetime.strptime(raw, MARKER_DATE_FORMAT).replace(tzinfo=UTC)
    except ValueError as exc:
        raise core_logic.ValidationError(f"Invalid {field_name} '{raw}', expected YYYY-MM-DD") from exc


def read_csv_rows(path: Path) -> tuple[List[str], List[Dict[str, Any]]]:
    """Read a CSV file into its header list and row dictionaries."""
    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"CSV file not found: {path}")
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        rows = [dict(row) for row in reader]
        headers = list(reader.fieldnames or [])
    return headers, rows


def _format_money(context: core_logic.RuntimeContext, amount: Decimal) -> str:
    return f"{amount} {context.settings.currency}"


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Create the data file and config.ini; needs no runtime context."""
    options: Dict[str, Any] = {}
    if args.bread_price is not None:
        options["bread_unit_price"] = core_logic.to_money(args.bread_price, field_name="bread price")
    if args.currency is not None:
        options["currency"] = args.currency
    config_path = setup_store.create_store(
        args.directory,
        data_file=args.data_file,
        shop_name=args.shop_name,
        overwrite=args.overwrite,
        **options,
    )
    print(f"Created ledger configuration '{config_path}'.")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customer = core_logic.add_customer(
        context,
        name=args.name,
        phone=args.phone,
        email=args.email,
        settlement_day=args.settlement_day,
    )
    print(f"Added customer {customer.id}: {customer.name}")
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    removed = core_logic.delete_customer(context, args.customer_id)
    print(f"Deleted customer {args.customer_id} ({removed} transactions removed)")
    return 0


def run_add_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    transaction = core_logic.add_transaction(
        context,
        customer_id=args.customer_id,
        transaction_type=TransactionType(args.type),
        amount=core_logic.to_money(args.amount),
        description=args.description,
    )
    customer = core_logic.get_customer(context, args.customer_id)
    print(f"Recorded {transaction.type.value} {transaction.id}; balance now {_format_money(context, customer.balance)}")
    return 0


def run_edit_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    patch = core_logic.TransactionPatch(
        amount=core_logic.to_money(args.amount) if args.amount is not None else None,
        description=args.description,
    )
    updated = core_logic.update_transaction(context, args.transaction_id, patch)
    if updated is None:
        print(f"Transaction {args.transaction_id} belonged to a deleted customer and was removed")
    else:
        print(f"Updated transaction {updated.id}")
    return 0


def run_delete_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    removal = core_logic.delete_transaction(context, args.transaction_id)
    suffix = " (orphaned)" if removal.orphaned else ""
    print(f"Deleted transaction {removal.transaction.id}{suffix}")
    return 0


def run_add_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    expense = core_logic.add_expense(
        context,
        description=args.description,
        category=args.category,
        amount=core_logic.to_money(args.amount),
        date=translate_day(args.date, field_name="date"),
    )
    print(f"Recorded expense {expense.id}: {expense.category} {_format_money(context, expense.amount)}")
    return 0


def run_delete_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    expense = core_logic.delete_expense(context, args.expense_id)
    print(f"Deleted expense {expense.id}")
    return 0


def run_add_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    supplier = core_logic.add_supplier(
        context,
        name=args.name,
        category=args.category,
        contact=args.contact,
        phone=args.phone,
        visit_day=args.visit_day,
    )
    print(f"Added supplier {supplier.id}: {supplier.name}")
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    receipt = core_logic.record_purchase_invoice(context, translate_purchase(args))
    print(f"Recorded purchase {receipt.purchase.id} for {_format_money(context, receipt.purchase.amount)}")
    if receipt.payment is not None:
        print(f"Recorded payment {receipt.payment.id} for {_format_money(context, receipt.payment.amount)}")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.add_product(
        context,
        name=args.name,
        category=args.category,
        selling_price=core_logic.to_money(args.selling_price, field_name="selling price"),
        purchase_price=core_logic.to_money(args.purchase_price, field_name="purchase price"),
        barcodes=args.barcode,
        stock=args.stock,
        min_stock=args.min_stock,
        supplier_id=args.supplier_id,
    )
    print(f"Added product {product.id}: {product.name}")
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.adjust_stock(context, args.product_id, args.delta)
    print(f"Stock of {product.name} is now {product.stock}")
    return 0


def run_add_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    order = order_sync.add_bread_order(
        context,
        name=args.name,
        quantity=args.quantity,
        customer_id=args.customer_id,
        unit_price=core_logic.to_money(args.unit_price) if args.unit_price is not None else None,
        is_paid=args.paid,
        is_pinned=args.pinned,
    )
    print(f"Added order {order.id}: {order.name} x{order.quantity} = {_format_money(context, order.total_amount)}")
    return 0


def run_update_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    order = order_sync.update_bread_order(context, args.order_id, translate_update_order(args))
    print(f"Updated order {order.id}")
    return 0


def run_delete_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    order = order_sync.delete_bread_order(context, args.order_id)
    print(f"Deleted order {order.id}")
    return 0


def run_reset_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    removed = order_sync.reset_bread_orders(context)
    print(f"Removed {len(removed)} orders")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    cart, details = translate_sale(args)
    receipt = sales.process_sale(context, cart, details)
    print(f"Total: {_format_money(context, receipt.total)}")
    if receipt.change_due > 0:
        print(f"Change due: {_format_money(context, receipt.change_due)}")
    return 0


def run_import_csv(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entity = ImportEntity(args.entity)
    headers, rows = read_csv_rows(args.file)
    mapping = translate_column_mapping(entity, headers, args.map)
    result = import_rows(context, entity, rows, mapping)
    print(f"Imported {len(result.imported_ids)} {entity.value}")
    return 0


def run_import_backup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    snapshot = core_logic.import_backup(context, args.input)
    print(f"Restored backup with {len(snapshot.customers)} customers and {len(snapshot.transactions)} transactions")
    return 0


def run_export_backup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    written = core_logic.export_backup(context, args.output)
    print(f"Wrote backup to '{written}'")
    return 0


def run_set_bread_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    price = core_logic.update_bread_unit_price(context, core_logic.to_money(args.price, field_name="price"))
    print(f"Bread unit price set to {_format_money(context, price)}")
    return 0


def run_reconcile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    today: Optional[date] = None
    if args.date is not None:
        today = datetime.strptime(args.date, MARKER_DATE_FORMAT).date()
    result = reconciliation.reconcile(context, today)
    if result.already_ran:
        print("Reconciliation already ran today")
        return 0
    if result.did_sync:
        print(f"Repaired {len(result.repaired_order_ids)} orders")
    else:
        print("No orders needed repair")
    for order_id in result.failed_order_ids:
        print(f"Could not repair order {order_id}")
    return 0


def run_debts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for customer in core_logic.calculate_outstanding_debts(context):
        print(f"{customer.id}\t{customer.name}\t{_format_money(context, customer.balance)}")
    return 0


def run_expenses_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    start = translate_day(args.start, field_name="from")
    end = translate_day(args.end, field_name="to")
    start_day = start.date() if start is not None else None
    end_day = end.date() if end is not None else None
    expenses = core_logic.list_expenses(context, category=args.category, start=start_day, end=end_day)
    for expense in expenses:
        day = expense.date.strftime(MARKER_DATE_FORMAT)
        amount = _format_money(context, expense.amount)
        print(f"{expense.id}\t{day}\t{expense.category}\t{expense.description}\t{amount}")
    if args.category is None:
        summary = core_logic.summarize_expenses(context, start=start_day, end=end_day)
        for category, spent in summary.by_category.items():
            print(f"{category}: {_format_money(context, spent)}")
        total = summary.total
    else:
        total = sum((expense.amount for expense in expenses), Decimal("0"))
    print(f"Total expenses: {_format_money(context, total)}")
    return 0


def run_audit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.purge_orphans:
        orphans = core_logic.purge_orphan_transactions(context)
        print(f"Removed {len(orphans)} orphaned transactions")
    drifts = core_logic.repair_balances(context) if args.repair else core_logic.verify_balances(context)
    for drift in drifts:
        print(f"{drift.owner_kind} {drift.owner_id}: stored {drift.stored}, expected {drift.expected}")
    if not drifts:
        print("All balances match their transactions")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, StoreUnavailable):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


# Commands that must not trigger the startup reconciliation.
_NO_STARTUP_RECONCILE = frozenset({"reconcile", "import-backup"})


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if args.verbose:
        set_console_level(logging.INFO)
    try:
        if args.command == "init":
            return dispatch_command(None, args, command_table)
        context = load_runtime_context(args.config)
        core_logic.ensure_schema_version(context)
        if not args.skip_reconcile and args.command not in _NO_STARTUP_RECONCILE:
            reconciliation.reconcile(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # centralised error handler tested separately
        return handle_cli_error(error)
