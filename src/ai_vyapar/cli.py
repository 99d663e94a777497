"""Command-line entry points for the AI Vyapar toolkit.

Orchestration in this module is limited to argparse wiring, validating raw
input, translating it into the command objects consumed by the business
layer, and printing results. Validation of user input lives here rather than
in the engine, which accepts whatever it is handed.
"""

from __future__ import annotations

import argparse
import mimetypes
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import ai_assist, core_logic, data_manager, log, reporting
from .constants import InvoiceStatus, TimeRange


class ValidationError(ValueError):
    """Raised when user input is rejected before reaching the engine."""


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
        prog="vyapar-cli",
        description="Inventory and invoicing tools for AI Vyapar.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands such as invoices and purchases."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "invoice": register_invoice_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "ai-invoice": register_ai_invoice_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and the dashboard."""
    specs = {
        "products": register_products_command(subparsers),
        "invoices": register_invoices_command(subparsers),
        "purchases": register_purchases_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "image-search": register_image_search_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True, help="Selling price.")
        parser.add_argument("--cost-price", required=True)
        parser.add_argument("--stock", required=True)
        parser.add_argument("--image-url", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``."""
    name = "edit-product"
    help_text = "Edit an existing product; omitted fields keep their value."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--price", default=None)
        parser.add_argument("--cost-price", default=None)
        parser.add_argument("--stock", default=None)
        parser.add_argument("--image-url", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Delete a product from the catalog (history is kept)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Create a sales invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            default=[],
            metavar="PRODUCT_ID=QTY",
            help="Invoice line; repeat for several products.",
        )
        parser.add_argument(
            "--status",
            choices=[member.value for member in InvoiceStatus],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record a stock purchase."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--unit-cost", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_ai_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``ai-invoice``."""
    name = "ai-invoice"
    help_text = "Draft an invoice from a natural-language command."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--text", required=True, help='e.g. "2 wireless mice for Asha"')
        parser.add_argument(
            "--status",
            choices=[member.value for member in InvoiceStatus],
            default=None,
        )
        parser.add_argument("--commit", action="store_true", help="Create the drafted invoice.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ai_invoice)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List or search the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default="")
        parser.add_argument("--include-deleted", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "List invoices, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices_report)


def register_purchases_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchases``."""
    name = "purchases"
    help_text = "List purchases, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchases_report)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display sales, purchases, and gross profit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--range",
            dest="time_range",
            choices=[member.value for member in TimeRange],
            default=TimeRange.ALL.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard_report)


def register_image_search_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``image-search``."""
    name = "image-search"
    help_text = "Find the catalog product shown in an image."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--image", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_image_search)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def build_assistant(context: core_logic.RuntimeContext) -> ai_assist.AIAssistant:
    """Create the AI collaborator configured for ``context``."""
    return ai_assist.GeminiClient.from_settings(context.settings)


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


def require_text(raw: Optional[str], field: str) -> str:
    """Return ``raw`` stripped, rejecting empty values."""
    value = (raw or "").strip()
    if not value:
        raise ValidationError(f"{field} must not be empty")
    return value


def parse_money(raw: str, field: str) -> Decimal:
    """Parse a nonnegative monetary amount."""
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"{field} must be a number, got '{raw}'") from exc
    if not amount.is_finite() or amount < Decimal("0"):
        raise ValidationError(f"{field} must be zero or positive")
    return amount


def parse_count(raw: str, field: str, *, allow_zero: bool = False) -> int:
    """Parse a whole-number count; zero is accepted only when ``allow_zero``."""
    try:
        value = int(str(raw).strip())
    except ValueError as exc:
        raise ValidationError(f"{field} must be a whole number, got '{raw}'") from exc
    if value < 0:
        raise ValidationError(f"{field} must not be negative")
    if value == 0 and not allow_zero:
        raise ValidationError(f"{field} must be greater than zero")
    return value


def parse_item(raw: str) -> core_logic.InvoiceLine:
    """Parse a ``PRODUCT_ID=QTY`` invoice line."""
    product_id, sep, quantity = raw.partition("=")
    if not sep:
        raise ValidationError(f"Invoice item must look like PRODUCT_ID=QTY, got '{raw}'")
    return core_logic.InvoiceLine(
        product_id=require_text(product_id, "Product id"),
        quantity=parse_count(quantity, "Quantity"),
    )


def translate_add_product(args: argparse.Namespace) -> core_logic.AddProductCommand:
    """Translate CLI args into an add-product command object."""
    return core_logic.AddProductCommand(
        name=require_text(args.name, "Name"),
        price=parse_money(args.price, "Price"),
        cost_price=parse_money(args.cost_price, "Cost price"),
        stock=parse_count(args.stock, "Stock", allow_zero=True),
        image_url=(args.image_url or "").strip(),
    )


def translate_edit_product(args: argparse.Namespace, existing: data_manager.Product) -> data_manager.Product:
    """Build the full replacement record for ``edit-product``."""
    changes: Dict[str, object] = {}
    if args.name is not None:
        changes["name"] = require_text(args.name, "Name")
    if args.price is not None:
        changes["price"] = parse_money(args.price, "Price")
    if args.cost_price is not None:
        changes["cost_price"] = parse_money(args.cost_price, "Cost price")
    if args.stock is not None:
        changes["stock"] = parse_count(args.stock, "Stock", allow_zero=True)
    if args.image_url is not None:
        changes["image_url"] = args.image_url.strip()
    return replace(existing, **changes)


def translate_invoice(args: argparse.Namespace, default_status: InvoiceStatus) -> core_logic.CreateInvoiceCommand:
    """Translate CLI args into an invoice command object."""
    return core_logic.CreateInvoiceCommand(
        customer_name=require_text(args.customer, "Customer name"),
        items=tuple(parse_item(raw) for raw in args.items),
        status=InvoiceStatus(args.status) if args.status else default_status,
    )


def translate_purchase(args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return core_logic.PurchaseCommand(
        product_id=require_text(args.product_id, "Product id"),
        quantity=parse_count(args.quantity, "Quantity"),
        unit_cost=parse_money(args.unit_cost, "Unit cost"),
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(args))
    print(f"Added {product.product_id}: {product.name}")
    return 0


def run_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-product workflow in the BLL."""
    existing = core_logic.get_product(context, args.product_id)
    product = core_logic.update_product(context, translate_edit_product(args, existing))
    print(f"Updated {product.product_id}: {product.name}")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    product = core_logic.delete_product(context, args.product_id)
    print(f"Deleted {product.product_id}: {product.name}")
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice workflow via the BLL."""
    command = translate_invoice(args, context.settings.default_invoice_status)
    invoice = core_logic.record_invoice(context, command)
    print(f"Created {invoice.invoice_id} for {invoice.customer_name}: {reporting.format_currency(invoice.total)}")
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the BLL."""
    purchase = core_logic.record_purchase(context, translate_purchase(args))
    print(
        f"Recorded {purchase.purchase_id}: {purchase.quantity} x {purchase.product_name} "
        f"= {reporting.format_currency(purchase.total_cost)}"
    )
    return 0


def run_ai_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Draft an invoice with the AI parser and optionally commit it.

    An unavailable parser is a soft failure: the user is told to fall back to
    the ``invoice`` command and the exit code is 1. Before committing, the
    drafted quantities get the same checks as ``invoice --item``.

    Raises:
        ValidationError: If a drafted quantity is zero or negative.
    """
    status = InvoiceStatus(args.status) if args.status else context.settings.default_invoice_status
    draft = ai_assist.InvoiceDraft(status=status)
    draft.append_transcript(args.text)
    products = core_logic.list_products(context)
    if not ai_assist.fill_invoice_draft(build_assistant(context), draft, products):
        print("AI parsing failed; create the invoice manually with the 'invoice' command.")
        return 1

    names = {product.product_id: product.name for product in products}
    print(f"Customer: {draft.customer_name}")
    for line in draft.lines:
        print(f"  {line.quantity} x {names[line.product_id]} ({line.product_id})")

    if not args.commit:
        return 0
    draft.customer_name = require_text(draft.customer_name, "Customer name")
    for line in draft.lines:
        parse_count(str(line.quantity), f"Quantity for {line.product_id}")
    invoice = core_logic.record_invoice(context, draft.to_command())
    print(f"Created {invoice.invoice_id}: {reporting.format_currency(invoice.total)}")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the catalog, optionally filtered by name."""
    products = core_logic.search_products(context, args.search, include_inactive=args.include_deleted)
    if not products:
        print("No products found.")
        return 0
    for product in products:
        flag = "" if product.is_active else " [deleted]"
        print(
            f"{product.product_id:<28} {product.name:<24} "
            f"price {reporting.format_currency(product.price):>10} "
            f"cost {reporting.format_currency(product.cost_price):>10} "
            f"stock {product.stock:>6}{flag}"
        )
    return 0


def _print_invoices(invoices: Sequence[data_manager.Invoice]) -> None:
    for invoice in invoices:
        print(
            f"{invoice.invoice_id:<32} {invoice.date} {invoice.customer_name:<20} "
            f"{reporting.format_currency(invoice.total):>12} {invoice.status.value}"
        )


def run_invoices_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every invoice, newest first."""
    invoices = reporting.recent_invoices(core_logic.list_invoices(context), limit=None)
    if not invoices:
        print("No invoices yet.")
    _print_invoices(invoices)
    return 0


def run_purchases_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every purchase, newest first."""
    purchases = sorted(core_logic.list_purchases(context), key=lambda record: record.sequence, reverse=True)
    if not purchases:
        print("No purchases yet.")
    for purchase in purchases:
        print(
            f"{purchase.purchase_id:<32} {purchase.date} {purchase.product_name:<24} "
            f"{purchase.quantity:>6} x {reporting.format_currency(purchase.unit_cost):>10} "
            f"= {reporting.format_currency(purchase.total_cost):>12}"
        )
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print dashboard figures and the five most recent invoices."""
    summary = reporting.calculate_dashboard(context, TimeRange(args.time_range))
    print(f"Total Sales:     {reporting.format_currency(summary.total_sales)}")
    print(f"Total Purchases: {reporting.format_currency(summary.total_purchase_cost)}")
    print(f"Gross Profit:    {reporting.format_currency(summary.gross_profit)}")
    print("Recent Invoices:")
    _print_invoices(reporting.recent_invoices(core_logic.list_invoices(context)))
    return 0


def run_image_search(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Match an image file against the catalog."""
    image_path = Path(args.image).expanduser()
    if not image_path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}")
    mime_type = mimetypes.guess_type(image_path.name)[0] or "application/octet-stream"

    draft = ai_assist.ImageSearchDraft()
    ai_assist.search_by_image(
        build_assistant(context),
        draft,
        image_path.read_bytes(),
        mime_type,
        core_logic.list_products(context),
    )
    if draft.result is None:
        print(draft.error)
        return 1
    print(f"{draft.result.product_id}: {draft.result.name} (stock {draft.result.stock})")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, ValidationError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_store(context: core_logic.RuntimeContext) -> None:
    """Persist store changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_store(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
