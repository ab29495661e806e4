"""Command-line entry points for the POS ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, set_console_level
from .constants import (
    DisposalCondition,
    DisposalMethod,
    MovementDirection,
    PaymentMethod,
    ReturnType,
    SequenceName,
    TransactionKind,
)
from .errors import BusinessRuleViolation, PartialReconciliationError
from .records import LineItem, ProductRow


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def parse_money(raw: str) -> Decimal:
    """argparse type for monetary amounts."""

    try:
        return Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid amount: {raw!r}") from None


def parse_line(raw: str) -> LineItem:
    """Parse ``PRODUCT:QTY:PRICE[:FREE]`` into a :class:`LineItem`."""

    parts = raw.split(":")
    if len(parts) not in (3, 4) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT:QTY:PRICE[:FREE], got {raw!r}")
    try:
        quantity = int(parts[1])
        free_quantity = int(parts[3]) if len(parts) == 4 else 0
    except ValueError:
        raise argparse.ArgumentTypeError(f"Quantities must be whole numbers: {raw!r}") from None
    return LineItem(
        product_id=parts[0],
        quantity=quantity,
        unit_price=parse_money(parts[2]),
        free_quantity=free_quantity,
    )


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-ledger",
        description="Point-of-sale numbering and stock ledger tools.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Echo informational log messages to stderr.",
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
    """Declare mutating CLI commands such as sales and returns."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "sale": register_sale_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "customer-return": register_customer_return_command(subparsers),
        "supplier-return": register_supplier_return_command(subparsers),
        "dispose": register_dispose_command(subparsers),
        "discard-sale": register_discard_sale_command(subparsers),
        "adjust-stock": register_adjust_stock_command(subparsers),
        "reconcile": register_reconcile_command(subparsers),
        "reset-counter": register_reset_counter_command(subparsers),
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
        "low-stock": register_low_stock_command(subparsers),
        "movements": register_movements_command(subparsers),
        "counters": register_counters_command(subparsers),
        "transactions": register_transactions_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_actor_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--actor", default=None, help="Who performs the operation (defaults to DefaultActor).")


def _add_cart_arguments(parser: argparse.ArgumentParser, *, with_discount: bool) -> None:
    parser.add_argument(
        "--line",
        dest="lines",
        action="append",
        type=parse_line,
        required=True,
        metavar="PRODUCT:QTY:PRICE[:FREE]",
        help="Cart line; repeat for several products.",
    )
    if with_discount:
        group = parser.add_mutually_exclusive_group()
        group.add_argument("--discount", type=parse_money, default=Decimal("0"))
        group.add_argument("--discount-percent", type=parse_money, default=None)
    parser.add_argument("--notes", default=None)
    _add_actor_argument(parser)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--code", default="")
        parser.add_argument("--price", type=parse_money, required=True)
        parser.add_argument("--cost", type=parse_money, default=Decimal("0"))
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--min-stock", type=int, default=None)
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Issue a sale invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_cart_arguments(parser, with_discount=True)
        parser.add_argument("--customer-name", default=None)
        parser.add_argument("--customer-phone", default=None)
        parser.add_argument(
            "--payment",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record goods received from a supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_cart_arguments(parser, with_discount=True)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--supplier-name", required=True)
        parser.add_argument("--supplier-contact", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_customer_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customer-return``."""
    name = "customer-return"
    help_text = "Take goods back from a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_cart_arguments(parser, with_discount=False)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--customer-phone", required=True)
        parser.add_argument("--invoice", default=None, help="Original invoice number.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customer_return)


def register_supplier_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``supplier-return``."""
    name = "supplier-return"
    help_text = "Send goods back to a supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_cart_arguments(parser, with_discount=False)
        parser.add_argument("--supplier-id", default=None)
        parser.add_argument("--supplier-name", required=True)
        parser.add_argument("--supplier-contact", required=True)
        parser.add_argument("--purchase", default=None, help="Original supplier invoice number.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_supplier_return)


def register_dispose_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dispose``."""
    name = "dispose"
    help_text = "Record disposed goods."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--original-price", type=parse_money, required=True)
        parser.add_argument("--recovered-value", type=parse_money, default=Decimal("0"))
        parser.add_argument("--condition", choices=[member.value for member in DisposalCondition], required=True)
        parser.add_argument("--method", choices=[member.value for member in DisposalMethod], required=True)
        parser.add_argument("--reason", default=None)
        parser.add_argument("--notes", default=None)
        _add_actor_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dispose)


def register_discard_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``discard-sale``."""
    name = "discard-sale"
    help_text = "Cancel a sale and restore its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice", required=True)
        parser.add_argument("--reason", default=None)
        _add_actor_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_discard_sale)


def register_adjust_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""
    name = "adjust-stock"
    help_text = "Manual stock in or out."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--direction", choices=[member.value for member in MovementDirection], required=True)
        parser.add_argument("--reference", default=None)
        _add_actor_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_stock)


def register_reconcile_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Apply the pending stock effects of a flagged document."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in TransactionKind], required=True)
        parser.add_argument("--record-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile)


def register_reset_counter_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reset-counter``."""
    name = "reset-counter"
    help_text = "Administratively set a document counter."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", choices=[member.value for member in SequenceName], required=True)
        parser.add_argument("--value", type=int, default=None, help="Last issued value (defaults to the floor).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reset_counter)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Show current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="include_inactive", action="store_true", help="Include inactive products.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "Show products at or below their minimum stock level."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_movements_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``movements``."""
    name = "movements"
    help_text = "Show the stock movement audit trail."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movements_report)


def register_counters_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``counters``."""
    name = "counters"
    help_text = "Show the last issued number of every sequence."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_counters_report)


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "List transaction documents."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in TransactionKind], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


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


def resolve_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "actor", None) or context.settings.default_actor


def translate_add_product(args: argparse.Namespace) -> ProductRow:
    """Translate CLI args into a product record."""
    return ProductRow(
        product_id=args.product_id,
        name=args.name,
        code=args.code,
        stock=args.stock,
        purchase_cost=args.cost,
        current_price=args.price,
        min_stock_level=args.min_stock,
        is_active=not getattr(args, "inactive", False),
    )


def translate_sale(args: argparse.Namespace, actor: str) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    customer = core_logic.Customer(phone=args.customer_phone)
    if args.customer_name:
        customer = core_logic.Customer(name=args.customer_name, phone=args.customer_phone)
    return core_logic.SaleCommand(
        lines=tuple(args.lines),
        actor=actor,
        discount=args.discount,
        discount_percentage=args.discount_percent,
        customer=customer,
        payment_method=PaymentMethod(args.payment),
        notes=args.notes,
    )


def translate_purchase(args: argparse.Namespace, actor: str) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return core_logic.PurchaseCommand(
        lines=tuple(args.lines),
        actor=actor,
        supplier=core_logic.Supplier(
            supplier_id=args.supplier_id,
            name=args.supplier_name,
            contact=args.supplier_contact,
        ),
        discount=args.discount,
        discount_percentage=args.discount_percent,
        notes=args.notes,
    )


def translate_customer_return(args: argparse.Namespace, actor: str) -> core_logic.CustomerReturnCommand:
    """Translate CLI args into a customer return command object."""
    return core_logic.CustomerReturnCommand(
        lines=tuple(args.lines),
        actor=actor,
        customer=core_logic.Customer(name=args.customer_name, phone=args.customer_phone),
        return_type=ReturnType.INVOICE if args.invoice else ReturnType.MANUAL,
        original_invoice=args.invoice,
        notes=args.notes,
    )


def translate_supplier_return(args: argparse.Namespace, actor: str) -> core_logic.SupplierReturnCommand:
    """Translate CLI args into a supplier return command object."""
    return core_logic.SupplierReturnCommand(
        lines=tuple(args.lines),
        actor=actor,
        supplier=core_logic.Supplier(
            supplier_id=args.supplier_id,
            name=args.supplier_name,
            contact=args.supplier_contact,
        ),
        return_type=ReturnType.INVOICE if args.purchase else ReturnType.MANUAL,
        original_invoice=args.purchase,
        notes=args.notes,
    )


def translate_dispose(args: argparse.Namespace, actor: str) -> core_logic.DisposalCommand:
    """Translate CLI args into a disposal command object."""
    return core_logic.DisposalCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        original_price=args.original_price,
        recovered_value=args.recovered_value,
        condition=DisposalCondition(args.condition),
        method=DisposalMethod(args.method),
        actor=actor,
        reason=args.reason,
        notes=args.notes,
    )


def _print_result(result: core_logic.TransactionResult) -> None:
    label = result.document_number or result.record_id
    print(f"{result.kind.value} {label}: subtotal {result.subtotal}, discount {result.discount}, total {result.total}")
    for line in result.lines:
        print(f"  {line.product_id} x{line.quantity} @ {line.unit_price} (discount {line.discount})")


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(args))
    print(f"Added {product.product_id} ({product.name}) with stock {product.stock}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = translate_sale(args, resolve_actor(context, args))
    _print_result(core_logic.issue_sale_invoice(context, command))
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the BLL."""
    command = translate_purchase(args, resolve_actor(context, args))
    _print_result(core_logic.issue_purchase(context, command))
    return 0


def run_customer_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer return workflow via the BLL."""
    command = translate_customer_return(args, resolve_actor(context, args))
    _print_result(core_logic.issue_customer_return(context, command))
    return 0


def run_supplier_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the supplier return workflow via the BLL."""
    command = translate_supplier_return(args, resolve_actor(context, args))
    _print_result(core_logic.issue_supplier_return(context, command))
    return 0


def run_dispose(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the disposal workflow via the BLL."""
    command = translate_dispose(args, resolve_actor(context, args))
    _print_result(core_logic.issue_disposal(context, command))
    return 0


def run_discard_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale discard workflow via the BLL."""
    command = core_logic.DiscardSaleCommand(
        invoice_number=args.invoice,
        actor=resolve_actor(context, args),
        reason=args.reason,
    )
    _print_result(core_logic.discard_sale(context, command))
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a manual stock adjustment via the BLL."""
    command = core_logic.AdjustmentCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        direction=MovementDirection(args.direction),
        actor=resolve_actor(context, args),
        reference=args.reference or core_logic.MANUAL_REFERENCE,
    )
    movement = core_logic.adjust_stock(context, command)
    if movement is not None:
        print(f"{movement.product_id} {movement.direction.value} {movement.quantity} ({movement.reason})")
    return 0


def run_reconcile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reconciliation workflow via the BLL."""
    _print_result(core_logic.reconcile_transaction(context, TransactionKind(args.kind), args.record_id))
    return 0


def run_reset_counter(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Administratively reset a counter."""
    value = context.counter.reset(args.name, args.value)
    print(f"{args.name} set to {value}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for product in core_logic.list_products(context, include_inactive=getattr(args, "include_inactive", False)):
        print(f"{product.product_id}\t{product.name}\t{product.stock}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the low-stock reporting workflow."""
    for product in core_logic.low_stock_products(context):
        print(f"{product.product_id}\t{product.name}\t{product.stock} (min {product.min_stock_level})")
    return 0


def run_movements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the movement reporting workflow."""
    for movement in core_logic.list_movements(context, args.product_id):
        print(
            f"{movement.timestamp_iso}\t{movement.product_id}\t{movement.direction.value}\t"
            f"{movement.quantity}\t{movement.reason}\t{movement.reference}\t{movement.actor}"
        )
    return 0


def run_counters_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the counter reporting workflow."""
    for name, value in core_logic.counter_snapshot(context).items():
        print(f"{name}\t{value}")
    return 0


def run_transactions_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction listing workflow."""
    kind = TransactionKind(args.kind) if args.kind else None
    for row in core_logic.list_transactions(context, kind):
        print(f"{row.created_at}\t{row.kind.value}\t{row.document_number or row.record_id}\t{row.total}\t{row.status.value}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, PartialReconciliationError):
        log.error("%s", error)
        return 4
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    Partial reconciliation failures are persisted before reporting, since
    the flagged document must survive for a later ``reconcile`` run.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "verbose", False):
        set_console_level(logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        try:
            core_logic.ensure_schema_version(context)
            try:
                exit_code = dispatch_command(context, args, command_table)
            except PartialReconciliationError:
                persist_workbook(context)
                raise
            if exit_code == 0:
                persist_workbook(context)
            return exit_code
        finally:
            core_logic.release_context(context)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
