"""Command-line entry points for the FrigoGest ERP toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the reconciliation
engine. Executors are coroutines; :func:`main` drives one of them with
:func:`asyncio.run` and saves the workbook when it succeeds.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .audit import list_audit_entries
from .constants import Direction, PayableStatus, PaymentMethod, PaymentTerms, SideType, TransactionCategory


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], Awaitable[int]]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="frigo-cli",
        description="Command-line tools for the FrigoGest ERP workbook.",
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
    """Declare mutating CLI commands such as batch closing, sales, and reversals."""
    specs = {
        "open-batch": register_open_batch_command(subparsers),
        "close-batch": register_close_batch_command(subparsers),
        "sell": register_sell_command(subparsers),
        "pay-sale": register_pay_sale_command(subparsers),
        "receive": register_receive_command(subparsers),
        "add-transaction": register_add_transaction_command(subparsers),
        "add-payable": register_add_payable_command(subparsers),
        "update-payable": register_update_payable_command(subparsers),
        "pay-payable": register_pay_payable_command(subparsers),
        "reverse-batch": register_reverse_command(subparsers, "reverse-batch", "batch", run_reverse_batch),
        "reverse-sale": register_reverse_command(subparsers, "reverse-sale", "sale", run_reverse_sale),
        "reverse-payable": register_reverse_command(subparsers, "reverse-payable", "payable", run_reverse_payable),
        "reverse-transaction": register_reverse_command(
            subparsers, "reverse-transaction", "transaction", run_reverse_transaction
        ),
        "clean-orphans": register_simple_command(
            subparsers, "clean-orphans", "Delete unpaid payables of batches that no longer exist.",
            run_clean_orphans,
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_simple_command(
            subparsers, "stock", "Display active stock of closed batches.", run_stock_report
        ),
        "receivables": register_simple_command(
            subparsers, "receivables", "Display open sale balances per client.", run_receivables_report
        ),
        "payables": register_simple_command(
            subparsers, "payables", "Display open accounts payable.", run_payables_report
        ),
        "cash": register_simple_command(
            subparsers, "cash", "Display the ledger cash balance.", run_cash_report
        ),
        "orphans": register_simple_command(
            subparsers, "orphans", "List records whose batch no longer exists.", run_orphans_report
        ),
        "log": register_log_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def parse_stock_entry(text: str) -> core_logic.StockEntry:
    """Parse ``SEQ:SIDE:WEIGHT`` (e.g. ``1:SIDE_A:125.5``) into a stock entry."""
    parts = text.split(":")
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"Expected SEQ:SIDE:WEIGHT, got '{text}'")
    sequence, side, weight = parts
    try:
        return core_logic.StockEntry(int(sequence), SideType(side.upper()), Decimal(weight))
    except (ValueError, ArithmeticError) as exc:
        raise argparse.ArgumentTypeError(f"Invalid stock entry '{text}': {exc}") from exc


def parse_sale_item(text: str) -> core_logic.SaleItem:
    """Parse ``ITEM_ID:EXIT_WEIGHT`` into a sale item."""
    item_id, separator, weight = text.rpartition(":")
    if not separator or not item_id:
        raise argparse.ArgumentTypeError(f"Expected ITEM_ID:EXIT_WEIGHT, got '{text}'")
    try:
        return core_logic.SaleItem(item_id, Decimal(weight))
    except ArithmeticError as exc:
        raise argparse.ArgumentTypeError(f"Invalid exit weight in '{text}'") from exc


def _add_batch_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--batch-id", required=True)
    parser.add_argument("--supplier", required=True)
    parser.add_argument("--received-date", required=True, help="ISO date (YYYY-MM-DD).")
    parser.add_argument("--total-weight", required=True)
    parser.add_argument("--purchase-value", required=True)
    parser.add_argument("--freight", default="0")
    parser.add_argument("--extra-costs", default="0")


def _method_choices() -> list[str]:
    return [member.value for member in PaymentMethod]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_open_batch_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``open-batch``."""
    name = "open-batch"
    help_text = "Register a provisional (OPEN) purchase batch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_batch_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open_batch)


def register_close_batch_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``close-batch``."""
    name = "close-batch"
    help_text = "Close a batch, create its stock, and post the purchase."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_batch_arguments(parser)
        parser.add_argument(
            "--payment-terms",
            choices=[member.value for member in PaymentTerms],
            default=PaymentTerms.CASH.value,
        )
        parser.add_argument("--down-payment", default="0")
        parser.add_argument("--installment-days", type=int, default=None)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_stock_entry,
            default=[],
            help="Stock entry as SEQ:SIDE:WEIGHT; repeat for every item.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_close_batch)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Confirm the sale of one or more stock items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--client-id", required=True)
        parser.add_argument("--client-name", required=True)
        parser.add_argument("--price-per-kg", required=True)
        parser.add_argument("--extra-costs", default="0")
        parser.add_argument("--sale-date", default=None)
        parser.add_argument("--term-days", type=int, default=None)
        parser.add_argument("--method", choices=_method_choices(), default=PaymentMethod.OTHER.value)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_sale_item,
            required=True,
            help="Sold item as ITEM_ID:EXIT_WEIGHT; repeat for every item.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell)


def register_pay_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-sale``."""
    name = "pay-sale"
    help_text = "Receive money (and optionally grant a discount) on one sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--discount", default="0")
        parser.add_argument("--reason", default=None)
        parser.add_argument("--method", choices=_method_choices(), default=PaymentMethod.CASH.value)
        parser.add_argument("--date", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_sale)


def register_receive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive``."""
    name = "receive"
    help_text = "Settle a client's open sales oldest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--client-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--method", choices=_method_choices(), default=PaymentMethod.CASH.value)
        parser.add_argument("--date", default=None)
        parser.add_argument(
            "--no-receipts",
            action="store_true",
            help="Only update the sales; do not post receipt transactions.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receive)


def register_add_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-transaction``."""
    name = "add-transaction"
    help_text = "Append a manual ledger entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--description", required=True)
        parser.add_argument("--direction", choices=[member.value for member in Direction], required=True)
        parser.add_argument(
            "--category",
            choices=[member.value for member in TransactionCategory],
            required=True,
        )
        parser.add_argument("--amount", required=True)
        parser.add_argument("--method", choices=_method_choices(), default=None)
        parser.add_argument("--reference-id", default=None)
        parser.add_argument("--date", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_transaction)


def register_add_payable_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-payable``."""
    name = "add-payable"
    help_text = "Register an account payable."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--description", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--due-date", required=True)
        parser.add_argument(
            "--category",
            choices=[member.value for member in TransactionCategory],
            default=TransactionCategory.OTHER.value,
        )
        parser.add_argument("--batch-id", default=None)
        parser.add_argument("--supplier-id", default=None)
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_payable)


def register_update_payable_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-payable``."""
    name = "update-payable"
    help_text = "Edit an open account payable."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payable-id", required=True)
        parser.add_argument("--description", default=None)
        parser.add_argument("--amount", default=None)
        parser.add_argument("--due-date", default=None)
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_payable)


def register_pay_payable_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-payable``."""
    name = "pay-payable"
    help_text = "Pay (part of) an account payable."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payable-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--method", choices=_method_choices(), default=PaymentMethod.TRANSFER.value)
        parser.add_argument("--date", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_payable)


def register_reverse_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    entity: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], Awaitable[int]],
) -> CommandSpec:
    """Register a reversal command taking a single ``--id`` argument."""
    help_text = f"Reverse a {entity} (estorno)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="target_id", required=True, help=f"Id of the {entity}.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_simple_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], Awaitable[int]],
) -> CommandSpec:
    """Register a command without arguments."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the most recent audit entries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=20)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def translate_batch(args: argparse.Namespace) -> core_logic.BatchCommand:
    """Translate CLI args into a batch command object."""
    return core_logic.BatchCommand(
        batch_id=args.batch_id,
        supplier=args.supplier,
        received_date=args.received_date,
        total_weight=args.total_weight,
        total_purchase_value=args.purchase_value,
        freight=args.freight,
        extra_costs=args.extra_costs,
        payment_terms=PaymentTerms(getattr(args, "payment_terms", PaymentTerms.CASH.value)),
        down_payment=getattr(args, "down_payment", "0"),
        installment_days=getattr(args, "installment_days", None),
        items=tuple(getattr(args, "items", ())),
    )


def translate_sell(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        client_id=args.client_id,
        client_name=args.client_name,
        items=tuple(args.items),
        price_per_kg=Decimal(args.price_per_kg),
        extra_costs_total=Decimal(args.extra_costs),
        sale_date=args.sale_date,
        term_days=args.term_days,
        payment_method=PaymentMethod(args.method),
    )


def translate_add_transaction(args: argparse.Namespace) -> core_logic.TransactionCommand:
    """Translate CLI args into a manual transaction command."""
    return core_logic.TransactionCommand(
        description=args.description,
        direction=Direction(args.direction),
        category=TransactionCategory(args.category),
        amount=Decimal(args.amount),
        payment_method=PaymentMethod(args.method) if args.method else None,
        reference_id=args.reference_id,
        date=args.date,
    )


def translate_add_payable(args: argparse.Namespace) -> core_logic.PayableCommand:
    """Translate CLI args into a payable command."""
    return core_logic.PayableCommand(
        description=args.description,
        amount=Decimal(args.amount),
        due_date=args.due_date,
        category=TransactionCategory(args.category),
        batch_id=args.batch_id,
        supplier_id=args.supplier_id,
        notes=args.notes,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _report_result(result: core_logic.OperationResult, label: str) -> int:
    if not result.success:
        log.error("%s failed: %s", label, result.error)
        print(f"[ERROR] {result.error}")
        return 1
    for created in result.created_ids:
        print(created)
    return 0


async def run_open_batch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the open-batch workflow."""
    await core_logic.open_batch(context, translate_batch(args))
    return 0


async def run_close_batch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the close-batch workflow."""
    result = await core_logic.close_batch(context, translate_batch(args))
    return _report_result(result, "close-batch")


async def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale confirmation workflow."""
    result = await core_logic.confirm_sales(context, translate_sell(args))
    return _report_result(result, "sell")


async def run_pay_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the single-sale receipt workflow."""
    posted = await core_logic.record_sale_receipt(
        context,
        args.sale_id,
        Decimal(args.amount),
        discount=Decimal(args.discount),
        reason=args.reason,
        method=PaymentMethod(args.method),
        date=args.date,
    )
    for transaction in posted:
        print(transaction.transaction_id)
    return 0


async def run_receive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the FIFO client settlement workflow."""
    result = await core_logic.receive_client_payment(
        context,
        args.client_id,
        Decimal(args.amount),
        method=PaymentMethod(args.method),
        date=args.date,
        record_receipts=not args.no_receipts,
    )
    for allocation in result.allocations:
        print(f"{allocation.sale_id}\t{allocation.applied}")
    print(f"Unapplied\t{result.remainder}")
    return 0


async def run_add_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the manual transaction workflow."""
    transaction = await core_logic.add_transaction(context, translate_add_transaction(args))
    print(transaction.transaction_id)
    return 0


async def run_add_payable(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-payable workflow."""
    payable = await core_logic.add_payable(context, translate_add_payable(args))
    print(payable.payable_id)
    return 0


async def run_update_payable(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-payable workflow."""
    await core_logic.update_payable(
        context,
        args.payable_id,
        description=args.description,
        amount=Decimal(args.amount) if args.amount is not None else None,
        due_date=args.due_date,
        notes=args.notes,
    )
    return 0


async def run_pay_payable(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payable payment workflow."""
    payable = await core_logic.pay_payable(
        context,
        args.payable_id,
        Decimal(args.amount),
        method=PaymentMethod(args.method),
        date=args.date,
    )
    print(f"{payable.payable_id}\t{payable.status.value}\t{payable.amount_paid}")
    return 0


def _print_reversal(report: core_logic.ReversalReport) -> int:
    for collection, count in sorted(report.counts.items()):
        print(f"{collection}\t{count}")
    for failure in report.failures:
        print(f"[WARN] {failure}")
    return 0


async def run_reverse_batch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the batch reversal cascade."""
    return _print_reversal(await core_logic.reverse_batch(context, args.target_id))


async def run_reverse_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale reversal."""
    return _print_reversal(await core_logic.reverse_sale(context, args.target_id))


async def run_reverse_payable(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payable reversal."""
    payable = await core_logic.reverse_payable(context, args.target_id)
    print(f"{payable.payable_id}\t{payable.status.value}")
    return 0


async def run_reverse_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the free-standing transaction reversal."""
    mirror = await core_logic.reverse_transaction(context, args.target_id)
    print(mirror.transaction_id)
    return 0


async def run_clean_orphans(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Delete unpaid orphan payables."""
    for payable_id in await core_logic.remove_orphan_payables(context):
        print(payable_id)
    return 0


async def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the active stock and its value at cost."""
    for item in await core_logic.list_active_stock(context):
        print(f"{item.item_id}\t{item.side_type.value}\t{item.entry_weight}")
    print(f"Inventory value\t{await core_logic.calculate_inventory_value(context)}")
    return 0


async def run_receivables_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print open balances per client."""
    for client_id, balance in sorted((await core_logic.calculate_receivables(context)).items()):
        print(f"{client_id}\t{balance}")
    return 0


async def run_payables_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print open payables and their total."""
    for payable in await core_logic.list_payables(context):
        if payable.status in (PayableStatus.PENDING, PayableStatus.PARTIAL):
            print(f"{payable.payable_id}\t{payable.due_date}\t{payable.balance}")
    print(f"Outstanding\t{await core_logic.calculate_outstanding_payables(context)}")
    return 0


async def run_cash_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the ledger balance."""
    print(f"Cash balance\t{await core_logic.calculate_cash_balance(context)}")
    return 0


async def run_orphans_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print records that point at a batch which no longer exists."""
    for payable in await core_logic.find_orphan_payables(context):
        print(f"payable\t{payable.payable_id}\t{payable.status.value}\t{payable.description}")
    for item in await core_logic.find_orphan_stock_items(context):
        print(f"stock\t{item.item_id}\t{item.status.value}\t{item.batch_id}")
    for sale in await core_logic.find_orphan_sales(context):
        print(f"sale\t{sale.sale_id}\t{sale.payment_status.value}\t{sale.client_name}")
    return 0


async def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the most recent audit entries."""
    for entry in await list_audit_entries(context.store, limit=args.limit):
        print(f"{entry.timestamp}\t{entry.actor}\t{entry.action.value}\t{entry.entity.value}\t{entry.details}")
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


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


async def run_command(
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Load the context, run the command, and save the workbook on success."""
    context = load_runtime_context(getattr(args, "config", None))
    core_logic.ensure_schema_version(context)
    exit_code = await dispatch_command(context, args, command_table)
    if exit_code == 0:
        persist_workbook(context)
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
