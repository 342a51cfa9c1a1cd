"""Reconciliation engine for FrigoGest ERP.

This module holds the batch → stock → sale → ledger chain and its cascading
reversal (estorno). Every operation is a coroutine over an explicit
:class:`RuntimeContext`; all I/O goes through the injected
:class:`~frigo_erp.data_manager.LedgerStore` and every user-visible action is
reported to the injected :class:`~frigo_erp.audit.AuditSink`.

Postings use deterministic identifiers (see :class:`~frigo_erp.constants.IdPrefix`)
so that retrying an operation after a partial failure converges instead of
duplicating ledger entries.
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple

from . import data_manager, log, set_log_level
from .audit import AuditSink, NullAuditSink, StoreAuditSink
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MONEY_EPSILON,
    OWNED_TRANSACTION_PREFIXES,
    AuditAction,
    AuditEntity,
    BatchStatus,
    CollectionName,
    Direction,
    IdPrefix,
    PayableStatus,
    PaymentMethod,
    PaymentTerms,
    SaleStatus,
    SideType,
    StockStatus,
    TransactionCategory,
)


BATCHES = CollectionName.BATCHES.value
STOCK_ITEMS = CollectionName.STOCK_ITEMS.value
SALES = CollectionName.SALES.value
TRANSACTIONS = CollectionName.TRANSACTIONS.value
PAYABLES = CollectionName.PAYABLES.value
CLIENTS = CollectionName.CLIENTS.value

ZERO = Decimal("0")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced batch, sale, payable, or transaction is unknown."""


class InvalidStateTransition(BusinessRuleViolation):
    """Raised when an entity's current status does not allow the operation."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, store, and audit sink used by the engine."""

    settings: data_manager.ConfigSettings
    store: data_manager.LedgerStore
    audit: AuditSink = field(default_factory=NullAuditSink)
    actor: str = "system"


@dataclass(frozen=True)
class OperationResult:
    """Outcome of the primary operations that report instead of raising."""

    success: bool
    error: Optional[str] = None
    created_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StockEntry:
    """One carcass or half-carcass weighed in when a batch closes."""

    sequence: int
    side_type: SideType
    entry_weight: Any


@dataclass(frozen=True)
class BatchCommand:
    """User intent for opening or closing a purchase batch.

    Numeric fields accept loosely typed input; they are coerced to ``Decimal``
    and fall back to zero when they cannot be parsed.
    """

    batch_id: str
    supplier: str
    received_date: str
    total_weight: Any
    total_purchase_value: Any
    freight: Any = ZERO
    extra_costs: Any = ZERO
    payment_terms: PaymentTerms = PaymentTerms.CASH
    down_payment: Any = ZERO
    installment_days: Optional[int] = None
    items: Sequence[StockEntry] = ()


@dataclass(frozen=True)
class SaleItem:
    """A stock item leaving the cold room together with its weighed exit weight."""

    item_id: str
    exit_weight: Any


@dataclass(frozen=True)
class SaleCommand:
    """User intent for confirming the sale of one or more stock items."""

    client_id: str
    client_name: str
    items: Sequence[SaleItem]
    price_per_kg: Any
    extra_costs_total: Any = ZERO
    sale_date: Optional[str] = None
    term_days: Optional[int] = None
    payment_method: PaymentMethod = PaymentMethod.OTHER


@dataclass(frozen=True)
class TransactionCommand:
    """User intent for a manual ledger entry."""

    description: str
    direction: Direction
    category: TransactionCategory
    amount: Decimal
    payment_method: Optional[PaymentMethod] = None
    reference_id: Optional[str] = None
    date: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class PayableCommand:
    """User intent for registering an account payable."""

    description: str
    amount: Decimal
    due_date: str
    category: TransactionCategory = TransactionCategory.OTHER
    batch_id: Optional[str] = None
    supplier_id: Optional[str] = None
    notes: Optional[str] = None
    payable_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentAllocation:
    """Portion of a client payment applied to one sale."""

    sale_id: str
    applied: Decimal


@dataclass(frozen=True)
class ClientPaymentResult:
    """Outcome of a FIFO client settlement."""

    allocations: Tuple[PaymentAllocation, ...]
    remainder: Decimal

    @property
    def applied_total(self) -> Decimal:
        return sum((allocation.applied for allocation in self.allocations), ZERO)


@dataclass
class ReversalReport:
    """Summary of a reversal cascade: affected counts and mirror postings."""

    entity_id: str
    counts: Dict[str, int] = field(default_factory=dict)
    mirror_ids: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    def bump(self, collection: str, amount: int = 1) -> None:
        self.counts[collection] = self.counts.get(collection, 0) + amount


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a workbook-backed store for the engine.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context bundling the settings, a
            :class:`~frigo_erp.data_manager.WorkbookLedgerStore`, a store-backed
            audit sink, and the configured default actor.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        ValueError: When ``LogLevel`` names no logging level.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    set_log_level(settings.log_level)
    workbook = data_manager.open_workbook(settings.data_file)
    store = data_manager.WorkbookLedgerStore(workbook)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        store=store,
        audit=StoreAuditSink(store),
        actor=settings.default_actor,
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Write the store back to the configured workbook when it is workbook-backed.

    Other store implementations persist on every write, so there is nothing
    to flush for them.
    """
    store = context.store
    if not isinstance(store, data_manager.WorkbookLedgerStore):
        log.debug("Store %s persists on write; nothing to flush", type(store).__name__)
        return
    store.flush()
    data_manager.save_workbook(store.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _resolve_date(candidate: Optional[str]) -> str:
    """Return ``candidate`` or today's ISO date (UTC)."""

    return candidate if candidate else _resolve_timestamp(None).date().isoformat()


def add_days(iso_date: str, days: int) -> str:
    """Shift an ISO date by ``days``; unparseable dates count from today."""

    try:
        start = date.fromisoformat(iso_date[:10])
    except (TypeError, ValueError):
        log.warning("Unparseable date '%s'; counting %d days from today", iso_date, days)
        start = _resolve_timestamp(None).date()
    return (start + timedelta(days=days)).isoformat()


def generate_transaction_id(*, prefix: str = "TR-", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier, e.g.
            ``"TR-REC-<saleId>-"`` for sale receipts.
        when (datetime | None): Timestamp used for the identifier. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


async def _unique_id(context: RuntimeContext, collection: str, candidate: str) -> str:
    """Suffix ``candidate`` with a counter until no document uses it."""

    unique = candidate
    counter = 1
    while await context.store.get_by_id(collection, unique) is not None:
        counter += 1
        unique = f"{candidate}-{counter}"
    return unique


def require_positive_money(amount: Decimal) -> None:
    """Validate that a monetary value is strictly positive.

    Raises:
        ValueError: If ``amount`` is zero or negative.
    """
    if amount <= ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def stock_item_id(batch_id: str, sequence: int, side_type: SideType) -> str:
    """Build the deterministic id ``<batchId>-<seq:03d>-<SIDE>`` of a stock item."""

    return f"{batch_id}-{sequence:03d}-{side_type.value}"


_BATCH_PREFIX_PATTERN = re.compile(r"^(?:PAY-LOTE-|TR-LOTE-(?:ENTRADA-)?)([A-Za-z0-9][A-Za-z0-9_-]*)")
# Free text only names a batch as "Lote L-001" / "Batch LOTE-FAZ-2026-001":
# capitalized keyword, uppercase id with at least one dash and one digit.
_BATCH_MENTION_PATTERN = re.compile(
    r"\b(?:Lote|Batch)\s+((?=[A-Z0-9-]*\d)[A-Z0-9]+(?:-[A-Z0-9]+)+)(?![A-Za-z0-9_-])"
)


def extract_batch_id(text: Optional[str]) -> Optional[str]:
    """Extract the batch id referenced by a payable/transaction id or description.

    Recognizes the deterministic prefixes (``PAY-LOTE-``, ``TR-LOTE-``,
    ``TR-LOTE-ENTRADA-``) and free-text mentions such as ``"Lote L-001"`` or
    ``"Batch L-001"``. Matching is case-sensitive and the mentioned id must
    look like a batch id, so ordinary prose ("salt batch for curing") never
    yields one. This is the only place batch ids are parsed out of text.

    Returns:
        str | None: The referenced batch id, or ``None`` when nothing matches.
    """
    if not text:
        return None
    match = _BATCH_PREFIX_PATTERN.search(text) or _BATCH_MENTION_PATTERN.search(text)
    return match.group(1) if match else None


def _mentions_batch(text: str, batch_id: str) -> bool:
    pattern = rf"(?<![A-Za-z0-9_-]){re.escape(batch_id)}(?![A-Za-z0-9_-])"
    return re.search(pattern, text) is not None


def match_by_structured_field(payable: data_manager.PayableRow, batch_id: str) -> bool:
    """Match payables whose ``batch_id`` field references the batch."""

    return payable.batch_id == batch_id


def match_by_id_pattern(payable: data_manager.PayableRow, batch_id: str) -> bool:
    """Match payables whose deterministic id encodes the batch (``PAY-LOTE-<id>``)."""

    return extract_batch_id(payable.payable_id) == batch_id


def match_by_description(payable: data_manager.PayableRow, batch_id: str) -> bool:
    """Match legacy payables that only mention the batch in their description."""

    if extract_batch_id(payable.description) == batch_id:
        return True
    return _mentions_batch(payable.description, batch_id)


PAYABLE_MATCHERS = (
    ("structured", match_by_structured_field),
    ("id_pattern", match_by_id_pattern),
    ("description", match_by_description),
)


def match_payable_to_batch(payable: data_manager.PayableRow, batch_id: str) -> Optional[str]:
    """Decide whether ``payable`` belongs to ``batch_id``.

    Older payables may lack the structured ``batch_id`` field, so three
    strategies are tried in order: the structured field, the deterministic id
    pattern, and finally the free-text description. A payable whose structured
    field names a different batch never falls through to the text strategies.

    Returns:
        str | None: Name of the strategy that matched, or ``None``.
    """
    if payable.batch_id:
        return "structured" if match_by_structured_field(payable, batch_id) else None
    for name, matcher in PAYABLE_MATCHERS[1:]:
        if matcher(payable, batch_id):
            log.debug("Payable '%s' matched batch '%s' via %s", payable.payable_id, batch_id, name)
            return name
    return None


def payable_batch_reference(payable: data_manager.PayableRow) -> Optional[str]:
    """Return the batch id a payable refers to, if any."""

    return (
        payable.batch_id
        or extract_batch_id(payable.payable_id)
        or extract_batch_id(payable.description)
    )


def sale_belongs_to_batch(
    sale: data_manager.SaleRow,
    batch_id: str,
    stock_by_id: Dict[str, data_manager.StockItemRow],
) -> bool:
    """Return whether any item of ``sale`` came from ``batch_id``."""

    return batch_id in sale_batch_ids(sale, stock_by_id)


def sale_batch_ids(
    sale: data_manager.SaleRow,
    stock_by_id: Dict[str, data_manager.StockItemRow],
) -> set[str]:
    """Return the batches the items of ``sale`` came from.

    A stored item's ``batch_id`` is authoritative; for items that no longer
    exist the batch is read off the ``<batchId>-<seq>-<SIDE>`` id.
    """

    batch_ids: set[str] = set()
    for item_id in sale.stock_item_ids:
        item = stock_by_id.get(item_id)
        if item is not None:
            batch_ids.add(item.batch_id)
            continue
        parts = item_id.rsplit("-", 2)
        if len(parts) == 3:
            batch_ids.add(parts[0])
    return batch_ids


def _paid_so_far(payable: data_manager.PayableRow) -> Decimal:
    if payable.status is PayableStatus.PAID:
        return max(payable.amount_paid, payable.amount)
    return payable.amount_paid


async def _record_audit(
    context: RuntimeContext,
    action: AuditAction,
    entity: AuditEntity,
    details: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    await context.audit.record(context.actor, action, entity, details, metadata)


async def _post_transaction(context: RuntimeContext, transaction: data_manager.TransactionRow) -> data_manager.TransactionRow:
    await context.store.set_by_id(
        TRANSACTIONS,
        transaction.transaction_id,
        data_manager.serialize_transaction(transaction),
    )
    log.info(
        "Posted %s/%s transaction '%s' of %s",
        transaction.direction.value,
        transaction.category.value,
        transaction.transaction_id,
        transaction.amount,
    )
    return transaction


def reversal_id(origin_id: str) -> str:
    """Return the deterministic id of the mirror posting for ``origin_id``."""

    return f"{IdPrefix.REVERSAL.value}{origin_id}"


async def post_mirror(
    context: RuntimeContext,
    origin_id: str,
    *,
    direction: Direction,
    amount: Decimal,
    description: str,
    reference_id: Optional[str],
    payment_method: Optional[PaymentMethod] = None,
) -> Optional[data_manager.TransactionRow]:
    """Post the reversal entry for ``origin_id`` unless it already exists.

    Returns:
        data_manager.TransactionRow | None: The new mirror, or ``None`` when a
            mirror with the deterministic id was already posted.
    """
    mirror_id = reversal_id(origin_id)
    if await context.store.get_by_id(TRANSACTIONS, mirror_id) is not None:
        log.info("Mirror '%s' already posted; skipping", mirror_id)
        return None
    mirror = data_manager.TransactionRow(
        transaction_id=mirror_id,
        date=_resolve_date(None),
        description=description,
        direction=direction,
        category=TransactionCategory.REVERSAL,
        amount=amount,
        payment_method=payment_method,
        reference_id=reference_id,
    )
    return await _post_transaction(context, mirror)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def list_batches(context: RuntimeContext) -> List[data_manager.BatchRow]:
    raw = await context.store.list_all(BATCHES)
    return [data_manager.deserialize_batch(doc) for doc in raw]


async def list_stock_items(context: RuntimeContext) -> List[data_manager.StockItemRow]:
    raw = await context.store.list_all(STOCK_ITEMS)
    return [data_manager.deserialize_stock_item(doc) for doc in raw]


async def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    raw = await context.store.list_all(SALES)
    return [data_manager.deserialize_sale(doc) for doc in raw]


async def list_payables(context: RuntimeContext) -> List[data_manager.PayableRow]:
    raw = await context.store.list_all(PAYABLES)
    return [data_manager.deserialize_payable(doc) for doc in raw]


async def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Fetch the append-only ledger in insertion order."""

    raw = await context.store.list_all(TRANSACTIONS)
    return [data_manager.deserialize_transaction(doc) for doc in raw]


async def _get_document(context: RuntimeContext, collection: str, doc_id: str, label: str) -> Dict[str, Any]:
    raw = await context.store.get_by_id(collection, doc_id)
    if raw is None:
        log.warning("%s lookup failed for id '%s'", label, doc_id)
        raise MissingReferenceError(f"{label} '{doc_id}' not found")
    return raw


async def get_batch(context: RuntimeContext, batch_id: str) -> data_manager.BatchRow:
    """Resolve a batch by id.

    Raises:
        MissingReferenceError: If the batch does not exist.
    """
    return data_manager.deserialize_batch(await _get_document(context, BATCHES, batch_id, "Batch"))


async def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Resolve a sale by id.

    Raises:
        MissingReferenceError: If the sale does not exist.
    """
    return data_manager.deserialize_sale(await _get_document(context, SALES, sale_id, "Sale"))


async def get_payable(context: RuntimeContext, payable_id: str) -> data_manager.PayableRow:
    """Resolve a payable by id.

    Raises:
        MissingReferenceError: If the payable does not exist.
    """
    return data_manager.deserialize_payable(await _get_document(context, PAYABLES, payable_id, "Payable"))


async def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Resolve a ledger transaction by id.

    Raises:
        MissingReferenceError: If the transaction does not exist.
    """
    raw = await _get_document(context, TRANSACTIONS, transaction_id, "Transaction")
    return data_manager.deserialize_transaction(raw)


async def find_client(context: RuntimeContext, client_id: str) -> Optional[data_manager.ClientRow]:
    raw = await context.store.get_by_id(CLIENTS, client_id)
    return data_manager.deserialize_client(raw) if raw is not None else None


async def _closed_batch_ids(context: RuntimeContext) -> set[str]:
    return {batch.batch_id for batch in await list_batches(context) if batch.status is BatchStatus.CLOSED}


async def list_active_stock(context: RuntimeContext) -> List[data_manager.StockItemRow]:
    """Return AVAILABLE stock items whose batch is CLOSED.

    Items of OPEN or REVERSED batches never appear in the active inventory.
    """
    closed = await _closed_batch_ids(context)
    return [
        item
        for item in await list_stock_items(context)
        if item.status is StockStatus.AVAILABLE and item.batch_id in closed
    ]


async def list_active_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return non-reversed sales whose stock items come from CLOSED batches."""

    closed = await _closed_batch_ids(context)
    stock_by_id = {item.item_id: item for item in await list_stock_items(context)}
    active: List[data_manager.SaleRow] = []
    for sale in await list_sales(context):
        if sale.payment_status is SaleStatus.REVERSED:
            continue
        if any(sale_belongs_to_batch(sale, batch_id, stock_by_id) for batch_id in closed):
            active.append(sale)
    return active


async def find_sale_for_stock_item(context: RuntimeContext, item_id: str) -> Optional[data_manager.SaleRow]:
    """Return the non-reversed sale that references ``item_id``, if any."""

    for sale in await list_sales(context):
        if sale.payment_status is not SaleStatus.REVERSED and item_id in sale.stock_item_ids:
            return sale
    return None


async def calculate_cash_balance(context: RuntimeContext) -> Decimal:
    """Sum the signed amounts of every ledger transaction (IN minus OUT)."""

    return sum((txn.signed_amount for txn in await list_transactions(context)), ZERO)


async def calculate_receivables(context: RuntimeContext) -> Dict[str, Decimal]:
    """Return the outstanding balance of PENDING sales keyed by client id."""

    receivables: Dict[str, Decimal] = {}
    for sale in await list_sales(context):
        if sale.payment_status is not SaleStatus.PENDING or sale.balance <= ZERO:
            continue
        receivables[sale.client_id] = receivables.get(sale.client_id, ZERO) + sale.balance
    return receivables


async def calculate_outstanding_payables(context: RuntimeContext) -> Decimal:
    """Sum what is still owed on PENDING and PARTIAL payables."""

    open_statuses = (PayableStatus.PENDING, PayableStatus.PARTIAL)
    return sum(
        (payable.balance for payable in await list_payables(context) if payable.status in open_statuses),
        ZERO,
    )


async def calculate_inventory_value(context: RuntimeContext) -> Decimal:
    """Value the active inventory at each batch's real cost per kilogram."""

    cost_by_batch = {batch.batch_id: batch.real_cost_per_kg for batch in await list_batches(context)}
    return sum(
        (item.entry_weight * cost_by_batch.get(item.batch_id, ZERO) for item in await list_active_stock(context)),
        ZERO,
    )


async def find_orphan_payables(context: RuntimeContext) -> List[data_manager.PayableRow]:
    """Return purchase payables whose referenced batch no longer exists."""

    batch_ids = {batch.batch_id for batch in await list_batches(context)}
    orphans: List[data_manager.PayableRow] = []
    for payable in await list_payables(context):
        if payable.category is not TransactionCategory.PURCHASE:
            continue
        reference = payable_batch_reference(payable)
        if reference is not None and reference not in batch_ids:
            orphans.append(payable)
    return orphans


async def find_orphan_stock_items(context: RuntimeContext) -> List[data_manager.StockItemRow]:
    """Return stock items whose batch no longer exists. Nothing is deleted."""

    batch_ids = {batch.batch_id for batch in await list_batches(context)}
    return [item for item in await list_stock_items(context) if item.batch_id not in batch_ids]


async def find_orphan_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return sales none of whose items trace back to an existing batch.

    Sales without any item reference are left out since they cannot be
    attributed. Nothing is deleted; sales stay in the ledger history.
    """

    batch_ids = {batch.batch_id for batch in await list_batches(context)}
    stock_by_id = {item.item_id: item for item in await list_stock_items(context)}
    orphans: List[data_manager.SaleRow] = []
    for sale in await list_sales(context):
        origins = sale_batch_ids(sale, stock_by_id)
        if origins and not origins & batch_ids:
            orphans.append(sale)
    return orphans


async def remove_orphan_payables(context: RuntimeContext) -> List[str]:
    """Delete orphan purchase payables that never received any payment.

    Orphans with money already paid are kept (and logged) so the payment can
    still be reversed through :func:`reverse_payable`.

    Returns:
        list[str]: Ids of the deleted payables.
    """
    removed: List[str] = []
    for payable in await find_orphan_payables(context):
        if _paid_so_far(payable) > ZERO:
            log.warning("Keeping orphan payable '%s' because it has payments", payable.payable_id)
            continue
        await context.store.delete_by_id(PAYABLES, payable.payable_id)
        removed.append(payable.payable_id)
        log.info("Removed orphan payable '%s'", payable.payable_id)
    if removed:
        await _record_audit(
            context,
            AuditAction.DELETE,
            AuditEntity.SYSTEM,
            f"Removed {len(removed)} orphan payables",
            {"payables": ", ".join(removed)},
        )
    return removed


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def build_batch(command: BatchCommand, *, status: BatchStatus, installment_days: int) -> data_manager.BatchRow:
    """Materialize a :class:`BatchCommand` into a batch record with derived cost."""

    total_weight = data_manager.to_decimal(command.total_weight)
    purchase = data_manager.to_decimal(command.total_purchase_value)
    freight = data_manager.to_decimal(command.freight)
    extras = data_manager.to_decimal(command.extra_costs)
    return data_manager.BatchRow(
        batch_id=command.batch_id,
        supplier=command.supplier,
        received_date=command.received_date,
        total_weight=total_weight,
        total_purchase_value=purchase,
        freight=freight,
        extra_costs=extras,
        real_cost_per_kg=data_manager.calculate_real_cost(purchase, freight, extras, total_weight),
        payment_terms=command.payment_terms,
        down_payment=data_manager.to_decimal(command.down_payment),
        installment_days=installment_days,
        status=status,
    )


async def open_batch(context: RuntimeContext, command: BatchCommand) -> data_manager.BatchRow:
    """Register a provisional batch in OPEN state.

    OPEN batches carry no stock and no postings; they stay invisible to every
    downstream view until :func:`close_batch` runs.

    Raises:
        InvalidStateTransition: If a batch with the same id is already past
            the OPEN stage.
    """
    existing = await context.store.get_by_id(BATCHES, command.batch_id)
    if existing is not None:
        current = data_manager.deserialize_batch(existing)
        if current.status is not BatchStatus.OPEN:
            raise InvalidStateTransition(
                f"Batch '{command.batch_id}' is already {current.status.value}"
            )

    days = command.installment_days or context.settings.installment_days
    batch = build_batch(command, status=BatchStatus.OPEN, installment_days=days)
    await context.store.set_by_id(BATCHES, batch.batch_id, data_manager.serialize_batch(batch))
    log.info("Opened batch '%s' from supplier '%s'", batch.batch_id, batch.supplier)
    await _record_audit(context, AuditAction.CREATE, AuditEntity.BATCH, f"Opened batch {batch.batch_id}")
    return batch


async def close_batch(context: RuntimeContext, command: BatchCommand) -> OperationResult:
    """Close a batch, materialize its stock, and post the purchase financials.

    Steps:

    1. Persist the batch as CLOSED with its derived ``real_cost_per_kg``.
    2. Create the supplied stock entries as AVAILABLE items. Items that
       already exist are left untouched so a retry never resurrects sold stock.
    3. ``CASH`` purchases post one OUT/PURCHASE ``TR-LOTE-<id>`` for the total
       cost. ``INSTALLMENT`` purchases post the down payment as
       ``TR-LOTE-ENTRADA-<id>`` and create the ``PAY-LOTE-<id>`` payable for
       the remainder, due ``installment_days`` after reception, unless a
       payable for the batch already exists.

    Every write uses a deterministic id, so calling this twice with the same
    input converges on exactly one posting of each kind.

    Args:
        context (RuntimeContext): Runtime context with the store and audit sink.
        command (BatchCommand): Batch attributes, payment terms, and stock.

    Returns:
        OperationResult: ``success=False`` with the message when the batch is
            already reversed or a store write fails.
    """
    batch_id = command.batch_id
    try:
        existing = await context.store.get_by_id(BATCHES, batch_id)
        if existing is not None and data_manager.deserialize_batch(existing).status is BatchStatus.REVERSED:
            log.warning("Refusing to close reversed batch '%s'", batch_id)
            return OperationResult(False, f"Batch '{batch_id}' was reversed and cannot be closed")

        days = command.installment_days or context.settings.installment_days
        batch = build_batch(command, status=BatchStatus.CLOSED, installment_days=days)
        await context.store.set_by_id(BATCHES, batch_id, data_manager.serialize_batch(batch))

        created = await _materialize_stock(context, batch, command.items)
        posted = await _post_batch_financials(context, batch)
    except data_manager.StoreError as exc:
        log.error("Failed to close batch '%s': %s", batch_id, exc)
        return OperationResult(False, f"Failed to close batch '{batch_id}': {exc}")

    log.info(
        "Closed batch '%s' (total cost=%s, real cost/kg=%s, %d stock items)",
        batch_id,
        batch.total_cost,
        batch.real_cost_per_kg,
        len(created),
    )
    await _record_audit(
        context,
        AuditAction.CREATE,
        AuditEntity.BATCH,
        f"Closed batch {batch_id} from {batch.supplier}",
        {"total_cost": batch.total_cost, "stock_items": len(created), "payment_terms": batch.payment_terms.value},
    )
    return OperationResult(True, created_ids=tuple(posted))


async def _materialize_stock(
    context: RuntimeContext,
    batch: data_manager.BatchRow,
    entries: Sequence[StockEntry],
) -> List[str]:
    created: List[str] = []
    for entry in entries:
        item = data_manager.StockItemRow(
            item_id=stock_item_id(batch.batch_id, entry.sequence, entry.side_type),
            batch_id=batch.batch_id,
            sequence=entry.sequence,
            side_type=entry.side_type,
            entry_weight=data_manager.to_decimal(entry.entry_weight),
            exit_weight=None,
            entry_date=batch.received_date,
            status=StockStatus.AVAILABLE,
        )
        if await context.store.get_by_id(STOCK_ITEMS, item.item_id) is not None:
            log.info("Stock item '%s' already exists; leaving it untouched", item.item_id)
            continue
        await context.store.set_by_id(STOCK_ITEMS, item.item_id, data_manager.serialize_stock_item(item))
        created.append(item.item_id)
    return created


async def _post_batch_financials(context: RuntimeContext, batch: data_manager.BatchRow) -> List[str]:
    posted: List[str] = []
    total_cost = batch.total_cost
    if batch.payment_terms is PaymentTerms.CASH:
        if total_cost > ZERO:
            txn = await _post_transaction(context, data_manager.TransactionRow(
                transaction_id=f"{IdPrefix.BATCH_PURCHASE.value}{batch.batch_id}",
                date=batch.received_date,
                description=f"Purchase of batch {batch.batch_id} - {batch.supplier}",
                direction=Direction.OUT,
                category=TransactionCategory.PURCHASE,
                amount=total_cost,
                payment_method=PaymentMethod.CASH,
                reference_id=batch.batch_id,
            ))
            posted.append(txn.transaction_id)
        return posted

    if batch.down_payment > ZERO:
        txn = await _post_transaction(context, data_manager.TransactionRow(
            transaction_id=f"{IdPrefix.BATCH_DOWN_PAYMENT.value}{batch.batch_id}",
            date=batch.received_date,
            description=f"Down payment for batch {batch.batch_id} - {batch.supplier}",
            direction=Direction.OUT,
            category=TransactionCategory.PURCHASE,
            amount=batch.down_payment,
            payment_method=None,
            reference_id=batch.batch_id,
        ))
        posted.append(txn.transaction_id)

    remaining = total_cost - batch.down_payment
    if remaining <= ZERO:
        return posted

    payable_id = f"{IdPrefix.BATCH_PAYABLE.value}{batch.batch_id}"
    for payable in await list_payables(context):
        if payable.payable_id == payable_id or payable.batch_id == batch.batch_id:
            log.info("Payable '%s' already covers batch '%s'; skipping", payable.payable_id, batch.batch_id)
            return posted

    payable = data_manager.PayableRow(
        payable_id=payable_id,
        description=f"Batch {batch.batch_id} purchase balance - {batch.supplier}",
        amount=remaining,
        amount_paid=ZERO,
        due_date=add_days(batch.received_date, batch.installment_days),
        payment_date=None,
        status=PayableStatus.PENDING,
        category=TransactionCategory.PURCHASE,
        batch_id=batch.batch_id,
        supplier_id=batch.supplier,
        notes=None,
    )
    await context.store.set_by_id(PAYABLES, payable_id, data_manager.serialize_payable(payable))
    log.info("Created payable '%s' of %s due %s", payable_id, remaining, payable.due_date)
    posted.append(payable_id)
    return posted


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


async def confirm_sales(context: RuntimeContext, command: SaleCommand) -> OperationResult:
    """Convert the selected stock items into sales in one atomic commit.

    Items are grouped by ``(batch_id, sequence)``: both halves of a carcass
    become one sale, a lone item is its own sale. Per group the exit weights
    are summed, revenue and cost of goods derive from the price and the
    batch's real cost per kilogram, and ``extra_costs_total`` is split in
    proportion to each group's share of the total exit weight.

    Every sale insert and every stock status flip to SOLD go through a single
    :meth:`~frigo_erp.data_manager.LedgerStore.commit_atomic` call, so either
    all of them land or none do.

    Returns:
        OperationResult: ``created_ids`` lists the new sale ids on success.
            Validation problems (unknown item, item not AVAILABLE, batch not
            CLOSED, inactive client) and store failures yield
            ``success=False``. A client seen for the first time is registered
            in the same commit; a blank ``client_name`` falls back to the
            registered name.
    """
    if not command.items:
        return OperationResult(False, "No stock items selected")
    price = data_manager.to_decimal(command.price_per_kg)
    extras_total = data_manager.to_decimal(command.extra_costs_total)
    if price < ZERO or extras_total < ZERO:
        return OperationResult(False, "Price and extra costs must be zero or positive")

    try:
        loaded = await _load_sale_items(context, command.items)
        client = await find_client(context, command.client_id)
    except BusinessRuleViolation as exc:
        log.warning("Sale confirmation rejected: %s", exc)
        return OperationResult(False, str(exc))
    except data_manager.StoreError as exc:
        log.error("Sale confirmation failed while loading stock: %s", exc)
        return OperationResult(False, f"Failed to load stock: {exc}")

    operations: List[data_manager.WriteOperation] = []
    if client is None:
        client = data_manager.ClientRow(command.client_id, command.client_name, ZERO, True)
        operations.append(data_manager.WriteOperation(
            "set", CLIENTS, client.client_id, data_manager.serialize_client(client)
        ))
        log.info("Registering new client '%s' (%s)", client.client_id, client.name)
    elif not client.is_active:
        log.warning("Sale confirmation rejected: client '%s' is inactive", client.client_id)
        return OperationResult(False, f"Client '{client.client_id}' is inactive")
    if not command.client_name:
        command = dataclasses.replace(command, client_name=client.name)

    items, batches = loaded
    groups: Dict[Tuple[str, int], List[Tuple[data_manager.StockItemRow, Decimal]]] = {}
    for item, exit_weight in items:
        groups.setdefault((item.batch_id, item.sequence), []).append((item, exit_weight))

    total_exit = sum((exit_weight for _, exit_weight in items), ZERO)
    timestamp = _resolve_timestamp(None)
    sale_date = _resolve_date(command.sale_date)
    term_days = command.term_days if command.term_days is not None else context.settings.sale_term_days

    sale_ids: List[str] = []
    for index, ((batch_id, _), group) in enumerate(groups.items(), start=1):
        try:
            sale_id = await _unique_id(
                context, SALES, f"V-{timestamp.strftime('%Y%m%d%H%M%S%f')}-{index:02d}"
            )
        except data_manager.StoreError as exc:
            return OperationResult(False, f"Failed to allocate sale id: {exc}")
        sale = build_sale(
            command,
            sale_id=sale_id,
            group=group,
            batch=batches[batch_id],
            price=price,
            group_extra=_allocate_extra(extras_total, group, total_exit),
            sale_date=sale_date,
            term_days=term_days,
        )
        sale_ids.append(sale.sale_id)
        operations.append(data_manager.WriteOperation("set", SALES, sale.sale_id, data_manager.serialize_sale(sale)))
        for item, exit_weight in group:
            operations.append(data_manager.WriteOperation(
                "update",
                STOCK_ITEMS,
                item.item_id,
                {"status": StockStatus.SOLD.value, "exit_weight": exit_weight},
                expected_version=item.version,
            ))

    try:
        await context.store.commit_atomic(operations)
    except data_manager.StoreError as exc:
        log.error("Sale confirmation for client '%s' failed: %s", command.client_id, exc)
        return OperationResult(False, f"Failed to record sale: {exc}")

    log.info(
        "Recorded %d sales for client '%s' (%d stock items, %s kg)",
        len(sale_ids),
        command.client_id,
        len(items),
        total_exit,
    )
    await _record_audit(
        context,
        AuditAction.CREATE,
        AuditEntity.SALE,
        f"Sold {len(items)} items to {command.client_name}",
        {"sales": ", ".join(sale_ids), "exit_weight": total_exit},
    )
    return OperationResult(True, created_ids=tuple(sale_ids))


async def _load_sale_items(
    context: RuntimeContext,
    requested: Sequence[SaleItem],
) -> Tuple[List[Tuple[data_manager.StockItemRow, Decimal]], Dict[str, data_manager.BatchRow]]:
    items: List[Tuple[data_manager.StockItemRow, Decimal]] = []
    batches: Dict[str, data_manager.BatchRow] = {}
    seen: set[str] = set()
    for request in requested:
        if request.item_id in seen:
            raise BusinessRuleViolation(f"Stock item '{request.item_id}' selected twice")
        seen.add(request.item_id)
        raw = await context.store.get_by_id(STOCK_ITEMS, request.item_id)
        if raw is None:
            raise MissingReferenceError(f"Stock item '{request.item_id}' not found")
        item = data_manager.deserialize_stock_item(raw)
        if item.status is not StockStatus.AVAILABLE:
            raise InvalidStateTransition(f"Stock item '{item.item_id}' is {item.status.value}")
        if item.batch_id not in batches:
            raw_batch = await context.store.get_by_id(BATCHES, item.batch_id)
            if raw_batch is None:
                raise MissingReferenceError(f"Batch '{item.batch_id}' not found")
            batches[item.batch_id] = data_manager.deserialize_batch(raw_batch)
        if batches[item.batch_id].status is not BatchStatus.CLOSED:
            raise InvalidStateTransition(f"Batch '{item.batch_id}' is not CLOSED")
        exit_weight = data_manager.to_decimal(request.exit_weight)
        if exit_weight <= ZERO:
            raise BusinessRuleViolation(f"Exit weight of '{item.item_id}' must be positive")
        items.append((item, exit_weight))
    return items, batches


def _allocate_extra(extras_total: Decimal, group: Sequence[Tuple[Any, Decimal]], total_exit: Decimal) -> Decimal:
    if extras_total == ZERO or total_exit == ZERO:
        return ZERO
    group_exit = sum((exit_weight for _, exit_weight in group), ZERO)
    return extras_total * group_exit / total_exit


def build_sale(
    command: SaleCommand,
    *,
    sale_id: str,
    group: Sequence[Tuple[data_manager.StockItemRow, Decimal]],
    batch: data_manager.BatchRow,
    price: Decimal,
    group_extra: Decimal,
    sale_date: str,
    term_days: int,
) -> data_manager.SaleRow:
    """Materialize one item group into a PENDING sale record."""

    entry_total = sum((item.entry_weight for item, _ in group), ZERO)
    exit_total = sum((exit_weight for _, exit_weight in group), ZERO)
    revenue = exit_total * price
    cost = exit_total * batch.real_cost_per_kg
    return data_manager.SaleRow(
        sale_id=sale_id,
        client_id=command.client_id,
        client_name=command.client_name,
        stock_item_ids=tuple(item.item_id for item, _ in group),
        exit_weight=exit_total,
        price_per_kg=price,
        sale_date=sale_date,
        due_date=add_days(sale_date, term_days),
        term_days=term_days,
        payment_method=command.payment_method,
        amount_paid=ZERO,
        payment_status=SaleStatus.PENDING,
        weight_loss_kg=entry_total - exit_total,
        cost_of_goods=cost,
        extra_costs_allocated=group_extra,
        net_profit=revenue - cost - group_extra,
    )


# ---------------------------------------------------------------------------
# Receivables
# ---------------------------------------------------------------------------


async def add_partial_payment(
    context: RuntimeContext,
    sale_id: str,
    amount: Decimal,
    *,
    method: Optional[PaymentMethod] = None,
    date: Optional[str] = None,
) -> data_manager.SaleRow:
    """Apply ``amount`` to a sale's ``amount_paid``.

    The sale turns PAID once the accumulated amount reaches its revenue
    (within ``MONEY_EPSILON``) and stays PENDING otherwise. Only the sale is
    updated: posting the matching cash transaction is the caller's job, see
    :func:`record_sale_receipt`.

    Args:
        context (RuntimeContext): Runtime context with the store.
        sale_id (str): Sale receiving the payment.
        amount (Decimal): Nonnegative amount to apply.
        method (PaymentMethod | None): Informational payment method.
        date (str | None): Informational payment date.

    Returns:
        data_manager.SaleRow: The sale after the update.

    Raises:
        ValueError: If ``amount`` is negative.
        MissingReferenceError: If the sale does not exist.
        InvalidStateTransition: If the sale was reversed.
        BusinessRuleViolation: If the payment exceeds the sale's revenue.
    """
    require_nonnegative_money(amount)
    sale = await get_sale(context, sale_id)
    if sale.payment_status is SaleStatus.REVERSED:
        raise InvalidStateTransition(f"Sale '{sale_id}' was reversed and cannot receive payments")

    new_paid = sale.amount_paid + amount
    if new_paid > sale.revenue + MONEY_EPSILON:
        log.error("Overpayment on sale '%s': paid %s of %s", sale_id, new_paid, sale.revenue)
        raise BusinessRuleViolation(
            f"Payment of {amount} exceeds the open balance {sale.balance} of sale '{sale_id}'"
        )
    status = SaleStatus.PAID if new_paid >= sale.revenue - MONEY_EPSILON else SaleStatus.PENDING

    await context.store.update_fields(
        SALES,
        sale_id,
        {"amount_paid": new_paid, "payment_status": status.value},
        expected_version=sale.version,
    )
    log.info(
        "Applied %s to sale '%s' via %s on %s (paid=%s, status=%s)",
        amount,
        sale_id,
        method.value if method else "unspecified",
        _resolve_date(date),
        new_paid,
        status.value,
    )
    return dataclasses.replace(sale, amount_paid=new_paid, payment_status=status, version=sale.version + 1)


async def receive_client_payment(
    context: RuntimeContext,
    client_id: str,
    amount: Decimal,
    *,
    method: Optional[PaymentMethod] = None,
    date: Optional[str] = None,
    record_receipts: bool = False,
) -> ClientPaymentResult:
    """Settle a client's open sales oldest first (FIFO).

    The client's PENDING sales are ordered by ``sale_date`` and each receives
    ``min(open balance, remaining)`` until the money runs out (remaining at or
    below ``MONEY_EPSILON``) or every sale is settled.

    Args:
        record_receipts (bool): When ``True`` a ``TR-REC`` cash-in transaction
            is posted for every allocation.

    Returns:
        ClientPaymentResult: Allocations in application order and the
            unapplied remainder.
    """
    require_positive_money(amount)
    pending = [
        sale
        for sale in await list_sales(context)
        if sale.client_id == client_id and sale.payment_status is SaleStatus.PENDING
    ]
    pending.sort(key=lambda sale: sale.sale_date)

    remaining = amount
    allocations: List[PaymentAllocation] = []
    for sale in pending:
        if remaining <= MONEY_EPSILON:
            break
        owed = sale.balance
        if owed <= ZERO:
            continue
        applied = min(owed, remaining)
        await add_partial_payment(context, sale.sale_id, applied, method=method, date=date)
        if record_receipts:
            await _post_receipt(context, sale, applied, method=method, date=date)
        allocations.append(PaymentAllocation(sale.sale_id, applied))
        remaining -= applied

    log.info(
        "Received %s from client '%s': %d sales settled, %s unapplied",
        amount,
        client_id,
        len(allocations),
        remaining,
    )
    await _record_audit(
        context,
        AuditAction.UPDATE,
        AuditEntity.CLIENT,
        f"Received {amount} from client {client_id}",
        {"sales": ", ".join(a.sale_id for a in allocations), "remainder": remaining},
    )
    return ClientPaymentResult(tuple(allocations), remaining)


async def _post_receipt(
    context: RuntimeContext,
    sale: data_manager.SaleRow,
    amount: Decimal,
    *,
    method: Optional[PaymentMethod],
    date: Optional[str],
) -> data_manager.TransactionRow:
    transaction_id = await _unique_id(
        context,
        TRANSACTIONS,
        generate_transaction_id(prefix=f"{IdPrefix.SALE_RECEIPT.value}{sale.sale_id}-"),
    )
    return await _post_transaction(context, data_manager.TransactionRow(
        transaction_id=transaction_id,
        date=_resolve_date(date),
        description=f"Receipt for sale {sale.sale_id} - {sale.client_name}",
        direction=Direction.IN,
        category=TransactionCategory.SALE,
        amount=amount,
        payment_method=method,
        reference_id=sale.sale_id,
    ))


async def record_sale_receipt(
    context: RuntimeContext,
    sale_id: str,
    amount: Decimal,
    *,
    discount: Decimal = ZERO,
    reason: Optional[str] = None,
    method: PaymentMethod = PaymentMethod.CASH,
    date: Optional[str] = None,
) -> List[data_manager.TransactionRow]:
    """Receive money (and optionally grant a discount) on a sale.

    ``amount + discount`` is applied through :func:`add_partial_payment`; the
    cash part is posted as IN/SALE ``TR-REC-*`` and the discount as
    OUT/DISCOUNT ``TR-DESC-*``, both referencing the sale.

    Raises:
        ValueError: If either value is negative or both are zero.
        BusinessRuleViolation: If the total exceeds the open balance.
    """
    require_nonnegative_money(amount)
    require_nonnegative_money(discount)
    total = amount + discount
    require_positive_money(total)

    sale = await get_sale(context, sale_id)
    if total > sale.balance + MONEY_EPSILON:
        raise BusinessRuleViolation(
            f"Receipt of {total} exceeds the open balance {sale.balance} of sale '{sale_id}'"
        )
    await add_partial_payment(context, sale_id, total, method=method, date=date)

    posted: List[data_manager.TransactionRow] = []
    if amount > ZERO:
        posted.append(await _post_receipt(context, sale, amount, method=method, date=date))
    if discount > ZERO:
        transaction_id = await _unique_id(
            context,
            TRANSACTIONS,
            generate_transaction_id(prefix=f"{IdPrefix.SALE_DISCOUNT.value}{sale_id}-"),
        )
        posted.append(await _post_transaction(context, data_manager.TransactionRow(
            transaction_id=transaction_id,
            date=_resolve_date(date),
            description=f"Discount on sale {sale_id}" + (f": {reason}" if reason else ""),
            direction=Direction.OUT,
            category=TransactionCategory.DISCOUNT,
            amount=discount,
            payment_method=method,
            reference_id=sale_id,
        )))

    await _record_audit(
        context,
        AuditAction.UPDATE,
        AuditEntity.SALE,
        f"Received {amount} on sale {sale_id}",
        {"discount": discount, "method": method.value},
    )
    return posted


# ---------------------------------------------------------------------------
# Ledger and payables
# ---------------------------------------------------------------------------


async def add_transaction(context: RuntimeContext, command: TransactionCommand) -> data_manager.TransactionRow:
    """Append a manual ledger entry.

    Raises:
        ValueError: If the amount is not positive.
        BusinessRuleViolation: If the requested id is already taken.
    """
    require_positive_money(command.amount)
    if command.transaction_id:
        transaction_id = command.transaction_id
        if await context.store.get_by_id(TRANSACTIONS, transaction_id) is not None:
            raise BusinessRuleViolation(f"Transaction '{transaction_id}' already exists")
    else:
        transaction_id = await _unique_id(context, TRANSACTIONS, generate_transaction_id())

    transaction = await _post_transaction(context, data_manager.TransactionRow(
        transaction_id=transaction_id,
        date=_resolve_date(command.date),
        description=command.description,
        direction=command.direction,
        category=command.category,
        amount=command.amount,
        payment_method=command.payment_method,
        reference_id=command.reference_id,
    ))
    await _record_audit(
        context,
        AuditAction.CREATE,
        AuditEntity.TRANSACTION,
        f"Added {command.direction.value} transaction {transaction_id}: {command.description}",
        {"amount": command.amount, "category": command.category.value},
    )
    return transaction


async def add_payable(context: RuntimeContext, command: PayableCommand) -> data_manager.PayableRow:
    """Register an account payable.

    Raises:
        ValueError: If the amount is not positive.
        BusinessRuleViolation: If the id is taken or the batch already has a
            purchase payable.
    """
    require_positive_money(command.amount)
    if command.batch_id and command.category is TransactionCategory.PURCHASE:
        for payable in await list_payables(context):
            if payable.batch_id == command.batch_id and payable.category is TransactionCategory.PURCHASE:
                raise BusinessRuleViolation(
                    f"Batch '{command.batch_id}' already has purchase payable '{payable.payable_id}'"
                )

    if command.payable_id:
        payable_id = command.payable_id
        if await context.store.get_by_id(PAYABLES, payable_id) is not None:
            raise BusinessRuleViolation(f"Payable '{payable_id}' already exists")
    else:
        payable_id = await _unique_id(context, PAYABLES, generate_transaction_id(prefix="PAY-"))

    payable = data_manager.PayableRow(
        payable_id=payable_id,
        description=command.description,
        amount=command.amount,
        amount_paid=ZERO,
        due_date=command.due_date,
        payment_date=None,
        status=PayableStatus.PENDING,
        category=command.category,
        batch_id=command.batch_id,
        supplier_id=command.supplier_id,
        notes=command.notes,
    )
    await context.store.set_by_id(PAYABLES, payable_id, data_manager.serialize_payable(payable))
    log.info("Registered payable '%s' of %s due %s", payable_id, payable.amount, payable.due_date)
    await _record_audit(
        context,
        AuditAction.CREATE,
        AuditEntity.TRANSACTION,
        f"Added payable {payable_id}: {command.description}",
        {"amount": command.amount},
    )
    return payable


def _settled_status(amount_paid: Decimal, amount: Decimal) -> PayableStatus:
    if amount_paid <= ZERO:
        return PayableStatus.PENDING
    if amount_paid >= amount - MONEY_EPSILON:
        return PayableStatus.PAID
    return PayableStatus.PARTIAL


def _require_open_payable(payable: data_manager.PayableRow) -> None:
    if payable.status in (PayableStatus.CANCELLED, PayableStatus.REVERSED):
        raise InvalidStateTransition(
            f"Payable '{payable.payable_id}' is {payable.status.value} and can no longer change"
        )


async def update_payable(
    context: RuntimeContext,
    payable_id: str,
    *,
    description: Optional[str] = None,
    amount: Optional[Decimal] = None,
    due_date: Optional[str] = None,
    category: Optional[TransactionCategory] = None,
    supplier_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> data_manager.PayableRow:
    """Edit the descriptive fields or the amount of an open payable.

    Payment state is only changed through :func:`pay_payable` and
    :func:`reverse_payable`; changing the amount re-derives the status.

    Raises:
        InvalidStateTransition: If the payable is CANCELLED or REVERSED.
        BusinessRuleViolation: If the new amount is below what was paid.
    """
    payable = await get_payable(context, payable_id)
    _require_open_payable(payable)

    changes: Dict[str, Any] = {}
    if description is not None:
        changes["description"] = description
    if due_date is not None:
        changes["due_date"] = due_date
    if category is not None:
        changes["category"] = category
    if supplier_id is not None:
        changes["supplier_id"] = supplier_id
    if notes is not None:
        changes["notes"] = notes
    if amount is not None:
        require_positive_money(amount)
        if amount < payable.amount_paid - MONEY_EPSILON:
            raise BusinessRuleViolation(
                f"Amount {amount} is below the {payable.amount_paid} already paid on '{payable_id}'"
            )
        changes["amount"] = amount
        changes["status"] = _settled_status(payable.amount_paid, amount)

    if not changes:
        return payable

    updated = dataclasses.replace(payable, **changes, version=payable.version + 1)
    document = data_manager.serialize_payable(updated)
    await context.store.update_fields(
        PAYABLES,
        payable_id,
        {key: document[key] for key in changes},
        expected_version=payable.version,
    )
    log.info("Updated payable '%s': %s", payable_id, ", ".join(sorted(changes)))
    await _record_audit(context, AuditAction.UPDATE, AuditEntity.TRANSACTION, f"Updated payable {payable_id}")
    return updated


async def pay_payable(
    context: RuntimeContext,
    payable_id: str,
    amount: Decimal,
    *,
    method: Optional[PaymentMethod] = None,
    date: Optional[str] = None,
) -> data_manager.PayableRow:
    """Pay (part of) a payable.

    Posts an OUT ``TR-PAY-*`` transaction in the payable's category and
    accumulates ``amount_paid`` in the same atomic commit. The payable turns
    PAID within ``MONEY_EPSILON`` of its amount, PARTIAL otherwise.

    Raises:
        ValueError: If ``amount`` is not positive.
        InvalidStateTransition: If the payable is already settled or closed.
        BusinessRuleViolation: If the payment exceeds the open balance.
    """
    require_positive_money(amount)
    payable = await get_payable(context, payable_id)
    _require_open_payable(payable)
    if payable.status is PayableStatus.PAID:
        raise InvalidStateTransition(f"Payable '{payable_id}' is already PAID")

    new_paid = payable.amount_paid + amount
    if new_paid > payable.amount + MONEY_EPSILON:
        raise BusinessRuleViolation(
            f"Payment of {amount} exceeds the open balance {payable.balance} of payable '{payable_id}'"
        )
    status = _settled_status(new_paid, payable.amount)
    payment_date = _resolve_date(date)

    transaction_id = await _unique_id(
        context,
        TRANSACTIONS,
        generate_transaction_id(prefix=f"{IdPrefix.PAYABLE_PAYMENT.value}{payable_id}-"),
    )
    transaction = data_manager.TransactionRow(
        transaction_id=transaction_id,
        date=payment_date,
        description=f"Payment of {payable.description}",
        direction=Direction.OUT,
        category=payable.category,
        amount=amount,
        payment_method=method,
        reference_id=payable_id,
    )
    await context.store.commit_atomic([
        data_manager.WriteOperation(
            "set", TRANSACTIONS, transaction_id, data_manager.serialize_transaction(transaction)
        ),
        data_manager.WriteOperation(
            "update",
            PAYABLES,
            payable_id,
            {"amount_paid": new_paid, "status": status.value, "payment_date": payment_date},
            expected_version=payable.version,
        ),
    ])
    log.info("Paid %s on payable '%s' (paid=%s, status=%s)", amount, payable_id, new_paid, status.value)
    await _record_audit(
        context,
        AuditAction.UPDATE,
        AuditEntity.TRANSACTION,
        f"Paid {amount} on payable {payable_id}",
        {"transaction": transaction_id},
    )
    return dataclasses.replace(
        payable,
        amount_paid=new_paid,
        status=status,
        payment_date=payment_date,
        version=payable.version + 1,
    )


# ---------------------------------------------------------------------------
# Reversals
# ---------------------------------------------------------------------------


async def _cascade_step(report: ReversalReport, step: str, work: Awaitable[None]) -> None:
    """Run one cascade step, logging and recording a store failure instead of raising."""

    try:
        await work
    except data_manager.StoreError as exc:
        log.error("Reversal of '%s' failed at step '%s': %s", report.entity_id, step, exc)
        report.failures.append(f"{step}: {exc}")


async def _mirror_sale_money(
    context: RuntimeContext,
    sale: data_manager.SaleRow,
    report: ReversalReport,
) -> None:
    """Mirror the cash collected on a sale (OUT) and each discount granted (IN).

    ``amount_paid`` includes granted discounts, so the cash refund is the paid
    amount minus the discounts; together the mirrors cancel the sale's ledger
    effect exactly. Mirrors already posted are skipped, so callers run this
    before flipping the sale and simply retry after a ``StoreError``.
    """

    discount_prefix = f"{IdPrefix.SALE_DISCOUNT.value}{sale.sale_id}"
    discounts = [
        txn
        for txn in await list_transactions(context)
        if txn.category is TransactionCategory.DISCOUNT
        and txn.direction is Direction.OUT
        and (txn.reference_id == sale.sale_id or txn.transaction_id.startswith(discount_prefix))
    ]

    cash_collected = sale.amount_paid - sum((txn.amount for txn in discounts), ZERO)
    if cash_collected > ZERO:
        mirror = await post_mirror(
            context,
            sale.sale_id,
            direction=Direction.OUT,
            amount=cash_collected,
            description=f"Reversal of sale {sale.sale_id} - refund to {sale.client_name}",
            reference_id=sale.sale_id,
        )
        if mirror is not None:
            report.mirror_ids.append(mirror.transaction_id)
            report.bump(TRANSACTIONS)

    for txn in discounts:
        mirror = await post_mirror(
            context,
            txn.transaction_id,
            direction=Direction.IN,
            amount=txn.amount,
            description=f"Reversal of discount {txn.transaction_id} on sale {sale.sale_id}",
            reference_id=sale.sale_id,
        )
        if mirror is not None:
            report.mirror_ids.append(mirror.transaction_id)
            report.bump(TRANSACTIONS)


async def _restore_stock(context: RuntimeContext, sale: data_manager.SaleRow, report: ReversalReport) -> None:
    for item_id in sale.stock_item_ids:
        raw = await context.store.get_by_id(STOCK_ITEMS, item_id)
        if raw is None:
            log.warning("Stock item '%s' of sale '%s' no longer exists; skipping", item_id, sale.sale_id)
            continue
        if data_manager.deserialize_stock_item(raw).status is StockStatus.REVERSED:
            log.warning("Stock item '%s' was reversed with its batch; leaving it out of inventory", item_id)
            continue
        try:
            await context.store.update_fields(
                STOCK_ITEMS, item_id, {"status": StockStatus.AVAILABLE.value, "exit_weight": None}
            )
        except data_manager.StoreError as exc:
            log.error("Failed to return stock item '%s' to inventory: %s", item_id, exc)
            report.failures.append(f"stock {item_id}: {exc}")
            continue
        report.bump(STOCK_ITEMS)


async def reverse_sale(context: RuntimeContext, sale_id: str) -> ReversalReport:
    """Reverse a sale: mirror its money, flip its status, and return its stock.

    The money collected is mirrored as OUT/REVERSAL and each discount granted
    as IN/REVERSAL before the sale changes, so a failure there leaves the
    sale PENDING or PAID and a retry posts only the missing mirrors. The
    status change (REVERSED with ``amount_paid`` zeroed) then propagates
    store failures too. Returning the referenced stock items to AVAILABLE
    comes last; missing items are skipped and failures are reported without
    undoing the reversal.

    Returns:
        ReversalReport: Counts per collection plus the mirror ids.

    Raises:
        MissingReferenceError: If the sale does not exist.
        InvalidStateTransition: If the sale is already REVERSED.
        data_manager.StoreError: If a mirror or the status change fails.
    """
    sale = await get_sale(context, sale_id)
    if sale.payment_status is SaleStatus.REVERSED:
        log.warning("Sale '%s' is already reversed", sale_id)
        raise InvalidStateTransition(f"Sale '{sale_id}' is already reversed")

    report = ReversalReport(entity_id=sale_id)
    await _mirror_sale_money(context, sale, report)
    await context.store.update_fields(
        SALES,
        sale_id,
        {"payment_status": SaleStatus.REVERSED.value, "amount_paid": ZERO},
        expected_version=sale.version,
    )
    report.bump(SALES)

    await _cascade_step(report, "stock", _restore_stock(context, sale, report))

    log.info(
        "Reversed sale '%s' (%d stock items restored, %d mirrors)",
        sale_id,
        report.counts.get(STOCK_ITEMS, 0),
        len(report.mirror_ids),
    )
    await _record_audit(
        context,
        AuditAction.ESTORNO,
        AuditEntity.SALE,
        f"Reversed sale {sale_id} of {sale.client_name}",
        {"amount_paid": sale.amount_paid, **report.counts},
    )
    return report


async def _reverse_payable_row(
    context: RuntimeContext,
    payable: data_manager.PayableRow,
) -> Tuple[PayableStatus, Optional[data_manager.TransactionRow]]:
    paid = _paid_so_far(payable)
    if paid <= ZERO:
        await context.store.update_fields(
            PAYABLES, payable.payable_id, {"status": PayableStatus.CANCELLED.value},
            expected_version=payable.version,
        )
        log.info("Cancelled unpaid payable '%s'", payable.payable_id)
        return PayableStatus.CANCELLED, None

    await context.store.update_fields(
        PAYABLES, payable.payable_id, {"status": PayableStatus.REVERSED.value},
        expected_version=payable.version,
    )
    mirror = await post_mirror(
        context,
        payable.payable_id,
        direction=Direction.IN,
        amount=paid,
        description=f"Reversal of payable {payable.payable_id} - {payable.description}",
        reference_id=payable.payable_id,
    )
    log.info("Reversed payable '%s' (%s returned)", payable.payable_id, paid)
    return PayableStatus.REVERSED, mirror


async def reverse_payable(context: RuntimeContext, payable_id: str) -> data_manager.PayableRow:
    """Reverse or cancel a payable.

    PAID and PARTIAL payables become REVERSED with a mirror IN for what was
    paid (the full amount when PAID); never-paid payables become CANCELLED
    without any financial effect.

    Raises:
        MissingReferenceError: If the payable does not exist.
        InvalidStateTransition: If it is already CANCELLED or REVERSED.
    """
    payable = await get_payable(context, payable_id)
    _require_open_payable(payable)
    status, mirror = await _reverse_payable_row(context, payable)
    await _record_audit(
        context,
        AuditAction.ESTORNO,
        AuditEntity.TRANSACTION,
        f"{status.value.title()} payable {payable_id}",
        {"mirror": mirror.transaction_id if mirror else None},
    )
    return dataclasses.replace(payable, status=status, version=payable.version + 1)


async def reverse_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Reverse a free-standing ledger entry with one inverted mirror.

    Entries owned by a sale, payable, or batch must be reversed through their
    owner so the mirror is never booked twice.

    Raises:
        MissingReferenceError: If the transaction does not exist.
        InvalidStateTransition: If the entry is a reversal, was already
            reversed, or is owned by a sale, payable, or batch.
    """
    txn = await get_transaction(context, transaction_id)
    validate_reversal_target(txn)
    if await context.store.get_by_id(TRANSACTIONS, reversal_id(transaction_id)) is not None:
        raise InvalidStateTransition(f"Transaction '{transaction_id}' was already reversed")
    if txn.reference_id:
        for collection, label in ((SALES, "sale"), (PAYABLES, "payable"), (BATCHES, "batch")):
            if await context.store.get_by_id(collection, txn.reference_id) is not None:
                log.warning("Transaction '%s' belongs to %s '%s'", transaction_id, label, txn.reference_id)
                raise InvalidStateTransition(
                    f"Transaction '{transaction_id}' belongs to {label} '{txn.reference_id}'; "
                    f"reverse the {label} instead"
                )

    mirror = await post_mirror(
        context,
        transaction_id,
        direction=txn.direction.inverted(),
        amount=txn.amount,
        description=f"Reversal of {txn.description}",
        reference_id=transaction_id,
        payment_method=txn.payment_method,
    )
    await _record_audit(
        context,
        AuditAction.ESTORNO,
        AuditEntity.TRANSACTION,
        f"Reversed transaction {transaction_id}",
        {"amount": txn.amount},
    )
    return mirror


def validate_reversal_target(transaction: data_manager.TransactionRow) -> None:
    """Reject reversals and entries whose id marks them as owned by another entity.

    Raises:
        InvalidStateTransition: If ``transaction`` cannot be reversed directly.
    """
    if (transaction.category is TransactionCategory.REVERSAL
            or transaction.transaction_id.startswith(IdPrefix.REVERSAL.value)):
        log.error("Cannot reverse '%s' because it is already a reversal", transaction.transaction_id)
        raise InvalidStateTransition("Cannot reverse a reversal entry")
    for prefix in OWNED_TRANSACTION_PREFIXES:
        if transaction.transaction_id.startswith(prefix):
            log.error("Cannot reverse '%s' directly; it is owned by prefix %s", transaction.transaction_id, prefix)
            raise InvalidStateTransition(
                f"Transaction '{transaction.transaction_id}' is a sale or payable payment; "
                "reverse the sale or payable instead"
            )
    if transaction.transaction_id.startswith(IdPrefix.BATCH_PURCHASE.value):
        raise InvalidStateTransition(
            f"Transaction '{transaction.transaction_id}' is a batch purchase; reverse the batch instead"
        )


async def reverse_batch(context: RuntimeContext, batch_id: str) -> ReversalReport:
    """Run the full reversal cascade of a batch.

    Steps run in a fixed order over snapshot reads: batch status, stock
    items, payables, sales, purchase transactions, then one audit entry with
    the per-collection counts. Store failures are logged and collected in
    :attr:`ReversalReport.failures` instead of aborting; every step skips
    work that is already done, so re-running the cascade converges.

    Sales of the batch are reversed and their money mirrored, but their stock
    is not returned because the batch itself is gone. Each sale's mirrors are
    posted before its status flips, and a failing sale does not stop the
    others, so a re-run finishes the refunds a previous run missed.

    Raises:
        MissingReferenceError: If the batch does not exist.
    """
    batch = await get_batch(context, batch_id)
    report = ReversalReport(entity_id=batch_id)

    async def flip_batch() -> None:
        if batch.status is BatchStatus.REVERSED:
            log.info("Batch '%s' already reversed; resuming cascade", batch_id)
            return
        await context.store.update_fields(BATCHES, batch_id, {"status": BatchStatus.REVERSED.value})
        report.bump(BATCHES)

    async def reverse_stock() -> None:
        for item in await list_stock_items(context):
            if item.batch_id != batch_id or item.status is StockStatus.REVERSED:
                continue
            await context.store.update_fields(STOCK_ITEMS, item.item_id, {"status": StockStatus.REVERSED.value})
            report.bump(STOCK_ITEMS)

    async def settle_payables() -> None:
        for payable in await list_payables(context):
            if payable.status in (PayableStatus.CANCELLED, PayableStatus.REVERSED):
                continue
            if match_payable_to_batch(payable, batch_id) is None:
                continue
            try:
                _, mirror = await _reverse_payable_row(context, payable)
            except data_manager.StoreError as exc:
                log.error("Failed to reverse payable '%s': %s", payable.payable_id, exc)
                report.failures.append(f"payable {payable.payable_id}: {exc}")
                continue
            report.bump(PAYABLES)
            if mirror is not None:
                report.mirror_ids.append(mirror.transaction_id)
                report.bump(TRANSACTIONS)

    async def reverse_sales() -> None:
        stock_by_id = {item.item_id: item for item in await list_stock_items(context)}
        for sale in await list_sales(context):
            if sale.payment_status is SaleStatus.REVERSED:
                continue
            if not sale_belongs_to_batch(sale, batch_id, stock_by_id):
                continue
            try:
                # Mirrors first: a sale is only REVERSED once its refund is posted.
                await _mirror_sale_money(context, sale, report)
                await context.store.update_fields(
                    SALES,
                    sale.sale_id,
                    {"payment_status": SaleStatus.REVERSED.value, "amount_paid": ZERO},
                    expected_version=sale.version,
                )
            except data_manager.StoreError as exc:
                log.error("Failed to reverse sale '%s': %s", sale.sale_id, exc)
                report.failures.append(f"sale {sale.sale_id}: {exc}")
                continue
            report.bump(SALES)

    async def mirror_purchases() -> None:
        own_ids = {
            f"{IdPrefix.BATCH_PURCHASE.value}{batch_id}",
            f"{IdPrefix.BATCH_DOWN_PAYMENT.value}{batch_id}",
        }
        for txn in await list_transactions(context):
            if txn.category is not TransactionCategory.PURCHASE:
                continue
            if txn.reference_id != batch_id and txn.transaction_id not in own_ids:
                continue
            try:
                mirror = await post_mirror(
                    context,
                    txn.transaction_id,
                    direction=txn.direction.inverted(),
                    amount=txn.amount,
                    description=f"Reversal of {txn.description}",
                    reference_id=batch_id,
                )
            except data_manager.StoreError as exc:
                log.error("Failed to mirror purchase '%s': %s", txn.transaction_id, exc)
                report.failures.append(f"transaction {txn.transaction_id}: {exc}")
                continue
            if mirror is not None:
                report.mirror_ids.append(mirror.transaction_id)
                report.bump(TRANSACTIONS)

    await _cascade_step(report, "batch", flip_batch())
    await _cascade_step(report, "stock", reverse_stock())
    await _cascade_step(report, "payables", settle_payables())
    await _cascade_step(report, "sales", reverse_sales())
    await _cascade_step(report, "transactions", mirror_purchases())

    log.info(
        "Reversed batch '%s': %s (%d failures)",
        batch_id,
        ", ".join(f"{name}={count}" for name, count in sorted(report.counts.items())) or "nothing to do",
        len(report.failures),
    )
    await _record_audit(
        context,
        AuditAction.ESTORNO,
        AuditEntity.BATCH,
        f"Reversed batch {batch_id} from {batch.supplier}",
        {**report.counts, "failures": len(report.failures)},
    )
    return report
