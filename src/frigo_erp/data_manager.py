"""Data access layer for FrigoGest ERP.

This module owns everything that touches persistence. Business rules belong
in :mod:`frigo_erp.core_logic`.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. The Ledger Store contract: an asynchronous document store grouping records
   into named collections, with single-document reads/writes and an atomic
   multi-document commit. :class:`InMemoryLedgerStore` implements it in memory
   and :class:`WorkbookLedgerStore` backs it with the master Excel workbook.
3. Workbook lifecycle: opening, loading, and persisting the Excel file.
4. Entity records: typed dataclasses for every collection together with the
   ``serialize_*``/``deserialize_*`` pairs that convert them to and from store
   documents. Deserialization is also the single normalization pass for legacy
   documents that still carry the original Portuguese field names and status
   values.
"""


from __future__ import annotations

import configparser
import copy
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import DEFAULT_LOG_LEVEL, log
from .constants import (
    DEFAULT_INSTALLMENT_DAYS,
    DEFAULT_SALE_TERM_DAYS,
    AuditAction,
    AuditEntity,
    BatchStatus,
    CollectionName,
    Direction,
    PayableStatus,
    PaymentMethod,
    PaymentTerms,
    SaleStatus,
    SideType,
    StockStatus,
    TransactionCategory,
)


CONFIG_FILE_NAME = "config.ini"
VERSION_FIELD = "version"
EXTRA_COLUMN = "extra"

Document = Dict[str, Any]
EnumT = TypeVar("EnumT", bound=Enum)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_actor: str
    installment_days: int = DEFAULT_INSTALLMENT_DAYS
    sale_term_days: int = DEFAULT_SALE_TERM_DAYS
    log_level: str = DEFAULT_LOG_LEVEL


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must define ``DataFile``, ``BusinessName`` and
    ``SchemaVersion``; ``[Defaults]`` must define ``Actor`` and may override
    ``InstallmentDays``, ``SaleTermDays`` and ``LogLevel``. Relative data file paths are
    anchored at ``base_path`` (or the current working directory).

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a day count is not an integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_actor = parser.get("Defaults", "Actor")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    installment_days = parser.getint(
        "Defaults", "InstallmentDays", fallback=DEFAULT_INSTALLMENT_DAYS)
    sale_term_days = parser.getint(
        "Defaults", "SaleTermDays", fallback=DEFAULT_SALE_TERM_DAYS)
    log_level = parser.get("Defaults", "LogLevel", fallback=DEFAULT_LOG_LEVEL).strip().upper()

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_actor=default_actor,
        installment_days=installment_days,
        sale_term_days=sale_term_days,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# Ledger Store contract
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """Raised when the ledger store rejects a read or write."""


class DocumentNotFoundError(StoreError):
    """Raised when an update targets a document that does not exist."""


class ConcurrencyConflictError(StoreError):
    """Raised when a document changed since the caller last read it."""


WRITE_KINDS = ("set", "update", "delete")


@dataclass(frozen=True)
class WriteOperation:
    """One entry of an atomic commit."""

    op: str
    collection: str
    doc_id: str
    data: Optional[Document] = None
    expected_version: Optional[int] = None

    def __post_init__(self) -> None:
        if self.op not in WRITE_KINDS:
            raise ValueError(f"Unsupported write operation: {self.op}")


class LedgerStore(ABC):
    """Asynchronous document store grouping records into named collections."""

    @abstractmethod
    async def list_all(self, collection: str) -> List[Document]:
        """Return every document of ``collection`` in insertion order."""

    @abstractmethod
    async def get_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return one document, or ``None`` when it does not exist."""

    @abstractmethod
    async def set_by_id(self, collection: str, doc_id: str, document: Document) -> None:
        """Upsert ``document`` replacing any previous content."""

    @abstractmethod
    async def update_fields(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> None:
        """Merge ``fields`` into an existing document."""

    @abstractmethod
    async def delete_by_id(self, collection: str, doc_id: str) -> None:
        """Remove a document; deleting a missing id is not an error."""

    @abstractmethod
    async def commit_atomic(self, operations: Sequence[WriteOperation]) -> None:
        """Apply every operation or none of them."""


def _apply_set(bucket: Dict[str, Document], doc_id: str, document: Mapping[str, Any]) -> None:
    previous = bucket.get(doc_id)
    stored = copy.deepcopy(dict(document))
    stored[VERSION_FIELD] = (previous.get(VERSION_FIELD, 0) if previous else 0) + 1
    bucket[doc_id] = stored


def _apply_update(
    collection: str,
    bucket: Dict[str, Document],
    doc_id: str,
    fields: Mapping[str, Any],
    expected_version: Optional[int],
) -> None:
    current = bucket.get(doc_id)
    if current is None:
        raise DocumentNotFoundError(f"Document not found: {collection}/{doc_id}")
    current_version = current.get(VERSION_FIELD, 0)
    if expected_version is not None and expected_version != current_version:
        raise ConcurrencyConflictError(
            f"Document {collection}/{doc_id} changed: expected version "
            f"{expected_version}, found {current_version}"
        )
    for key, value in fields.items():
        if key == VERSION_FIELD:
            continue
        current[key] = copy.deepcopy(value)
    current[VERSION_FIELD] = current_version + 1


class InMemoryLedgerStore(LedgerStore):
    """Dictionary-backed ledger store.

    Every document gets a ``version`` counter that the store increments on each
    write. Callers may pass ``expected_version`` to :meth:`update_fields` to
    detect concurrent modifications (optimistic concurrency). Documents are
    deep-copied on the way in and out so callers never alias store state.
    """

    def __init__(self, collections: Optional[Mapping[str, Iterable[Document]]] = None) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        for name, documents in (collections or {}).items():
            bucket = self._bucket(name)
            for document in documents:
                _apply_set(bucket, str(document["id"]), document)

    def _bucket(self, collection: str) -> Dict[str, Document]:
        return self._collections.setdefault(collection, {})

    def collection_names(self) -> List[str]:
        return list(self._collections)

    async def list_all(self, collection: str) -> List[Document]:
        return [copy.deepcopy(doc) for doc in self._bucket(collection).values()]

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        document = self._bucket(collection).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def set_by_id(self, collection: str, doc_id: str, document: Document) -> None:
        _apply_set(self._bucket(collection), doc_id, document)
        log.debug("Stored %s/%s", collection, doc_id)

    async def update_fields(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> None:
        _apply_update(collection, self._bucket(collection), doc_id, fields, expected_version)
        log.debug("Updated %s/%s fields: %s", collection, doc_id, ", ".join(fields))

    async def delete_by_id(self, collection: str, doc_id: str) -> None:
        self._bucket(collection).pop(doc_id, None)
        log.debug("Deleted %s/%s", collection, doc_id)

    async def commit_atomic(self, operations: Sequence[WriteOperation]) -> None:
        # Stage every write on a copy; the live collections are only swapped
        # in once all operations have applied cleanly.
        staged = copy.deepcopy(self._collections)
        for operation in operations:
            bucket = staged.setdefault(operation.collection, {})
            if operation.op == "set":
                _apply_set(bucket, operation.doc_id, operation.data or {})
            elif operation.op == "update":
                _apply_update(
                    operation.collection,
                    bucket,
                    operation.doc_id,
                    operation.data or {},
                    operation.expected_version,
                )
            else:
                bucket.pop(operation.doc_id, None)
        self._collections = staged
        log.debug("Committed %d operations atomically", len(operations))


# ---------------------------------------------------------------------------
# Workbook backend
# ---------------------------------------------------------------------------


# Column layout of every collection sheet. Document keys that are not listed
# survive in the trailing ``extra`` column as JSON.
COLLECTION_COLUMNS: Mapping[str, Sequence[str]] = {
    CollectionName.BATCHES.value: [
        "id", "supplier", "received_date", "total_weight", "total_purchase_value",
        "freight", "extra_costs", "real_cost_per_kg", "payment_terms",
        "down_payment", "installment_days", "status",
    ],
    CollectionName.STOCK_ITEMS.value: [
        "id", "batch_id", "sequence", "side_type", "entry_weight",
        "exit_weight", "entry_date", "status",
    ],
    CollectionName.SALES.value: [
        "id", "client_id", "client_name", "stock_item_ids", "exit_weight",
        "price_per_kg", "sale_date", "due_date", "term_days", "payment_method",
        "amount_paid", "payment_status", "weight_loss_kg", "cost_of_goods",
        "extra_costs_allocated", "net_profit",
    ],
    CollectionName.TRANSACTIONS.value: [
        "id", "date", "description", "direction", "category", "amount",
        "payment_method", "reference_id",
    ],
    CollectionName.PAYABLES.value: [
        "id", "description", "amount", "amount_paid", "due_date",
        "payment_date", "status", "category", "batch_id", "supplier_id", "notes",
    ],
    CollectionName.CLIENTS.value: [
        "id", "name", "credit_limit", "is_active",
    ],
    CollectionName.AUDIT_LOGS.value: [
        "id", "timestamp", "actor", "action", "entity", "details", "metadata",
    ],
}

_JSON_COLUMNS = frozenset({"stock_item_ids", "metadata", EXTRA_COLUMN})


def sheet_header(collection: str) -> List[str]:
    """Return the full header row for ``collection``."""

    return [*COLLECTION_COLUMNS[collection], VERSION_FIELD, EXTRA_COLUMN]


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def _cell_to_value(column: str, raw: Any) -> Any:
    if raw is None or raw == "":
        return None
    if column in _JSON_COLUMNS and isinstance(raw, str):
        return json.loads(raw)
    if isinstance(raw, float):
        return Decimal(str(raw))
    return raw


def _value_to_cell(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return json.dumps(value, default=str, ensure_ascii=False)
    if isinstance(value, Enum):
        return value.value
    return value


def iter_sheet_documents(workbook: Workbook, collection: str) -> Iterable[Document]:
    """Stream the documents stored on a collection sheet.

    Header and fully empty rows are skipped. Columns absent from the sheet
    header are ignored and the ``extra`` column is merged back into the
    document.
    """

    sheet = workbook[collection]
    header = [cell.value for cell in sheet[1]]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if not any(cell is not None for cell in raw):
            continue
        document: Document = {}
        for column, cell in zip(header, raw):
            if column is None:
                continue
            value = _cell_to_value(column, cell)
            if column == EXTRA_COLUMN:
                document.update(value or {})
            elif value is not None:
                document[column] = value
        yield document


def write_sheet_documents(workbook: Workbook, collection: str, documents: Iterable[Document]) -> None:
    """Replace the rows of a collection sheet with ``documents``."""

    if collection in workbook.sheetnames:
        sheet = workbook[collection]
        if sheet.max_row > 1:
            sheet.delete_rows(2, sheet.max_row - 1)
    else:
        sheet = workbook.create_sheet(title=collection)
        sheet.append(sheet_header(collection))

    header = [cell.value for cell in sheet[1]]
    if EXTRA_COLUMN not in header:
        # Legacy sheets: keep unknown keys instead of dropping them.
        sheet.cell(row=1, column=len(header) + 1, value=EXTRA_COLUMN)
        header.append(EXTRA_COLUMN)
    known = set(header)
    for document in documents:
        extra = {key: value for key, value in document.items() if key not in known}
        row = []
        for column in header:
            if column == EXTRA_COLUMN:
                row.append(_value_to_cell(column, extra) if extra else None)
            else:
                row.append(_value_to_cell(column, document.get(column)))
        sheet.append(row)


class WorkbookLedgerStore(InMemoryLedgerStore):
    """Ledger store persisted to the master workbook.

    The workbook is read once into memory on construction; :meth:`flush`
    writes every collection back into the workbook object, and the caller
    saves it with :func:`save_workbook` (see ``core_logic.persist_context``).
    """

    def __init__(self, workbook: Workbook) -> None:
        super().__init__()
        self.workbook = workbook
        for collection in COLLECTION_COLUMNS:
            if collection not in workbook.sheetnames:
                continue
            bucket = self._bucket(collection)
            for document in iter_sheet_documents(workbook, collection):
                doc_id = normalize_document(collection, document).get("id")
                if doc_id is None:
                    log.warning("Skipping row without id on sheet '%s'", collection)
                    continue
                # Keep the persisted version counter and legacy keys as-is.
                bucket[str(doc_id)] = document
            log.debug("Loaded %d documents from sheet '%s'", len(bucket), collection)

    def flush(self) -> None:
        """Write the in-memory collections back into the workbook."""

        for collection in COLLECTION_COLUMNS:
            documents = self._bucket(collection).values()
            write_sheet_documents(self.workbook, collection, documents)


# ---------------------------------------------------------------------------
# Entity records
# ---------------------------------------------------------------------------


# Original Portuguese field names mapped onto the current document keys.
LEGACY_FIELD_ALIASES: Mapping[str, Mapping[str, str]] = {
    CollectionName.BATCHES.value: {
        "id_lote": "id",
        "fornecedor": "supplier",
        "data_recebimento": "received_date",
        "peso_total_romaneio": "total_weight",
        "valor_compra_total": "total_purchase_value",
        "frete": "freight",
        "gastos_extras": "extra_costs",
        "custo_real_kg": "real_cost_per_kg",
        "forma_pagamento": "payment_terms",
        "valor_entrada": "down_payment",
        "prazo_dias": "installment_days",
    },
    CollectionName.STOCK_ITEMS.value: {
        "id_completo": "id",
        "id_lote": "batch_id",
        "sequencia": "sequence",
        "tipo": "side_type",
        "peso_entrada": "entry_weight",
        "peso_saida": "exit_weight",
        "data_entrada": "entry_date",
    },
    CollectionName.SALES.value: {
        "id_venda": "id",
        "id_cliente": "client_id",
        "nome_cliente": "client_name",
        "stock_ids_originais": "stock_item_ids",
        "peso_real_saida": "exit_weight",
        "preco_venda_kg": "price_per_kg",
        "data_venda": "sale_date",
        "data_vencimento": "due_date",
        "prazo_dias": "term_days",
        "forma_pagamento": "payment_method",
        "valor_pago": "amount_paid",
        "status_pagamento": "payment_status",
        "quebra_kg": "weight_loss_kg",
        "custo_extras_total": "extra_costs_allocated",
    },
    CollectionName.TRANSACTIONS.value: {
        "data": "date",
        "descricao": "description",
        "tipo": "direction",
        "categoria": "category",
        "valor": "amount",
        "metodo_pagamento": "payment_method",
        "referencia_id": "reference_id",
    },
    CollectionName.PAYABLES.value: {
        "descricao": "description",
        "valor": "amount",
        "valor_pago": "amount_paid",
        "data_vencimento": "due_date",
        "data_pagamento": "payment_date",
        "categoria": "category",
        "id_lote": "batch_id",
        "fornecedor_id": "supplier_id",
        "observacoes": "notes",
    },
    CollectionName.CLIENTS.value: {
        "id_ferro": "id",
        "nome_social": "name",
        "limite_credito": "credit_limit",
    },
}

# Original Portuguese enum values mapped onto the current ones.
LEGACY_VALUE_ALIASES: Mapping[str, str] = {
    "ABERTO": "OPEN",
    "FECHADO": "CLOSED",
    "ESTORNADO": "REVERSED",
    "DISPONIVEL": "AVAILABLE",
    "VENDIDO": "SOLD",
    "PENDENTE": "PENDING",
    "ATRASADO": "PENDING",
    "PARCIAL": "PARTIAL",
    "PAGO": "PAID",
    "CANCELADO": "CANCELLED",
    "VISTA": "CASH",
    "PRAZO": "INSTALLMENT",
    "INTEIRO": "WHOLE",
    "BANDA_A": "SIDE_A",
    "BANDA_B": "SIDE_B",
    "1": "WHOLE",
    "2": "SIDE_A",
    "3": "SIDE_B",
    "ENTRADA": "IN",
    "SAIDA": "OUT",
    "VENDA": "SALE",
    "COMPRA_GADO": "PURCHASE",
    "DESCONTO": "DISCOUNT",
    "ESTORNO": "REVERSAL",
    "OPERACIONAL": "OPERATIONAL",
    "ADMINISTRATIVO": "ADMINISTRATIVE",
    "ESTRUTURA": "STRUCTURE",
    "FUNCIONARIOS": "STAFF",
    "INSUMOS": "SUPPLIES",
    "MANUTENCAO": "MAINTENANCE",
    "IMPOSTOS": "TAXES",
    "OUTROS": "OTHER",
    "DINHEIRO": "CASH",
    "CHEQUE": "CHECK",
    "BOLETO": "BANK_SLIP",
    "TRANSFERENCIA": "TRANSFER",
}


def to_decimal(raw: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Coerce a loosely typed numeric value into a ``Decimal``.

    Unparseable values (``None``, empty strings, garbage text) fall back to
    ``default``. Comma decimal separators are accepted.
    """

    if raw is None or isinstance(raw, bool):
        return default
    if isinstance(raw, Decimal):
        return raw
    text = str(raw).strip().replace(",", ".")
    if not text:
        return default
    try:
        value = Decimal(text)
    except InvalidOperation:
        return default
    return value if value.is_finite() else default


def _to_int(raw: Any, default: int = 0) -> int:
    try:
        return int(to_decimal(raw, Decimal(default)))
    except (ValueError, OverflowError):
        return default


def _to_optional_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text else None


def coerce_enum(enum_type: Type[EnumT], raw: Any, default: EnumT) -> EnumT:
    """Resolve a raw value (current or legacy spelling) into ``enum_type``."""

    if isinstance(raw, enum_type):
        return raw
    if isinstance(raw, Enum):
        raw = raw.value
    if raw is None:
        return default
    text = str(raw).strip().upper()
    text = LEGACY_VALUE_ALIASES.get(text, text)
    try:
        return enum_type(text)
    except ValueError:
        return default


def normalize_document(collection: str, raw: Mapping[str, Any]) -> Document:
    """Rename legacy keys to the current schema without overwriting new ones."""

    aliases = LEGACY_FIELD_ALIASES.get(collection, {})
    document: Document = {}
    for key, value in raw.items():
        target = aliases.get(key)
        if target is None:
            document[key] = value
        elif target not in raw:
            document[target] = value
    return document


@dataclass(frozen=True)
class BatchRow:
    """In-memory view of a cattle purchase batch."""

    batch_id: str
    supplier: str
    received_date: str
    total_weight: Decimal
    total_purchase_value: Decimal
    freight: Decimal
    extra_costs: Decimal
    real_cost_per_kg: Decimal
    payment_terms: PaymentTerms
    down_payment: Decimal
    installment_days: int
    status: BatchStatus
    version: int = 0

    @property
    def total_cost(self) -> Decimal:
        return self.total_purchase_value + self.freight + self.extra_costs


@dataclass(frozen=True)
class StockItemRow:
    """In-memory view of one carcass or half-carcass in stock."""

    item_id: str
    batch_id: str
    sequence: int
    side_type: SideType
    entry_weight: Decimal
    exit_weight: Optional[Decimal]
    entry_date: str
    status: StockStatus
    version: int = 0


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a sale and its receivable state."""

    sale_id: str
    client_id: str
    client_name: str
    stock_item_ids: tuple[str, ...]
    exit_weight: Decimal
    price_per_kg: Decimal
    sale_date: str
    due_date: str
    term_days: int
    payment_method: PaymentMethod
    amount_paid: Decimal
    payment_status: SaleStatus
    weight_loss_kg: Decimal
    cost_of_goods: Decimal
    extra_costs_allocated: Decimal
    net_profit: Decimal
    version: int = 0

    @property
    def revenue(self) -> Decimal:
        return self.exit_weight * self.price_per_kg

    @property
    def balance(self) -> Decimal:
        return self.revenue - self.amount_paid


@dataclass(frozen=True)
class PayableRow:
    """In-memory view of an account payable."""

    payable_id: str
    description: str
    amount: Decimal
    amount_paid: Decimal
    due_date: str
    payment_date: Optional[str]
    status: PayableStatus
    category: TransactionCategory
    batch_id: Optional[str]
    supplier_id: Optional[str]
    notes: Optional[str]
    version: int = 0

    @property
    def balance(self) -> Decimal:
        return self.amount - self.amount_paid


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of an immutable ledger entry."""

    transaction_id: str
    date: str
    description: str
    direction: Direction
    category: TransactionCategory
    amount: Decimal
    payment_method: Optional[PaymentMethod]
    reference_id: Optional[str]
    version: int = 0

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction is Direction.IN else -self.amount


@dataclass(frozen=True)
class ClientRow:
    """In-memory view of a client."""

    client_id: str
    name: str
    credit_limit: Decimal
    is_active: bool
    version: int = 0


@dataclass(frozen=True)
class AuditEntryRow:
    """In-memory view of an audit trail entry."""

    entry_id: str
    timestamp: str
    actor: str
    action: AuditAction
    entity: AuditEntity
    details: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def serialize_batch(record: BatchRow) -> Document:
    """Convert a batch dataclass into a store document."""

    return {
        "id": record.batch_id,
        "supplier": record.supplier,
        "received_date": record.received_date,
        "total_weight": record.total_weight,
        "total_purchase_value": record.total_purchase_value,
        "freight": record.freight,
        "extra_costs": record.extra_costs,
        "real_cost_per_kg": record.real_cost_per_kg,
        "payment_terms": record.payment_terms.value,
        "down_payment": record.down_payment,
        "installment_days": record.installment_days,
        "status": record.status.value,
    }


def deserialize_batch(raw: Mapping[str, Any]) -> BatchRow:
    """Convert a raw batch document into a typed record.

    Numeric fields are coerced with :func:`to_decimal`; a missing
    ``real_cost_per_kg`` is derived from the total cost and weight.
    """

    doc = normalize_document(CollectionName.BATCHES.value, raw)
    total_weight = to_decimal(doc.get("total_weight"))
    purchase = to_decimal(doc.get("total_purchase_value"))
    freight = to_decimal(doc.get("freight"))
    extras = to_decimal(doc.get("extra_costs"))
    real_cost = to_decimal(doc.get("real_cost_per_kg"))
    if real_cost == 0:
        real_cost = calculate_real_cost(purchase, freight, extras, total_weight)
    return BatchRow(
        batch_id=str(doc["id"]),
        supplier=str(doc.get("supplier") or ""),
        received_date=str(doc.get("received_date") or ""),
        total_weight=total_weight,
        total_purchase_value=purchase,
        freight=freight,
        extra_costs=extras,
        real_cost_per_kg=real_cost,
        payment_terms=coerce_enum(PaymentTerms, doc.get("payment_terms"), PaymentTerms.CASH),
        down_payment=to_decimal(doc.get("down_payment")),
        installment_days=_to_int(doc.get("installment_days"), DEFAULT_INSTALLMENT_DAYS),
        status=coerce_enum(BatchStatus, doc.get("status"), BatchStatus.OPEN),
        version=_to_int(doc.get(VERSION_FIELD)),
    )


def calculate_real_cost(purchase: Decimal, freight: Decimal, extras: Decimal, total_weight: Decimal) -> Decimal:
    """Return the landed cost per kilogram, or zero when no weight is known."""

    if total_weight == 0:
        return Decimal("0")
    return (purchase + freight + extras) / total_weight


def serialize_stock_item(record: StockItemRow) -> Document:
    """Convert a stock item dataclass into a store document."""

    return {
        "id": record.item_id,
        "batch_id": record.batch_id,
        "sequence": record.sequence,
        "side_type": record.side_type.value,
        "entry_weight": record.entry_weight,
        "exit_weight": record.exit_weight,
        "entry_date": record.entry_date,
        "status": record.status.value,
    }


def deserialize_stock_item(raw: Mapping[str, Any]) -> StockItemRow:
    """Convert a raw stock document into a typed record."""

    doc = normalize_document(CollectionName.STOCK_ITEMS.value, raw)
    exit_raw = doc.get("exit_weight")
    return StockItemRow(
        item_id=str(doc["id"]),
        batch_id=str(doc.get("batch_id") or ""),
        sequence=_to_int(doc.get("sequence")),
        side_type=coerce_enum(SideType, doc.get("side_type"), SideType.WHOLE),
        entry_weight=to_decimal(doc.get("entry_weight")),
        exit_weight=to_decimal(exit_raw) if exit_raw is not None else None,
        entry_date=str(doc.get("entry_date") or ""),
        status=coerce_enum(StockStatus, doc.get("status"), StockStatus.AVAILABLE),
        version=_to_int(doc.get(VERSION_FIELD)),
    )


def serialize_sale(record: SaleRow) -> Document:
    """Convert a sale dataclass into a store document."""

    return {
        "id": record.sale_id,
        "client_id": record.client_id,
        "client_name": record.client_name,
        "stock_item_ids": list(record.stock_item_ids),
        "exit_weight": record.exit_weight,
        "price_per_kg": record.price_per_kg,
        "sale_date": record.sale_date,
        "due_date": record.due_date,
        "term_days": record.term_days,
        "payment_method": record.payment_method.value,
        "amount_paid": record.amount_paid,
        "payment_status": record.payment_status.value,
        "weight_loss_kg": record.weight_loss_kg,
        "cost_of_goods": record.cost_of_goods,
        "extra_costs_allocated": record.extra_costs_allocated,
        "net_profit": record.net_profit,
    }


def deserialize_sale(raw: Mapping[str, Any]) -> SaleRow:
    """Convert a raw sale document into a typed record.

    Legacy sales predate grouped sales: when ``stock_item_ids`` is absent the
    single ``id_completo`` becomes the only referenced item, and the per-kg
    ``lucro_liquido_unitario`` is expanded into ``net_profit``.
    """

    doc = normalize_document(CollectionName.SALES.value, raw)
    item_ids = doc.get("stock_item_ids")
    if not item_ids:
        legacy_item = doc.get("id_completo")
        item_ids = [legacy_item] if legacy_item else []
    exit_weight = to_decimal(doc.get("exit_weight"))
    if "net_profit" in doc:
        net_profit = to_decimal(doc.get("net_profit"))
    else:
        net_profit = to_decimal(doc.get("lucro_liquido_unitario")) * exit_weight
    return SaleRow(
        sale_id=str(doc["id"]),
        client_id=str(doc.get("client_id") or ""),
        client_name=str(doc.get("client_name") or ""),
        stock_item_ids=tuple(str(item_id) for item_id in item_ids),
        exit_weight=exit_weight,
        price_per_kg=to_decimal(doc.get("price_per_kg")),
        sale_date=str(doc.get("sale_date") or ""),
        due_date=str(doc.get("due_date") or ""),
        term_days=_to_int(doc.get("term_days"), DEFAULT_SALE_TERM_DAYS),
        payment_method=coerce_enum(PaymentMethod, doc.get("payment_method"), PaymentMethod.OTHER),
        amount_paid=to_decimal(doc.get("amount_paid")),
        payment_status=coerce_enum(SaleStatus, doc.get("payment_status"), SaleStatus.PENDING),
        weight_loss_kg=to_decimal(doc.get("weight_loss_kg")),
        cost_of_goods=to_decimal(doc.get("cost_of_goods")),
        extra_costs_allocated=to_decimal(doc.get("extra_costs_allocated")),
        net_profit=net_profit,
        version=_to_int(doc.get(VERSION_FIELD)),
    )


def serialize_payable(record: PayableRow) -> Document:
    """Convert a payable dataclass into a store document."""

    return {
        "id": record.payable_id,
        "description": record.description,
        "amount": record.amount,
        "amount_paid": record.amount_paid,
        "due_date": record.due_date,
        "payment_date": record.payment_date,
        "status": record.status.value,
        "category": record.category.value,
        "batch_id": record.batch_id,
        "supplier_id": record.supplier_id,
        "notes": record.notes,
    }


def deserialize_payable(raw: Mapping[str, Any]) -> PayableRow:
    """Convert a raw payable document into a typed record."""

    doc = normalize_document(CollectionName.PAYABLES.value, raw)
    return PayableRow(
        payable_id=str(doc["id"]),
        description=str(doc.get("description") or ""),
        amount=to_decimal(doc.get("amount")),
        amount_paid=to_decimal(doc.get("amount_paid")),
        due_date=str(doc.get("due_date") or ""),
        payment_date=_to_optional_str(doc.get("payment_date")),
        status=coerce_enum(PayableStatus, doc.get("status"), PayableStatus.PENDING),
        category=coerce_enum(TransactionCategory, doc.get("category"), TransactionCategory.OTHER),
        batch_id=_to_optional_str(doc.get("batch_id")),
        supplier_id=_to_optional_str(doc.get("supplier_id")),
        notes=_to_optional_str(doc.get("notes")),
        version=_to_int(doc.get(VERSION_FIELD)),
    )


def serialize_transaction(record: TransactionRow) -> Document:
    """Convert a transaction dataclass into a store document."""

    return {
        "id": record.transaction_id,
        "date": record.date,
        "description": record.description,
        "direction": record.direction.value,
        "category": record.category.value,
        "amount": record.amount,
        "payment_method": record.payment_method.value if record.payment_method else None,
        "reference_id": record.reference_id,
    }


def deserialize_transaction(raw: Mapping[str, Any]) -> TransactionRow:
    """Convert a raw transaction document into a typed record."""

    doc = normalize_document(CollectionName.TRANSACTIONS.value, raw)
    method_raw = doc.get("payment_method")
    return TransactionRow(
        transaction_id=str(doc["id"]),
        date=str(doc.get("date") or ""),
        description=str(doc.get("description") or ""),
        direction=coerce_enum(Direction, doc.get("direction"), Direction.OUT),
        category=coerce_enum(TransactionCategory, doc.get("category"), TransactionCategory.OTHER),
        amount=to_decimal(doc.get("amount")),
        payment_method=(coerce_enum(PaymentMethod, method_raw, PaymentMethod.OTHER)
                        if method_raw else None),
        reference_id=_to_optional_str(doc.get("reference_id")),
        version=_to_int(doc.get(VERSION_FIELD)),
    )


def serialize_client(record: ClientRow) -> Document:
    return {
        "id": record.client_id,
        "name": record.name,
        "credit_limit": record.credit_limit,
        "is_active": record.is_active,
    }


def deserialize_client(raw: Mapping[str, Any]) -> ClientRow:
    doc = normalize_document(CollectionName.CLIENTS.value, raw)
    if "is_active" in doc:
        is_active = bool(doc["is_active"])
    else:
        is_active = str(doc.get("status") or "ATIVO").upper() != "INATIVO"
    return ClientRow(
        client_id=str(doc["id"]),
        name=str(doc.get("name") or ""),
        credit_limit=to_decimal(doc.get("credit_limit")),
        is_active=is_active,
        version=_to_int(doc.get(VERSION_FIELD)),
    )


def serialize_audit_entry(record: AuditEntryRow) -> Document:
    return {
        "id": record.entry_id,
        "timestamp": record.timestamp,
        "actor": record.actor,
        "action": record.action.value,
        "entity": record.entity.value,
        "details": record.details,
        "metadata": record.metadata,
    }


def deserialize_audit_entry(raw: Mapping[str, Any]) -> AuditEntryRow:
    return AuditEntryRow(
        entry_id=str(raw["id"]),
        timestamp=str(raw.get("timestamp") or ""),
        actor=str(raw.get("actor") or ""),
        action=coerce_enum(AuditAction, raw.get("action"), AuditAction.OTHER),
        entity=coerce_enum(AuditEntity, raw.get("entity"), AuditEntity.OTHER),
        details=str(raw.get("details") or ""),
        metadata=dict(raw.get("metadata") or {}),
    )
