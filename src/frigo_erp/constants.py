"""Enumerations shared across the FrigoGest ERP modules.

Centralises domain constants so that the data access layer (DAL), the
reconciliation engine, and the CLI rely on a single source of truth for
statuses, categories, collection names, and deterministic id prefixes.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# Tolerance used when comparing money amounts (centavo dust).
MONEY_EPSILON = Decimal("0.01")

DEFAULT_INSTALLMENT_DAYS = 30
DEFAULT_SALE_TERM_DAYS = 30


class BatchStatus(str, Enum):
    """Lifecycle states of a cattle purchase batch."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    REVERSED = "REVERSED"


class PaymentTerms(str, Enum):
    """How a batch purchase is settled with the supplier."""

    CASH = "CASH"
    INSTALLMENT = "INSTALLMENT"


class SideType(str, Enum):
    """Physical shape of a stock unit."""

    WHOLE = "WHOLE"
    SIDE_A = "SIDE_A"
    SIDE_B = "SIDE_B"


class StockStatus(str, Enum):
    """Availability of a stock unit."""

    AVAILABLE = "AVAILABLE"
    SOLD = "SOLD"
    REVERSED = "REVERSED"


class SaleStatus(str, Enum):
    """Receivable state of a sale."""

    PENDING = "PENDING"
    PAID = "PAID"
    REVERSED = "REVERSED"


class PayableStatus(str, Enum):
    """Settlement state of an account payable."""

    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    REVERSED = "REVERSED"


class Direction(str, Enum):
    """Cash direction of a ledger transaction."""

    IN = "IN"
    OUT = "OUT"

    def inverted(self) -> "Direction":
        return Direction.OUT if self is Direction.IN else Direction.IN


class TransactionCategory(str, Enum):
    """Enumerate the ledger categories used for transactions and payables."""

    PURCHASE = "PURCHASE"
    SALE = "SALE"
    DISCOUNT = "DISCOUNT"
    REVERSAL = "REVERSAL"
    OPERATIONAL = "OPERATIONAL"
    ADMINISTRATIVE = "ADMINISTRATIVE"
    STRUCTURE = "STRUCTURE"
    STAFF = "STAFF"
    SUPPLIES = "SUPPLIES"
    MAINTENANCE = "MAINTENANCE"
    TAXES = "TAXES"
    OTHER = "OTHER"


class PaymentMethod(str, Enum):
    """Enumerate the supported money movement methods."""

    CASH = "CASH"
    PIX = "PIX"
    CHECK = "CHECK"
    BANK_SLIP = "BANK_SLIP"
    TRANSFER = "TRANSFER"
    OTHER = "OTHER"


class AuditAction(str, Enum):
    """Kinds of actions recorded in the audit trail."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ESTORNO = "ESTORNO"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    OTHER = "OTHER"


class AuditEntity(str, Enum):
    """Kinds of entities referenced by audit entries."""

    CLIENT = "CLIENT"
    BATCH = "BATCH"
    STOCK = "STOCK"
    SALE = "SALE"
    TRANSACTION = "TRANSACTION"
    ORDER = "ORDER"
    SYSTEM = "SYSTEM"
    OTHER = "OTHER"


class CollectionName(str, Enum):
    """Enumerate the document collections managed by the DAL."""

    BATCHES = "batches"
    STOCK_ITEMS = "stock_items"
    SALES = "sales"
    TRANSACTIONS = "transactions"
    PAYABLES = "payables"
    CLIENTS = "clients"
    AUDIT_LOGS = "audit_logs"


class IdPrefix(str, Enum):
    """Deterministic id prefixes that make postings idempotent or traceable."""

    BATCH_PURCHASE = "TR-LOTE-"
    BATCH_DOWN_PAYMENT = "TR-LOTE-ENTRADA-"
    BATCH_PAYABLE = "PAY-LOTE-"
    SALE_RECEIPT = "TR-REC-"
    SALE_DISCOUNT = "TR-DESC-"
    SALE_PARTIAL = "TR-PARC-"
    PAYABLE_PAYMENT = "TR-PAY-"
    REVERSAL = "EST-"


# Ledger entries created through a Sale or Payable workflow. These can only be
# undone through their owning entity.
OWNED_TRANSACTION_PREFIXES: tuple[str, ...] = (
    IdPrefix.SALE_RECEIPT.value,
    IdPrefix.SALE_DISCOUNT.value,
    IdPrefix.SALE_PARTIAL.value,
    IdPrefix.PAYABLE_PAYMENT.value,
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_EPSILON",
    "DEFAULT_INSTALLMENT_DAYS",
    "DEFAULT_SALE_TERM_DAYS",
    "BatchStatus",
    "PaymentTerms",
    "SideType",
    "StockStatus",
    "SaleStatus",
    "PayableStatus",
    "Direction",
    "TransactionCategory",
    "PaymentMethod",
    "AuditAction",
    "AuditEntity",
    "CollectionName",
    "IdPrefix",
    "OWNED_TRANSACTION_PREFIXES",
]
