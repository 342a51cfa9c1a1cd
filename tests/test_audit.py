"""Tests for the audit trail sinks."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from frigo_erp import data_manager
from frigo_erp.audit import NullAuditSink, StoreAuditSink, list_audit_entries
from frigo_erp.constants import AuditAction, AuditEntity


@pytest.mark.asyncio
async def test_store_audit_sink_appends_entry(store):
    sink = StoreAuditSink(store)

    await sink.record(
        "operator",
        AuditAction.ESTORNO,
        AuditEntity.SALE,
        "Reversed sale V-1",
        {"amount_paid": Decimal("12.50"), "stock_items": 2},
    )

    (raw,) = await store.list_all("audit_logs")
    entry = data_manager.deserialize_audit_entry(raw)
    assert entry.entry_id.startswith("AUD-")
    assert entry.actor == "operator"
    assert entry.action is AuditAction.ESTORNO
    assert entry.entity is AuditEntity.SALE
    assert entry.metadata == {"amount_paid": "12.50", "stock_items": 2}


@pytest.mark.asyncio
async def test_store_audit_sink_never_raises():
    """A failing store only produces a warning."""

    failing_store = Mock(spec=data_manager.LedgerStore)
    failing_store.set_by_id = AsyncMock(side_effect=data_manager.StoreError("read-only"))
    sink = StoreAuditSink(failing_store)

    await sink.record("operator", AuditAction.CREATE, AuditEntity.BATCH, "Closed batch L-001")

    failing_store.set_by_id.assert_awaited_once()


@pytest.mark.asyncio
async def test_null_audit_sink_discards_entries(store):
    await NullAuditSink().record("operator", AuditAction.OTHER, AuditEntity.SYSTEM, "noop")
    assert await store.list_all("audit_logs") == []


@pytest.mark.asyncio
async def test_list_audit_entries_newest_first():
    store = data_manager.InMemoryLedgerStore({
        "audit_logs": [
            {"id": "AUD-1", "timestamp": "2026-01-01T10:00:00+00:00", "action": "CREATE", "entity": "BATCH"},
            {"id": "AUD-3", "timestamp": "2026-01-03T10:00:00+00:00", "action": "ESTORNO", "entity": "SALE"},
            {"id": "AUD-2", "timestamp": "2026-01-02T10:00:00+00:00", "action": "UPDATE", "entity": "CLIENT"},
        ]
    })

    entries = await list_audit_entries(store)
    assert [entry.entry_id for entry in entries] == ["AUD-3", "AUD-2", "AUD-1"]

    latest = await list_audit_entries(store, limit=1)
    assert [entry.entry_id for entry in latest] == ["AUD-3"]
