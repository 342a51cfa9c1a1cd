"""Audit trail sinks.

The reconciliation engine reports every user-visible action to an
:class:`AuditSink`. Recording is fire-and-forget: a sink never raises, so a
broken audit trail cannot undo or block the business operation that
triggered it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from . import data_manager, log
from .constants import AuditAction, AuditEntity, CollectionName


class AuditSink(ABC):
    """Destination for audit entries."""

    @abstractmethod
    async def record(
        self,
        actor: str,
        action: AuditAction,
        entity: AuditEntity,
        details: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Record one entry. Implementations must not raise."""


class NullAuditSink(AuditSink):
    """Sink that discards every entry."""

    async def record(self, actor, action, entity, details, metadata=None) -> None:
        log.debug("Audit entry discarded: %s %s by %s", action.value, entity.value, actor)


class StoreAuditSink(AuditSink):
    """Sink that appends entries to the ``audit_logs`` collection of a store."""

    def __init__(self, store: data_manager.LedgerStore) -> None:
        self.store = store

    async def record(
        self,
        actor: str,
        action: AuditAction,
        entity: AuditEntity,
        details: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        now = datetime.now(UTC)
        entry = data_manager.AuditEntryRow(
            entry_id=f"AUD-{now:%Y%m%d%H%M%S%f}-{uuid4().hex[:6]}",
            timestamp=now.isoformat(),
            actor=actor,
            action=action,
            entity=entity,
            details=details,
            metadata=_plain_metadata(metadata),
        )
        try:
            await self.store.set_by_id(
                CollectionName.AUDIT_LOGS.value,
                entry.entry_id,
                data_manager.serialize_audit_entry(entry),
            )
        except Exception as exc:  # noqa: BLE001 - audit failures never propagate
            log.warning("Failed to record audit entry '%s': %s", details, exc)
            return
        log.debug("Audit entry %s recorded: %s", entry.entry_id, details)


def _plain_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Convert metadata values into JSON-friendly scalars."""

    plain: Dict[str, Any] = {}
    for key, value in (metadata or {}).items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            plain[key] = value
        else:
            plain[key] = str(value)
    return plain


async def list_audit_entries(store: data_manager.LedgerStore, *, limit: Optional[int] = None) -> List[data_manager.AuditEntryRow]:
    """Return audit entries newest first, optionally truncated to ``limit``."""

    raw_entries = await store.list_all(CollectionName.AUDIT_LOGS.value)
    entries = [data_manager.deserialize_audit_entry(raw) for raw in raw_entries]
    entries.sort(key=lambda entry: entry.timestamp, reverse=True)
    return entries[:limit] if limit is not None else entries
