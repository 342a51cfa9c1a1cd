"""Shared pytest fixtures and utilities for FrigoGest ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Sequence
from unittest.mock import AsyncMock, Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from frigo_erp import cli, constants, core_logic, data_manager  # noqa: E402
from frigo_erp.audit import AuditSink  # noqa: E402
from frigo_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_ACTOR = "operator"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "Actor = {actor}\n"
    "InstallmentDays = 30\n"
    "SaleTermDays = 30\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    actor: str
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Frigorifico Teste",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        actor: str = DEFAULT_ACTOR,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                actor=actor,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            actor=actor,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="frigo-cli", description="FrigoGest CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            AsyncMock(return_value=0),
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        business_name="Frigorifico Teste",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_actor=DEFAULT_ACTOR,
    )


@pytest.fixture
def store() -> data_manager.InMemoryLedgerStore:
    """Return an empty in-memory ledger store."""

    return data_manager.InMemoryLedgerStore()


@pytest.fixture
def audit_sink() -> Mock:
    """Return an audit sink whose ``record`` coroutine can be inspected."""

    sink = Mock(spec=AuditSink)
    sink.record = AsyncMock(return_value=None)
    return sink


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    store: data_manager.InMemoryLedgerStore,
    audit_sink: Mock,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=store, audit=audit_sink, actor=DEFAULT_ACTOR)


@pytest.fixture
def context_factory(settings: data_manager.ConfigSettings, audit_sink: Mock) -> Callable[..., core_logic.RuntimeContext]:
    """Build a context around a store pre-seeded with raw documents."""

    def _create(**collections: Sequence[Dict[str, Any]]) -> core_logic.RuntimeContext:
        seeded = data_manager.InMemoryLedgerStore(collections)
        return core_logic.RuntimeContext(settings=settings, store=seeded, audit=audit_sink, actor=DEFAULT_ACTOR)

    return _create


@pytest.fixture
def installment_batch() -> core_logic.BatchCommand:
    """Batch L-001: 10000 purchase + 200 freight over 500 kg, 2000 down, 30 days."""

    return core_logic.BatchCommand(
        batch_id="L-001",
        supplier="Fazenda Boa Vista",
        received_date="2026-01-10",
        total_weight="500",
        total_purchase_value="10000",
        freight="200",
        extra_costs="0",
        payment_terms=constants.PaymentTerms.INSTALLMENT,
        down_payment="2000",
        installment_days=30,
        items=(
            core_logic.StockEntry(1, constants.SideType.SIDE_A, Decimal("130")),
            core_logic.StockEntry(1, constants.SideType.SIDE_B, Decimal("128")),
            core_logic.StockEntry(2, constants.SideType.WHOLE, Decimal("242")),
        ),
    )


@pytest.fixture
def cash_batch() -> core_logic.BatchCommand:
    """Batch L-002 paid in cash: 5000 + 100 freight + 50 extras over 250 kg."""

    return core_logic.BatchCommand(
        batch_id="L-002",
        supplier="Sitio Novo",
        received_date="2026-02-01",
        total_weight="250",
        total_purchase_value="5000",
        freight="100",
        extra_costs="50",
        items=(core_logic.StockEntry(1, constants.SideType.WHOLE, Decimal("250")),),
    )


def make_sale_document(
    sale_id: str,
    *,
    client_id: str = "C-1",
    sale_date: str = "2026-01-01",
    exit_weight: str = "100",
    price_per_kg: str = "10",
    amount_paid: str = "0",
    status: str = "PENDING",
    stock_item_ids: Sequence[str] = (),
) -> Dict[str, Any]:
    """Build a raw sale document for seeding stores."""

    return {
        "id": sale_id,
        "client_id": client_id,
        "client_name": f"Client {client_id}",
        "stock_item_ids": list(stock_item_ids),
        "exit_weight": Decimal(exit_weight),
        "price_per_kg": Decimal(price_per_kg),
        "sale_date": sale_date,
        "due_date": sale_date,
        "term_days": 30,
        "payment_method": "CASH",
        "amount_paid": Decimal(amount_paid),
        "payment_status": status,
    }


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


@pytest.fixture
def sale_document() -> Callable[..., Dict[str, Any]]:
    """Expose :func:`make_sale_document` to tests."""

    return make_sale_document
