"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
import logging
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

import frigo_erp
from frigo_erp import constants, data_manager
from frigo_erp.setup_excel import create_master_workbook


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    isolated = tmp_path / "isolated"
    isolated.mkdir()
    monkeypatch.chdir(isolated)
    monkeypatch.setattr(data_manager, "CONFIG_FILE_NAME", "frigo-config-that-does-not-exist.ini")
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Frigorifico Teste"
    assert parser.get("Defaults", "Actor") == "operator"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_actor == "operator"
    assert settings.installment_days == 30
    assert settings.sale_term_days == 30


def test_parse_settings_uses_day_defaults_when_absent(tmp_path):
    """InstallmentDays and SaleTermDays are optional."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=data.xlsx\nBusinessName=X\nSchemaVersion=2.0.0\n"
        "[Defaults]\nActor=ana\nSaleTermDays=15\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.installment_days == constants.DEFAULT_INSTALLMENT_DAYS
    assert settings.sale_term_days == 15
    assert settings.log_level == "INFO"
    assert settings.data_file == (tmp_path / "data.xlsx").resolve()


def test_parse_settings_reads_log_level(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=data.xlsx\nBusinessName=X\nSchemaVersion=2.0.0\n"
        "[Defaults]\nActor=ana\nLogLevel= debug \n"
    )
    assert data_manager.parse_settings(parser, base_path=tmp_path).log_level == "DEBUG"


def test_set_log_level_updates_package_logger():
    previous = frigo_erp.log.level
    try:
        assert frigo_erp.set_log_level("warning") == logging.WARNING
        assert frigo_erp.log.level == logging.WARNING
        with pytest.raises(ValueError):
            frigo_erp.set_log_level("chatty")
    finally:
        frigo_erp.log.setLevel(previous)


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(workbook_factory):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(workbook_factory())
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


# ---------------------------------------------------------------------------
# In-memory ledger store
# ---------------------------------------------------------------------------


def test_write_operation_rejects_unknown_kind():
    with pytest.raises(ValueError):
        data_manager.WriteOperation("upsert", "sales", "V-1")


@pytest.mark.asyncio
async def test_set_by_id_increments_version(store):
    """Every write bumps the version counter of the document."""

    await store.set_by_id("clients", "C-1", {"id": "C-1", "name": "Ana"})
    await store.set_by_id("clients", "C-1", {"id": "C-1", "name": "Ana Maria"})

    document = await store.get_by_id("clients", "C-1")
    assert document == {"id": "C-1", "name": "Ana Maria", "version": 2}


@pytest.mark.asyncio
async def test_store_returns_copies(store):
    """Mutating a fetched document must not alter stored state."""

    await store.set_by_id("sales", "V-1", {"id": "V-1", "stock_item_ids": ["A"]})
    fetched = await store.get_by_id("sales", "V-1")
    fetched["stock_item_ids"].append("B")

    assert (await store.get_by_id("sales", "V-1"))["stock_item_ids"] == ["A"]
    assert await store.get_by_id("sales", "missing") is None
    assert await store.list_all("never_written") == []


@pytest.mark.asyncio
async def test_update_fields_merges_and_checks_version(store):
    await store.set_by_id("payables", "P-1", {"id": "P-1", "amount": Decimal("10"), "status": "PENDING"})

    await store.update_fields("payables", "P-1", {"status": "PAID", "version": 99}, expected_version=1)

    document = await store.get_by_id("payables", "P-1")
    assert document["status"] == "PAID"
    assert document["amount"] == Decimal("10")
    assert document["version"] == 2


@pytest.mark.asyncio
async def test_update_fields_rejects_stale_version(store):
    """A caller holding an outdated version gets a concurrency conflict."""

    await store.set_by_id("sales", "V-1", {"id": "V-1"})
    await store.update_fields("sales", "V-1", {"amount_paid": Decimal("5")})

    with pytest.raises(data_manager.ConcurrencyConflictError):
        await store.update_fields("sales", "V-1", {"amount_paid": Decimal("9")}, expected_version=1)
    assert (await store.get_by_id("sales", "V-1"))["amount_paid"] == Decimal("5")


@pytest.mark.asyncio
async def test_update_fields_missing_document_raises(store):
    with pytest.raises(data_manager.DocumentNotFoundError):
        await store.update_fields("sales", "nope", {"amount_paid": Decimal("1")})


@pytest.mark.asyncio
async def test_delete_by_id_ignores_missing_documents(store):
    await store.set_by_id("payables", "P-1", {"id": "P-1"})
    await store.delete_by_id("payables", "P-1")
    await store.delete_by_id("payables", "P-1")

    assert await store.list_all("payables") == []


@pytest.mark.asyncio
async def test_commit_atomic_applies_every_operation(store):
    await store.set_by_id("stock_items", "S-1", {"id": "S-1", "status": "AVAILABLE"})

    await store.commit_atomic([
        data_manager.WriteOperation("set", "sales", "V-1", {"id": "V-1"}),
        data_manager.WriteOperation("update", "stock_items", "S-1", {"status": "SOLD"}, expected_version=1),
    ])

    assert await store.get_by_id("sales", "V-1") == {"id": "V-1", "version": 1}
    assert (await store.get_by_id("stock_items", "S-1"))["status"] == "SOLD"


@pytest.mark.asyncio
async def test_commit_atomic_is_all_or_nothing(store):
    """A failing operation leaves every collection untouched."""

    await store.set_by_id("stock_items", "S-1", {"id": "S-1", "status": "AVAILABLE"})

    with pytest.raises(data_manager.DocumentNotFoundError):
        await store.commit_atomic([
            data_manager.WriteOperation("set", "sales", "V-1", {"id": "V-1"}),
            data_manager.WriteOperation("update", "stock_items", "S-1", {"status": "SOLD"}),
            data_manager.WriteOperation("update", "stock_items", "GHOST", {"status": "SOLD"}),
        ])

    assert await store.get_by_id("sales", "V-1") is None
    assert (await store.get_by_id("stock_items", "S-1"))["status"] == "AVAILABLE"


def test_seeded_store_lists_collection_names():
    seeded = data_manager.InMemoryLedgerStore({"clients": [{"id": "C-1"}], "sales": []})
    assert seeded.collection_names() == ["clients", "sales"]


# ---------------------------------------------------------------------------
# Workbook backend
# ---------------------------------------------------------------------------


def test_create_master_workbook_writes_every_sheet(tmp_path):
    """The initializer creates one bold-headed sheet per collection."""

    path = create_master_workbook(tmp_path / "wb.xlsx")
    workbook = openpyxl.load_workbook(path)

    assert set(workbook.sheetnames) == set(data_manager.COLLECTION_COLUMNS)
    header = [cell.value for cell in workbook["payables"][1]]
    assert header == data_manager.sheet_header("payables")
    assert header[-2:] == ["version", "extra"]
    assert workbook["payables"]["A1"].font.bold


def test_create_master_workbook_refuses_overwrite(tmp_path):
    path = create_master_workbook(tmp_path / "wb.xlsx")
    with pytest.raises(FileExistsError):
        create_master_workbook(path)


@pytest.mark.asyncio
async def test_workbook_store_loads_default_client(workbook_factory):
    store = data_manager.WorkbookLedgerStore(data_manager.open_workbook(workbook_factory()))

    client = data_manager.deserialize_client(await store.get_by_id("clients", "BALCAO"))
    assert client.name == "Counter sale"
    assert client.is_active is True
    assert client.version == 1


@pytest.mark.asyncio
async def test_workbook_store_round_trips_documents(workbook_factory, tmp_path):
    """Flushed documents survive a save and reload, extra keys included."""

    path = workbook_factory()
    store = data_manager.WorkbookLedgerStore(data_manager.open_workbook(path))
    await store.set_by_id(
        "sales",
        "V-1",
        {
            "id": "V-1",
            "client_id": "C-1",
            "stock_item_ids": ["L-001-001-SIDE_A", "L-001-001-SIDE_B"],
            "exit_weight": Decimal("248"),
            "price_per_kg": Decimal("38.5"),
            "payment_status": "PENDING",
            "legacy_note": "migrated",
        },
    )
    store.flush()
    data_manager.save_workbook(store.workbook, path)

    reloaded = data_manager.WorkbookLedgerStore(data_manager.open_workbook(path))
    document = await reloaded.get_by_id("sales", "V-1")

    assert document["stock_item_ids"] == ["L-001-001-SIDE_A", "L-001-001-SIDE_B"]
    assert document["legacy_note"] == "migrated"
    assert document["version"] == 1
    sale = data_manager.deserialize_sale(document)
    assert sale.price_per_kg == Decimal("38.5")
    assert sale.revenue == Decimal("9548")


@pytest.mark.asyncio
async def test_workbook_store_skips_rows_without_id(workbook_factory):
    path = workbook_factory()
    workbook = openpyxl.load_workbook(path)
    workbook["batches"].append([None, "Orphan supplier"])
    workbook.save(path)

    store = data_manager.WorkbookLedgerStore(data_manager.open_workbook(path))
    assert await store.list_all("batches") == []


# ---------------------------------------------------------------------------
# Normalization and entity records
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("12,5", Decimal("12.5")),
        (7, Decimal("7")),
        (None, Decimal("0")),
        ("", Decimal("0")),
        ("abc", Decimal("0")),
        ("NaN", Decimal("0")),
        (True, Decimal("0")),
    ],
)
def test_to_decimal_coerces_loose_input(raw, expected):
    assert data_manager.to_decimal(raw) == expected


def test_coerce_enum_understands_legacy_spellings():
    assert data_manager.coerce_enum(constants.StockStatus, "vendido", constants.StockStatus.AVAILABLE) is constants.StockStatus.SOLD
    assert data_manager.coerce_enum(constants.SideType, 2, constants.SideType.WHOLE) is constants.SideType.SIDE_A
    assert data_manager.coerce_enum(constants.SaleStatus, "ATRASADO", constants.SaleStatus.PAID) is constants.SaleStatus.PENDING
    assert data_manager.coerce_enum(constants.PaymentMethod, "???", constants.PaymentMethod.OTHER) is constants.PaymentMethod.OTHER
    assert (
        data_manager.coerce_enum(constants.PaymentMethod, constants.PaymentTerms.CASH, constants.PaymentMethod.OTHER)
        is constants.PaymentMethod.CASH
    )


def test_normalize_document_prefers_current_keys():
    document = data_manager.normalize_document("payables", {"valor": "1", "amount": "2", "observacoes": "x"})
    assert document == {"amount": "2", "notes": "x"}


def test_deserialize_legacy_batch_derives_real_cost():
    """Portuguese batch documents map onto the current record."""

    batch = data_manager.deserialize_batch({
        "id_lote": "L-9",
        "fornecedor": "Fazenda Velha",
        "peso_total_romaneio": "100",
        "valor_compra_total": "1000",
        "frete": "50",
        "status": "FECHADO",
        "forma_pagamento": "PRAZO",
    })

    assert batch.batch_id == "L-9"
    assert batch.supplier == "Fazenda Velha"
    assert batch.real_cost_per_kg == Decimal("10.5")
    assert batch.status is constants.BatchStatus.CLOSED
    assert batch.payment_terms is constants.PaymentTerms.INSTALLMENT
    assert batch.installment_days == constants.DEFAULT_INSTALLMENT_DAYS


def test_deserialize_legacy_single_item_sale():
    """Pre-grouping sales reference one item and store per-kg profit."""

    sale = data_manager.deserialize_sale({
        "id": "V-OLD",
        "id_cliente": "C-9",
        "id_completo": "L-1-001-WHOLE",
        "peso_real_saida": "100",
        "preco_venda_kg": "20",
        "lucro_liquido_unitario": "3",
        "status_pagamento": "ATRASADO",
    })

    assert sale.stock_item_ids == ("L-1-001-WHOLE",)
    assert sale.client_id == "C-9"
    assert sale.net_profit == Decimal("300")
    assert sale.revenue == Decimal("2000")
    assert sale.balance == Decimal("2000")
    assert sale.payment_status is constants.SaleStatus.PENDING


def test_deserialize_legacy_transaction():
    txn = data_manager.deserialize_transaction({
        "id": "T-1",
        "tipo": "ENTRADA",
        "categoria": "VENDA",
        "valor": "10,5",
        "metodo_pagamento": "DINHEIRO",
    })

    assert txn.direction is constants.Direction.IN
    assert txn.category is constants.TransactionCategory.SALE
    assert txn.payment_method is constants.PaymentMethod.CASH
    assert txn.signed_amount == Decimal("10.5")
    assert txn.reference_id is None


def test_deserialize_client_reads_legacy_status():
    client = data_manager.deserialize_client({"id_ferro": "F-1", "nome_social": "Casa", "status": "INATIVO"})
    assert client.client_id == "F-1"
    assert client.is_active is False


def test_out_transaction_has_negative_signed_amount():
    txn = data_manager.TransactionRow(
        transaction_id="T-2",
        date="2026-01-01",
        description="Energy bill",
        direction=constants.Direction.OUT,
        category=constants.TransactionCategory.OPERATIONAL,
        amount=Decimal("80"),
        payment_method=None,
        reference_id=None,
    )
    document = data_manager.serialize_transaction(txn)

    assert document["payment_method"] is None
    assert txn.signed_amount == Decimal("-80")
    assert data_manager.deserialize_transaction(document) == txn


def test_calculate_real_cost_handles_zero_weight():
    assert data_manager.calculate_real_cost(Decimal("10"), Decimal("0"), Decimal("0"), Decimal("0")) == Decimal("0")
