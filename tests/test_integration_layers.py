"""Integration tests describing the end-to-end FrigoGest ERP workflows.

These scenarios run the engine and the CLI against a real master workbook so
that every write goes through openpyxl, is saved to disk, and is read back
before the next step, just like separate CLI invocations in production.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import openpyxl
import pytest

from frigo_erp import cli, constants, core_logic
from frigo_erp.audit import list_audit_entries
from frigo_erp.constants import BatchStatus, PayableStatus, SaleStatus, StockStatus


def _halves_sale() -> core_logic.SaleCommand:
    return core_logic.SaleCommand(
        client_id="C-1",
        client_name="Acougue Central",
        items=(
            core_logic.SaleItem("L-001-001-SIDE_A", Decimal("125")),
            core_logic.SaleItem("L-001-001-SIDE_B", Decimal("123")),
        ),
        price_per_kg=Decimal("38"),
        sale_date="2026-01-15",
    )


@pytest.mark.asyncio
async def test_batch_sale_and_receipt_survive_reload(config_factory, installment_batch):
    """Walk through close, sell, and receive, persisting between the steps."""

    bundle = config_factory()
    context = core_logic.load_runtime_context(bundle.config_path)

    assert (await core_logic.close_batch(context, installment_batch)).success
    (sale_id,) = (await core_logic.confirm_sales(context, _halves_sale())).created_ids
    await core_logic.record_sale_receipt(context, sale_id, Decimal("2000"), discount=Decimal("24"))
    core_logic.persist_context(context)

    reloaded = core_logic.load_runtime_context(bundle.config_path)

    batch = await core_logic.get_batch(reloaded, "L-001")
    assert batch.status is BatchStatus.CLOSED
    assert batch.real_cost_per_kg == Decimal("20.4")

    sale = await core_logic.get_sale(reloaded, sale_id)
    assert sale.stock_item_ids == ("L-001-001-SIDE_A", "L-001-001-SIDE_B")
    assert sale.amount_paid == Decimal("2024")
    assert sale.cost_of_goods == Decimal("5059.2")
    assert sale.payment_status is SaleStatus.PENDING

    payable = await core_logic.get_payable(reloaded, "PAY-LOTE-L-001")
    assert payable.amount == Decimal("8200")
    assert payable.due_date == "2026-02-09"

    assert await core_logic.calculate_cash_balance(reloaded) == Decimal("-24")
    assert await core_logic.calculate_receivables(reloaded) == {"C-1": Decimal("7400")}

    entries = await list_audit_entries(reloaded.store)
    assert len(entries) == 3
    assert {entry.actor for entry in entries} == {bundle.actor}

    report = await core_logic.reverse_sale(reloaded, sale_id)
    assert report.failures == []
    assert await core_logic.calculate_cash_balance(reloaded) == Decimal("-2000")
    assert len(await core_logic.list_active_stock(reloaded)) == 3


@pytest.mark.asyncio
async def test_legacy_workbook_is_normalized_and_reversible(tmp_path):
    """Sheets written with the original Portuguese headers remain usable."""

    workbook_path = tmp_path / "legado.xlsx"
    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    batches = workbook.create_sheet("batches")
    batches.append(["id_lote", "fornecedor", "data_recebimento", "peso_total_romaneio",
                    "valor_compra_total", "frete", "status"])
    batches.append(["L-OLD", "Fazenda Antiga", "2025-11-01", 200, 4000, 100, "FECHADO"])
    stock = workbook.create_sheet("stock_items")
    stock.append(["id_completo", "id_lote", "sequencia", "tipo", "peso_entrada", "status"])
    stock.append(["L-OLD-001-WHOLE", "L-OLD", 1, "1", 200, "DISPONIVEL"])
    payables = workbook.create_sheet("payables")
    payables.append(["id", "descricao", "valor", "valor_pago", "data_vencimento", "status", "categoria"])
    payables.append(["P-OLD", "Saldo Lote L-OLD", 2000, 0, "2025-12-01", "PENDENTE", "COMPRA_GADO"])
    workbook.save(workbook_path)

    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[System]\n"
        f"DataFile = {workbook_path.name}\n"
        "BusinessName = Frigorifico Legado\n"
        f"SchemaVersion = {constants.EXPECTED_SCHEMA_VERSION}\n\n"
        "[Defaults]\n"
        "Actor = migracao\n"
    )

    context = core_logic.load_runtime_context(config_path)
    (item,) = await core_logic.list_active_stock(context)
    assert item.side_type is constants.SideType.WHOLE
    assert await core_logic.calculate_inventory_value(context) == Decimal("4100")

    result = await core_logic.confirm_sales(context, core_logic.SaleCommand(
        client_id="C-7",
        client_name="Mercado",
        items=(core_logic.SaleItem("L-OLD-001-WHOLE", Decimal("190")),),
        price_per_kg=Decimal("30"),
        sale_date="2025-11-05",
    ))
    assert result.success

    report = await core_logic.reverse_batch(context, "L-OLD")
    assert report.failures == []
    core_logic.persist_context(context)

    reloaded = core_logic.load_runtime_context(config_path)
    assert (await core_logic.get_payable(reloaded, "P-OLD")).status is PayableStatus.CANCELLED
    assert (await core_logic.get_batch(reloaded, "L-OLD")).status is BatchStatus.REVERSED
    (reversed_item,) = await core_logic.list_stock_items(reloaded)
    assert reversed_item.status is StockStatus.REVERSED
    assert reversed_item.exit_weight == Decimal("190")
    (sale,) = await core_logic.list_sales(reloaded)
    assert sale.payment_status is SaleStatus.REVERSED


def test_cli_workflow_round_trip(config_factory):
    """Separate CLI invocations share state through the saved workbook."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]

    assert cli.main(base + [
        "close-batch",
        "--batch-id", "L-002",
        "--supplier", "Sitio Novo",
        "--received-date", "2026-02-01",
        "--total-weight", "250",
        "--purchase-value", "5000",
        "--freight", "100",
        "--extra-costs", "50",
        "--item", "1:WHOLE:250",
    ]) == 0
    assert cli.main(base + [
        "sell",
        "--client-id", "C-1",
        "--client-name", "Acougue Central",
        "--price-per-kg", "30",
        "--item", "L-002-001-WHOLE:240",
    ]) == 0
    assert cli.main(base + ["receive", "--client-id", "C-1", "--amount", "7200"]) == 0

    context = core_logic.load_runtime_context(bundle.config_path)
    (sale,) = asyncio.run(core_logic.list_sales(context))
    assert sale.payment_status is SaleStatus.PAID
    assert asyncio.run(core_logic.calculate_cash_balance(context)) == Decimal("2050")

    assert cli.main(base + ["reverse-batch", "--id", "L-002"]) == 0
    assert cli.main(base + ["reverse-sale", "--id", sale.sale_id]) == 2

    context = core_logic.load_runtime_context(bundle.config_path)
    assert asyncio.run(core_logic.calculate_cash_balance(context)) == Decimal("0")
    assert asyncio.run(core_logic.get_sale(context, sale.sale_id)).payment_status is SaleStatus.REVERSED
    assert asyncio.run(core_logic.list_active_stock(context)) == []


def test_cli_rejects_schema_mismatch(config_factory):
    bundle = config_factory(schema_version="1.0.0")
    assert cli.main(["--config", str(bundle.config_path), "cash"]) == 1


def test_cli_reports_missing_configuration(tmp_path):
    assert cli.main(["--config", str(tmp_path / "nope.ini"), "cash"]) == 3
