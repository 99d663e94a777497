"""Integration tests exercising the workbook store through the business layer."""

from __future__ import annotations

from decimal import Decimal

import pytest

from ai_vyapar import constants, core_logic, data_manager, reporting


def _invoice(*lines, customer="Asha"):
    return core_logic.CreateInvoiceCommand(
        customer_name=customer,
        items=tuple(core_logic.InvoiceLine(product_id, quantity) for product_id, quantity in lines),
    )


def test_first_read_serves_defaults_without_touching_workbook(runtime_context):
    """A fresh workbook answers with the seed catalog and stays empty."""

    products = core_logic.list_products(runtime_context)

    assert [product.name for product in products] == [
        "Wireless Mouse",
        "Mechanical Keyboard",
        "4K Monitor",
        "USB-C Hub",
    ]
    assert runtime_context.workbook[constants.STORE_SHEET].max_row == 1


def test_persist_and_reload_round_trip(runtime_context):
    """Recorded transactions survive persist_context and a fresh load."""

    invoice = core_logic.record_invoice(runtime_context, _invoice(("p1", 2), ("p3", 1)))
    purchase = core_logic.record_purchase(runtime_context, core_logic.PurchaseCommand("p2", 5, Decimal("5800.50")))
    core_logic.persist_context(runtime_context)

    reloaded = core_logic.refresh_context(runtime_context)

    assert core_logic.list_invoices(reloaded) == [invoice]
    assert core_logic.list_purchases(reloaded) == [purchase]
    assert core_logic.get_product(reloaded, "p1").stock == 148
    assert core_logic.get_product(reloaded, "p2").stock == 85
    assert core_logic.get_product(reloaded, "p3").stock == 49
    assert reloaded.workbook is not runtime_context.workbook


def test_refresh_discards_unsaved_changes(runtime_context):
    """Without persist_context, a refresh goes back to what is on disk."""

    core_logic.record_invoice(runtime_context, _invoice(("p1", 1)))

    reloaded = core_logic.refresh_context(runtime_context)

    assert core_logic.list_invoices(reloaded) == []
    assert core_logic.get_product(reloaded, "p1").stock == 150


def test_ledger_larger_than_one_cell_round_trips(runtime_context, monkeypatch):
    """Ledgers spanning several store rows load back intact."""

    monkeypatch.setattr(data_manager, "CHUNK_SIZE", 200)
    for customer in ("Asha", "Ravi", "Meera", "Kabir"):
        core_logic.record_invoice(runtime_context, _invoice(("p1", 1), ("p4", 2), customer=customer))
    core_logic.persist_context(runtime_context)

    reloaded = core_logic.refresh_context(runtime_context)
    invoices = core_logic.list_invoices(reloaded)

    assert [invoice.customer_name for invoice in invoices] == ["Kabir", "Meera", "Ravi", "Asha"]
    assert [invoice.sequence for invoice in invoices] == [4, 3, 2, 1]
    assert len(data_manager.locate_rows(reloaded.workbook, constants.STORE_SHEET, "Key", "invoices")) > 1


def test_snapshots_survive_catalog_edits_on_disk(runtime_context):
    """Editing and deleting a product leaves earlier figures unchanged."""

    core_logic.record_invoice(runtime_context, _invoice(("p1", 2)))
    mouse = core_logic.get_product(runtime_context, "p1")
    core_logic.update_product(
        runtime_context,
        data_manager.Product(mouse.product_id, "Mouse Pro", Decimal("3000"), Decimal("2500"), mouse.stock, mouse.image_url),
    )
    core_logic.delete_product(runtime_context, "p1")
    core_logic.persist_context(runtime_context)

    reloaded = core_logic.refresh_context(runtime_context)
    summary = reporting.calculate_dashboard(reloaded)

    assert summary.total_sales == Decimal("5000")
    assert summary.cost_of_goods_sold == Decimal("3600")
    assert "p1" not in {product.product_id for product in core_logic.list_products(reloaded)}
    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_invoice(reloaded, _invoice(("p1", 1)))


def test_refresh_context_missing_workbook_raises(runtime_context):
    runtime_context.settings.data_file.unlink()

    with pytest.raises(FileNotFoundError):
        core_logic.refresh_context(runtime_context)
