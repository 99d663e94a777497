"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from ai_vyapar import constants, data_manager  # noqa: E402


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in the working directory tree."""

    config_dir = tmp_path / "nested"
    config_dir.mkdir(parents=True)
    config_file = config_dir / "config.ini"
    config_file.write_text("[System]\nDataFile=vyapar_store.xlsx")
    monkeypatch.chdir(config_dir)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "ShopName") == "Test Shop"
    assert parser.get("Defaults", "InvoiceStatus") == "Due"
    assert parser.get("AI", "Model") == "test-model"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, invoice_status="Paid")
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == bundle.workbook_path.resolve()
    assert settings.shop_name == "Test Shop"
    assert settings.default_invoice_status is constants.InvoiceStatus.PAID
    assert settings.ai_model == "test-model"
    assert settings.api_key_env == "VYAPAR_TEST_API_KEY"
    assert settings.ai_timeout == 5.0


def test_parse_settings_applies_defaults_for_optional_sections(tmp_path):
    """Only the System section is mandatory."""

    parser = configparser.ConfigParser()
    parser.read_dict(
        {"System": {"DataFile": str(tmp_path / "store.xlsx"), "ShopName": "Shop", "SchemaVersion": "1.0.0"}}
    )

    settings = data_manager.parse_settings(parser)

    assert settings.default_invoice_status is constants.InvoiceStatus.DUE
    assert settings.ai_model == data_manager.DEFAULT_AI_MODEL
    assert settings.api_key_env == "API_KEY"
    assert settings.ai_timeout == data_manager.DEFAULT_AI_TIMEOUT


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing mandatory keys should raise KeyError."""

    parser = configparser.ConfigParser()
    parser.read_dict({"System": {"DataFile": str(tmp_path / "store.xlsx")}})

    with pytest.raises(KeyError):
        data_manager.parse_settings(parser)


def test_parse_settings_rejects_unknown_invoice_status(tmp_path):
    """Malformed defaults surface as configuration errors."""

    parser = configparser.ConfigParser()
    parser.read_dict(
        {
            "System": {"DataFile": str(tmp_path / "store.xlsx"), "ShopName": "Shop", "SchemaVersion": "1.0.0"},
            "Defaults": {"InvoiceStatus": "Cancelled"},
        }
    )

    with pytest.raises(KeyError):
        data_manager.parse_settings(parser)


def test_open_workbook_returns_openpyxl_instance(store_workbook_path):
    """open_workbook should hand back a live openpyxl Workbook."""

    workbook = data_manager.open_workbook(store_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert constants.STORE_SHEET in workbook.sheetnames


def test_open_workbook_missing_file_raises(tmp_path):
    """Opening a nonexistent workbook should raise FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(store_workbook_path, tmp_path):
    """Saving to a nested destination creates the parent folders."""

    workbook = data_manager.open_workbook(store_workbook_path)
    data_manager.WorkbookStore(workbook).put("products", [])
    destination = tmp_path / "copies" / "store.xlsx"

    data_manager.save_workbook(workbook, destination)

    reopened = openpyxl.load_workbook(destination)
    assert reopened[constants.STORE_SHEET].cell(row=2, column=1).value == "products"


def test_refresh_workbook_discards_unsaved_changes(store_workbook_path):
    """refresh_workbook reloads from disk, dropping in-memory edits."""

    workbook = data_manager.open_workbook(store_workbook_path)
    data_manager.WorkbookStore(workbook).put("products", [{"id": "x"}])

    reloaded = data_manager.refresh_workbook(store_workbook_path)

    assert reloaded is not workbook
    assert data_manager.WorkbookStore(reloaded).get("products", None) is None


# ---------------------------------------------------------------------------
# Key-value stores
# ---------------------------------------------------------------------------


def test_memory_store_returns_default_without_writing():
    """Reading an absent key serves the default and leaves the store empty."""

    store = data_manager.MemoryStore()
    default = [{"id": "p1"}]

    value = store.get("products", default)
    value.append({"id": "p2"})

    assert default == [{"id": "p1"}]
    assert store.keys() == []


def test_memory_store_put_replaces_whole_value():
    store = data_manager.MemoryStore({"invoices": [1, 2]})
    store.put("invoices", [3])

    assert store.get("invoices", []) == [3]


def test_memory_store_isolates_callers_from_stored_value():
    """Mutating a value after put or get does not change what is stored."""

    store = data_manager.MemoryStore()
    value = [{"id": "p1"}]
    store.put("products", value)
    value[0]["id"] = "changed"
    store.get("products", [])[0]["id"] = "changed again"

    assert store.get("products", []) == [{"id": "p1"}]


def test_workbook_store_creates_sheet_when_missing():
    """A plain workbook gains the store sheet and its header row."""

    workbook = openpyxl.Workbook()
    data_manager.WorkbookStore(workbook)

    header = [cell.value for cell in workbook[constants.STORE_SHEET][1]]
    assert header == list(constants.STORE_COLUMNS)


def test_workbook_store_get_missing_key_serves_default():
    workbook = openpyxl.Workbook()
    store = data_manager.WorkbookStore(workbook)

    assert store.get("purchases", []) == []
    assert workbook[constants.STORE_SHEET].max_row == 1


def test_workbook_store_splits_large_values(monkeypatch):
    """Values longer than a cell allows are spread over ordered parts."""

    monkeypatch.setattr(data_manager, "CHUNK_SIZE", 16)
    workbook = openpyxl.Workbook()
    store = data_manager.WorkbookStore(workbook)
    value = [{"id": f"p{index}", "name": "Wireless Mouse"} for index in range(5)]

    store.put("products", value)

    rows = data_manager.locate_rows(workbook, constants.STORE_SHEET, "Key", "products")
    sheet = workbook[constants.STORE_SHEET]
    assert len(rows) > 1
    assert [sheet.cell(row=row, column=2).value for row in rows] == list(range(len(rows)))
    assert store.get("products", None) == value


def test_workbook_store_put_replaces_previous_rows(monkeypatch):
    """Writing a key again removes every part written before."""

    monkeypatch.setattr(data_manager, "CHUNK_SIZE", 8)
    workbook = openpyxl.Workbook()
    store = data_manager.WorkbookStore(workbook)
    store.put("invoices", ["a" * 40])
    store.put("purchases", [])

    store.put("invoices", [])

    assert len(data_manager.locate_rows(workbook, constants.STORE_SHEET, "Key", "invoices")) == 1
    assert store.get("invoices", None) == []
    assert store.get("purchases", None) == []


def test_workbook_store_round_trips_through_disk(store_workbook_path, monkeypatch):
    """Chunked values survive a save and reload."""

    monkeypatch.setattr(data_manager, "CHUNK_SIZE", 32)
    workbook = data_manager.open_workbook(store_workbook_path)
    value = [{"id": "INV1", "customerName": "राम", "note": "a=b=c"}] * 4
    data_manager.WorkbookStore(workbook).put("invoices", value)
    data_manager.save_workbook(workbook, store_workbook_path)

    reloaded = data_manager.WorkbookStore(data_manager.open_workbook(store_workbook_path))

    assert reloaded.get("invoices", None) == value


def test_split_chunks_never_starts_piece_with_equals():
    """Boundaries landing on '=' are moved back by one character."""

    chunks = data_manager.split_chunks("abc=def", 3)

    assert chunks == ["ab", "c=d", "ef"]
    assert "".join(chunks) == "abc=def"


def test_split_chunks_empty_text_yields_single_piece():
    assert data_manager.split_chunks("", 10) == [""]


def test_locate_rows_unknown_column_raises():
    workbook = openpyxl.Workbook()
    data_manager.WorkbookStore(workbook)

    with pytest.raises(KeyError):
        data_manager.locate_rows(workbook, constants.STORE_SHEET, "Missing", "products")


# ---------------------------------------------------------------------------
# Record conversion
# ---------------------------------------------------------------------------


def test_serialize_product_uses_stored_field_names():
    """Products serialize to camelCase keys with decimal strings."""

    product = data_manager.Product("p1", "Wireless Mouse", Decimal("2500"), Decimal("1800"), 150, "https://img")

    assert data_manager.serialize_product(product) == {
        "id": "p1",
        "name": "Wireless Mouse",
        "price": "2500",
        "costPrice": "1800",
        "stock": 150,
        "imageUrl": "https://img",
        "isActive": True,
    }


def test_serialize_invoice_includes_snapshot_items():
    invoice = data_manager.Invoice(
        invoice_id="INV1",
        customer_name="John",
        items=(data_manager.InvoiceItem("p1", 2, Decimal("2500"), Decimal("1800")),),
        total=Decimal("5000"),
        date="2025-10-15",
        status=constants.InvoiceStatus.PAID,
        created_at="2025-10-15T10:00:00+05:30",
        sequence=3,
    )

    payload = data_manager.serialize_invoice(invoice)

    assert payload["items"] == [{"productId": "p1", "quantity": 2, "price": "2500", "costPriceAtSale": "1800"}]
    assert payload["status"] == "Paid"
    assert payload["sequence"] == 3
    assert data_manager.deserialize_invoice(payload) == invoice


def test_deserialize_product_accepts_numeric_prices_and_legacy_records():
    """Numbers load without float artefacts and isActive defaults to True."""

    product = data_manager.deserialize_product({"id": "p9", "name": "Cable", "price": 19.99, "costPrice": 10, "stock": 4})

    assert product.price == Decimal("19.99")
    assert product.cost_price == Decimal("10")
    assert product.is_active is True
    assert product.image_url == ""


def test_deserialize_purchase_constructs_dataclass():
    purchase = data_manager.deserialize_purchase(
        {
            "id": "PUR1",
            "productId": "p1",
            "productName": "Wireless Mouse",
            "quantity": 10,
            "unitCost": "1900",
            "totalCost": "19000",
            "date": "2025-10-15",
        },
        fallback_sequence=7,
    )

    assert purchase.total_cost == Decimal("19000")
    assert purchase.created_at == "2025-10-15"
    assert purchase.sequence == 7


def test_deserialize_records_without_date_fall_back_to_created_at():
    """A missing date is taken from the creation timestamp."""

    invoice = data_manager.deserialize_invoice(
        {"id": "INV1", "customerName": "John", "items": [], "total": 0, "createdAt": "2025-10-14T10:00:00+05:30"}
    )
    purchase = data_manager.deserialize_purchase(
        {"id": "PUR1", "productId": "p1", "quantity": 1, "unitCost": "5", "totalCost": "5", "createdAt": "2025-10-13T09:00:00+05:30"}
    )

    assert invoice.date == "2025-10-14T10:00:00+05:30"
    assert purchase.date == "2025-10-13T09:00:00+05:30"
    assert data_manager.deserialize_invoice({"id": "INV2", "items": []}).date == ""


def test_iter_invoices_numbers_legacy_records_from_the_end():
    """Records without a sequence keep their most-recent-first order."""

    raw = [
        {"id": "INV-new", "customerName": "B", "items": [], "total": 0, "date": "2025-10-15", "status": "Due"},
        {"id": "INV-old", "customerName": "A", "items": [], "total": 0, "date": "2025-10-14", "status": "Paid"},
    ]

    invoices = list(data_manager.iter_invoices(raw))

    assert [invoice.sequence for invoice in invoices] == [2, 1]
    assert invoices[1].status is constants.InvoiceStatus.PAID


def test_iter_purchases_prefers_stored_sequence():
    raw = [{"id": "PUR1", "productId": "p1", "quantity": 1, "unitCost": "5", "totalCost": "5", "date": "2025-10-15", "sequence": 42}]

    assert next(iter(data_manager.iter_purchases(raw))).sequence == 42
