"""Data access layer for AI Vyapar.

This module provides low-level helpers that read from and write to the
key-value store backing the application. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: opening, persisting, and reloading the Excel workbook that
   holds the key-value slots, plus an in-memory store for tests.
3. Record conversion: turning stored JSON values into typed records and back.
"""


from __future__ import annotations

import configparser
import copy
import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import STORE_COLUMNS, STORE_SHEET, InvoiceStatus


CONFIG_FILE_NAME = "config.ini"
DEFAULT_AI_MODEL = "gemini-2.5-flash"
DEFAULT_API_KEY_ENV = "API_KEY"
DEFAULT_AI_TIMEOUT = 30.0

# Excel caps a cell at 32,767 characters; stored JSON is split into parts.
CHUNK_SIZE = 32_000


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_invoice_status: InvoiceStatus = InvoiceStatus.DUE
    ai_model: str = DEFAULT_AI_MODEL
    api_key_env: str = DEFAULT_API_KEY_ENV
    ai_timeout: float = DEFAULT_AI_TIMEOUT


@dataclass(frozen=True)
class Product:
    """Catalog entry; price fields are live and may be edited."""

    product_id: str
    name: str
    price: Decimal
    cost_price: Decimal
    stock: int
    image_url: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class InvoiceItem:
    """Invoice line holding price snapshots taken at sale time."""

    product_id: str
    quantity: int
    price: Decimal
    cost_price_at_sale: Decimal


@dataclass(frozen=True)
class Invoice:
    """Sales ledger record."""

    invoice_id: str
    customer_name: str
    items: tuple[InvoiceItem, ...]
    total: Decimal
    date: str
    status: InvoiceStatus
    created_at: str
    sequence: int


@dataclass(frozen=True)
class Purchase:
    """Stock purchase ledger record."""

    purchase_id: str
    product_id: str
    product_name: str
    quantity: int
    unit_cost: Decimal
    total_cost: Decimal
    date: str
    created_at: str
    sequence: int


class KeyValueStore(Protocol):
    """Whole-value persistence keyed by string."""

    def get(self, key: str, default: Any) -> Any:
        ...

    def put(self, key: str, value: Any) -> None:
        ...


class MemoryStore:
    """Dictionary-backed store used by tests and scratch sessions.

    Values are kept as JSON text so callers never share mutable structures
    with the store, matching the copy semantics of the workbook store.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._values: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.put(key, value)

    def get(self, key: str, default: Any) -> Any:
        raw = self._values.get(key)
        if raw is None:
            return copy.deepcopy(default)
        return json.loads(raw)

    def put(self, key: str, value: Any) -> None:
        self._values[key] = json.dumps(value, ensure_ascii=False)

    def keys(self) -> List[str]:
        return list(self._values)


class WorkbookStore:
    """Key-value store kept in the ``KeyValueStore`` sheet of a workbook.

    Each key owns one or more rows ``(Key, Part, Value, UpdatedAt)``; the JSON
    text of the value is split across ``Part`` rows when it exceeds what a
    single cell can hold. Writes replace every row of the key, so values are
    always read and written whole. Changes live in memory until
    :func:`save_workbook` is called.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        if STORE_SHEET not in workbook.sheetnames:
            sheet = workbook.create_sheet(title=STORE_SHEET)
            sheet.append(list(STORE_COLUMNS))

    def get(self, key: str, default: Any) -> Any:
        rows = locate_rows(self.workbook, STORE_SHEET, "Key", key)
        if not rows:
            log.debug("Store key '%s' not found; serving default", key)
            return copy.deepcopy(default)

        sheet = self.workbook[STORE_SHEET]
        parts = []
        for row_index in rows:
            part = sheet.cell(row=row_index, column=2).value
            text = sheet.cell(row=row_index, column=3).value
            parts.append((int(part), text or ""))
        parts.sort()
        return json.loads("".join(text for _, text in parts))

    def put(self, key: str, value: Any) -> None:
        text = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        sheet = self.workbook[STORE_SHEET]
        for row_index in reversed(locate_rows(self.workbook, STORE_SHEET, "Key", key)):
            sheet.delete_rows(row_index)

        updated_at = datetime.now().astimezone().isoformat()
        for part, chunk in enumerate(split_chunks(text, CHUNK_SIZE)):
            row_index = sheet.max_row + 1
            for column_index, cell_value in enumerate((key, part, chunk, updated_at), start=1):
                sheet.cell(row=row_index, column=column_index, value=cell_value)
        log.debug("Stored key '%s' (%d characters)", key, len(text))


def split_chunks(text: str, size: int) -> List[str]:
    """Split ``text`` into pieces of at most ``size`` characters.

    Boundaries are moved back so no piece starts with ``=``, which openpyxl
    would store as a formula. Only a run of ``=`` longer than ``size`` defeats
    this. An empty string still yields one (empty) piece.
    """

    if not text:
        return [""]

    chunks: List[str] = []
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        while end < len(text) and text[end] == "=" and end > start + 1:
            end -= 1
        chunks.append(text[start:end])
        start = end
    return chunks


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in any parent
            directory.
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

    ``[System]`` entries are mandatory. ``[Defaults]`` and ``[AI]`` entries
    fall back to module defaults when absent. A relative ``DataFile`` is
    anchored to ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings with a resolved data file path.

    Raises:
        KeyError: If a required entry is missing or a value is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    status_raw = parser.get("Defaults", "InvoiceStatus", fallback=InvoiceStatus.DUE.value)
    try:
        default_status = InvoiceStatus(status_raw)
        ai_timeout = parser.getfloat("AI", "TimeoutSeconds", fallback=DEFAULT_AI_TIMEOUT)
    except ValueError as exc:
        raise KeyError(f"Invalid configuration value: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_invoice_status=default_status,
        ai_model=parser.get("AI", "Model", fallback=DEFAULT_AI_MODEL),
        api_key_env=parser.get("AI", "ApiKeyEnv", fallback=DEFAULT_API_KEY_ENV),
        ai_timeout=ai_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def locate_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> List[int]:
    """Find every row whose ``key_column`` equals ``key_value``.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        list[int]: 1-based row indices in sheet order; empty when nothing
            matches.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    return [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row and row[key_col_index - 1] == key_value
    ]


def _money(raw: object) -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal("0")


def serialize_product(record: Product) -> dict[str, object]:
    """Convert a product into its stored JSON object."""

    return {
        "id": record.product_id,
        "name": record.name,
        "price": str(record.price),
        "costPrice": str(record.cost_price),
        "stock": record.stock,
        "imageUrl": record.image_url,
        "isActive": record.is_active,
    }


def serialize_invoice_item(record: InvoiceItem) -> dict[str, object]:
    return {
        "productId": record.product_id,
        "quantity": record.quantity,
        "price": str(record.price),
        "costPriceAtSale": str(record.cost_price_at_sale),
    }


def serialize_invoice(record: Invoice) -> dict[str, object]:
    """Convert an invoice and its items into the stored JSON object."""

    return {
        "id": record.invoice_id,
        "customerName": record.customer_name,
        "items": [serialize_invoice_item(item) for item in record.items],
        "total": str(record.total),
        "date": record.date,
        "status": record.status.value,
        "createdAt": record.created_at,
        "sequence": record.sequence,
    }


def serialize_purchase(record: Purchase) -> dict[str, object]:
    """Convert a purchase into the stored JSON object."""

    return {
        "id": record.purchase_id,
        "productId": record.product_id,
        "productName": record.product_name,
        "quantity": record.quantity,
        "unitCost": str(record.unit_cost),
        "totalCost": str(record.total_cost),
        "date": record.date,
        "createdAt": record.created_at,
        "sequence": record.sequence,
    }


def deserialize_product(raw: dict[str, Any]) -> Product:
    """Convert a stored product object into a :class:`Product`.

    Numbers are normalized through ``Decimal(str(...))`` so both string and
    numeric JSON values load without float artefacts. ``isActive`` defaults
    to ``True`` for stores written before soft deletion existed.
    """

    return Product(
        product_id=str(raw["id"]),
        name=str(raw.get("name", "")),
        price=_money(raw.get("price")),
        cost_price=_money(raw.get("costPrice")),
        stock=int(raw.get("stock", 0)),
        image_url=str(raw.get("imageUrl") or ""),
        is_active=bool(raw.get("isActive", True)),
    )


def deserialize_invoice_item(raw: dict[str, Any]) -> InvoiceItem:
    return InvoiceItem(
        product_id=str(raw["productId"]),
        quantity=int(raw.get("quantity", 0)),
        price=_money(raw.get("price")),
        cost_price_at_sale=_money(raw.get("costPriceAtSale")),
    )


def deserialize_invoice(raw: dict[str, Any], *, fallback_sequence: int = 0) -> Invoice:
    """Convert a stored invoice object into an :class:`Invoice`.

    Args:
        raw (dict[str, Any]): Stored JSON object.
        fallback_sequence (int): Sequence to use when the stored object
            predates the ``sequence`` field.

    Returns:
        Invoice: Typed invoice with snapshot items.
    """

    date = str(raw.get("date") or raw.get("createdAt") or "")
    return Invoice(
        invoice_id=str(raw["id"]),
        customer_name=str(raw.get("customerName", "")),
        items=tuple(deserialize_invoice_item(item) for item in raw.get("items", [])),
        total=_money(raw.get("total")),
        date=date,
        status=InvoiceStatus(raw.get("status", InvoiceStatus.DUE.value)),
        created_at=str(raw.get("createdAt") or date),
        sequence=int(raw.get("sequence", fallback_sequence)),
    )


def deserialize_purchase(raw: dict[str, Any], *, fallback_sequence: int = 0) -> Purchase:
    """Convert a stored purchase object into a :class:`Purchase`."""

    date = str(raw.get("date") or raw.get("createdAt") or "")
    return Purchase(
        purchase_id=str(raw["id"]),
        product_id=str(raw["productId"]),
        product_name=str(raw.get("productName", "")),
        quantity=int(raw.get("quantity", 0)),
        unit_cost=_money(raw.get("unitCost")),
        total_cost=_money(raw.get("totalCost")),
        date=date,
        created_at=str(raw.get("createdAt") or date),
        sequence=int(raw.get("sequence", fallback_sequence)),
    )


def iter_products(raw_records: Iterable[dict[str, Any]]) -> Iterable[Product]:
    """Yield typed products from the stored ``products`` value."""

    for raw in raw_records:
        yield deserialize_product(raw)


def iter_invoices(raw_records: Sequence[dict[str, Any]]) -> Iterable[Invoice]:
    """Yield typed invoices from the stored ``invoices`` value.

    The ledger is stored most-recent-first, so records without a stored
    sequence are numbered from the end of the list.
    """

    total = len(raw_records)
    for index, raw in enumerate(raw_records):
        yield deserialize_invoice(raw, fallback_sequence=total - index)


def iter_purchases(raw_records: Sequence[dict[str, Any]]) -> Iterable[Purchase]:
    """Yield typed purchases from the stored ``purchases`` value."""

    total = len(raw_records)
    for index, raw in enumerate(raw_records):
        yield deserialize_purchase(raw, fallback_sequence=total - index)
