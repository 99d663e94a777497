"""Enumerations and defaults shared across AI Vyapar modules.

Keeps store keys, invoice statuses, and reporting ranges in one place so the
data access layer, the transaction engine, reporting, and the CLI agree on the
exact identifiers written to disk.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating the store.
EXPECTED_SCHEMA_VERSION = "1.0.0"

STORE_SHEET = "KeyValueStore"
STORE_COLUMNS = ("Key", "Part", "Value", "UpdatedAt")

RECENT_INVOICE_LIMIT = 5


class StoreKey(str, Enum):
    """Enumerate the key-value slots persisted by the store."""

    PRODUCTS = "products"
    INVOICES = "invoices"
    PURCHASES = "purchases"


class InvoiceStatus(str, Enum):
    """Enumerate the payment states an invoice can be created with."""

    PAID = "Paid"
    DUE = "Due"
    OVERDUE = "Overdue"


class TimeRange(str, Enum):
    """Enumerate the dashboard reporting windows."""

    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"


class RecordPrefix(str, Enum):
    """Identifier prefixes for each record type."""

    PRODUCT = "P"
    INVOICE = "INV"
    PURCHASE = "PUR"


# Catalog served on first read when the store holds no products yet.
DEFAULT_PRODUCTS: tuple[dict[str, object], ...] = (
    {"id": "p1", "name": "Wireless Mouse", "price": "2500", "costPrice": "1800", "stock": 150, "imageUrl": "https://picsum.photos/seed/mouse/200", "isActive": True},
    {"id": "p2", "name": "Mechanical Keyboard", "price": "8000", "costPrice": "6000", "stock": 80, "imageUrl": "https://picsum.photos/seed/keyboard/200", "isActive": True},
    {"id": "p3", "name": "4K Monitor", "price": "35000", "costPrice": "28000", "stock": 50, "imageUrl": "https://picsum.photos/seed/monitor/200", "isActive": True},
    {"id": "p4", "name": "USB-C Hub", "price": "4500", "costPrice": "3000", "stock": 200, "imageUrl": "https://picsum.photos/seed/hub/200", "isActive": True},
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "STORE_SHEET",
    "STORE_COLUMNS",
    "RECENT_INVOICE_LIMIT",
    "StoreKey",
    "InvoiceStatus",
    "TimeRange",
    "RecordPrefix",
    "DEFAULT_PRODUCTS",
]
