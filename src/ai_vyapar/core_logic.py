"""Business logic layer for AI Vyapar.

This module contains the transaction engine that keeps the product catalog,
the invoice ledger, and the purchase ledger consistent with one another. The
engine itself is a set of pure functions over an immutable
:class:`LedgerState`; the ``record_*`` style wrappers load that state from the
key-value store, apply the engine, and write the changed values back.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    DEFAULT_PRODUCTS,
    EXPECTED_SCHEMA_VERSION,
    InvoiceStatus,
    RecordPrefix,
    StoreKey,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product is not in the catalog."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and store references used by the BLL."""

    settings: data_manager.ConfigSettings
    store: data_manager.KeyValueStore
    workbook: Optional[Workbook] = None
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class LedgerState:
    """Snapshot of the catalog and both ledgers.

    Ledgers are kept most-recent-first, the order in which they are stored.
    """

    products: tuple[data_manager.Product, ...] = ()
    invoices: tuple[data_manager.Invoice, ...] = ()
    purchases: tuple[data_manager.Purchase, ...] = ()


@dataclass(frozen=True)
class InvoiceLine:
    """Requested product and quantity for an invoice."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class CreateInvoiceCommand:
    """User intent for creating an invoice."""

    customer_name: str
    items: Sequence[InvoiceLine]
    status: InvoiceStatus = InvoiceStatus.DUE
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for recording a stock purchase."""

    product_id: str
    quantity: int
    unit_cost: Decimal
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AddProductCommand:
    """User intent for adding a product to the catalog."""

    name: str
    price: Decimal
    cost_price: Decimal
    stock: int
    image_url: str = ""
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current local time with its UTC offset.

    Reporting windows are evaluated in local time, so records carry local
    timestamps rather than UTC ones.
    """

    return candidate if candidate is not None else datetime.now().astimezone()


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket dedicated to ``name``, creating it."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after writing to the store.

    Missing buckets are ignored so callers can invalidate unconditionally.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products in catalog order,
            ``active`` products, and a ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, StoreKey.PRODUCTS.value)
    if "all" not in bucket:
        raw = context.store.get(StoreKey.PRODUCTS.value, list(DEFAULT_PRODUCTS))
        all_products = list(data_manager.iter_products(raw))
        bucket["all"] = all_products
        bucket["active"] = [product for product in all_products if product.is_active]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d active)",
            len(all_products),
            len(bucket["active"]),
        )
    return bucket


def _ensure_invoices_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the invoice ledger cache bucket on demand."""

    bucket = _get_cache_bucket(context, StoreKey.INVOICES.value)
    if "all" not in bucket:
        raw = context.store.get(StoreKey.INVOICES.value, [])
        bucket["all"] = list(data_manager.iter_invoices(raw))
        log.debug("Populated invoices cache with %d entries", len(bucket["all"]))
    return bucket


def _ensure_purchases_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the purchase ledger cache bucket on demand."""

    bucket = _get_cache_bucket(context, StoreKey.PURCHASES.value)
    if "all" not in bucket:
        raw = context.store.get(StoreKey.PURCHASES.value, [])
        bucket["all"] = list(data_manager.iter_purchases(raw))
        log.debug("Populated purchases cache with %d entries", len(bucket["all"]))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and the workbook-backed store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context whose store reads and writes the configured
            workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for store '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=data_manager.WorkbookStore(workbook), workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.Product]:
    """Return catalog products in catalog order.

    Args:
        context (RuntimeContext): Runtime context providing store access and
            caches.
        include_inactive (bool): When ``True`` soft-deleted products are
            included as well.

    Returns:
        list[data_manager.Product]: Copy of the cached catalog.
    """
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def search_products(context: RuntimeContext, query: str, *, include_inactive: bool = False) -> List[data_manager.Product]:
    """Return products whose name contains ``query``, ignoring case.

    An empty query matches every product.
    """
    needle = query.strip().lower()
    return [
        product
        for product in list_products(context, include_inactive=include_inactive)
        if needle in product.name.lower()
    ]


def list_invoices(context: RuntimeContext) -> List[data_manager.Invoice]:
    """Return the invoice ledger, most recent first."""
    return list(_ensure_invoices_cache(context)["all"])


def list_purchases(context: RuntimeContext) -> List[data_manager.Purchase]:
    """Return the purchase ledger, most recent first."""
    return list(_ensure_purchases_cache(context)["all"])


def get_product(context: RuntimeContext, product_id: str) -> data_manager.Product:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the catalog.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def load_state(context: RuntimeContext) -> LedgerState:
    """Assemble the current :class:`LedgerState` from the store."""
    return LedgerState(
        products=tuple(_ensure_products_cache(context)["all"]),
        invoices=tuple(_ensure_invoices_cache(context)["all"]),
        purchases=tuple(_ensure_purchases_cache(context)["all"]),
    )


def generate_record_id(*, prefix: str, when: datetime, sequence: int) -> str:
    """Generate a record identifier from a timestamp and a sequence number.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{sequence}``
            with the sequence zero-padded to six digits. The sequence suffix
            keeps identifiers unique when two records share a timestamp.
    """
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{sequence:06d}"


def next_sequence(records: Iterable[Any]) -> int:
    """Return the sequence number the next ledger record should receive."""
    return max((record.sequence for record in records), default=0) + 1


def placeholder_image_url(name: str) -> str:
    """Build the placeholder image URL used for products added without one."""
    seed = "-".join(name.split()) or "product"
    return f"https://picsum.photos/seed/{seed}/200"


def _index_products(products: Iterable[data_manager.Product]) -> Dict[str, data_manager.Product]:
    return {product.product_id: product for product in products}


def _require_product(by_id: Dict[str, data_manager.Product], product_id: str) -> data_manager.Product:
    """Return the product for ``product_id`` or raise.

    Raises:
        MissingReferenceError: If the id is unknown.
        BusinessRuleViolation: If the product has been deleted.
    """
    product = by_id.get(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    if not product.is_active:
        log.warning("Attempted transaction on deleted product '%s'", product_id)
        raise BusinessRuleViolation(f"Product '{product_id}' has been deleted")
    return product


def _adjust_stock(
    products: Iterable[data_manager.Product],
    deltas: Dict[str, int],
) -> tuple[data_manager.Product, ...]:
    """Return a new catalog with ``deltas`` added to the matching stock."""
    adjusted = []
    for product in products:
        delta = deltas.get(product.product_id)
        if delta:
            product = replace(product, stock=product.stock + delta)
            if product.stock < 0:
                log.warning(
                    "Stock for product '%s' is now negative (%d)",
                    product.product_id,
                    product.stock,
                )
        adjusted.append(product)
    return tuple(adjusted)


def create_invoice(
    state: LedgerState,
    command: CreateInvoiceCommand,
) -> tuple[data_manager.Invoice, LedgerState]:
    """Create an invoice and decrement stock in one step.

    Every line is resolved against the catalog before anything changes: the
    current ``price`` and ``cost_price`` are copied onto the line as
    snapshots and the total is computed from those snapshots. Quantities are
    not range-checked and stock may become negative.

    Args:
        state (LedgerState): Current catalog and ledgers.
        command (CreateInvoiceCommand): Customer, requested lines, and status.

    Returns:
        tuple[data_manager.Invoice, LedgerState]: The new invoice and the
            state with the invoice prepended and stock decremented.

    Raises:
        MissingReferenceError: If any line references an unknown product. The
            input state is left untouched.
        BusinessRuleViolation: If any line references a deleted product.
    """
    by_id = _index_products(state.products)
    items = []
    deltas: Dict[str, int] = defaultdict(int)
    for line in command.items:
        product = _require_product(by_id, line.product_id)
        items.append(
            data_manager.InvoiceItem(
                product_id=product.product_id,
                quantity=line.quantity,
                price=product.price,
                cost_price_at_sale=product.cost_price,
            )
        )
        deltas[product.product_id] -= line.quantity

    total = sum((item.price * item.quantity for item in items), Decimal("0"))
    timestamp = _resolve_timestamp(command.timestamp)
    sequence = next_sequence(state.invoices)
    invoice = data_manager.Invoice(
        invoice_id=generate_record_id(prefix=RecordPrefix.INVOICE.value, when=timestamp, sequence=sequence),
        customer_name=command.customer_name,
        items=tuple(items),
        total=total,
        date=timestamp.date().isoformat(),
        status=InvoiceStatus(command.status),
        created_at=timestamp.isoformat(),
        sequence=sequence,
    )
    next_state = replace(
        state,
        products=_adjust_stock(state.products, deltas),
        invoices=(invoice, *state.invoices),
    )
    return invoice, next_state


def create_purchase(
    state: LedgerState,
    command: PurchaseCommand,
) -> tuple[data_manager.Purchase, LedgerState]:
    """Record a purchase and increment stock in one step.

    The product name is snapshotted onto the purchase and ``total_cost`` is
    ``unit_cost * quantity``.

    Raises:
        MissingReferenceError: If the product is unknown.
        BusinessRuleViolation: If the product has been deleted.
    """
    product = _require_product(_index_products(state.products), command.product_id)

    timestamp = _resolve_timestamp(command.timestamp)
    sequence = next_sequence(state.purchases)
    purchase = data_manager.Purchase(
        purchase_id=generate_record_id(prefix=RecordPrefix.PURCHASE.value, when=timestamp, sequence=sequence),
        product_id=product.product_id,
        product_name=product.name,
        quantity=command.quantity,
        unit_cost=command.unit_cost,
        total_cost=command.unit_cost * command.quantity,
        date=timestamp.date().isoformat(),
        created_at=timestamp.isoformat(),
        sequence=sequence,
    )
    next_state = replace(
        state,
        products=_adjust_stock(state.products, {product.product_id: command.quantity}),
        purchases=(purchase, *state.purchases),
    )
    return purchase, next_state


def create_product(
    state: LedgerState,
    command: AddProductCommand,
) -> tuple[data_manager.Product, LedgerState]:
    """Append a new product with a freshly allocated id.

    Duplicate names are allowed.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    taken = {product.product_id for product in state.products}
    sequence = len(state.products) + 1
    product_id = generate_record_id(prefix=RecordPrefix.PRODUCT.value, when=timestamp, sequence=sequence)
    while product_id in taken:
        sequence += 1
        product_id = generate_record_id(prefix=RecordPrefix.PRODUCT.value, when=timestamp, sequence=sequence)

    product = data_manager.Product(
        product_id=product_id,
        name=command.name,
        price=command.price,
        cost_price=command.cost_price,
        stock=command.stock,
        image_url=command.image_url or placeholder_image_url(command.name),
    )
    return product, replace(state, products=(*state.products, product))


def replace_product(state: LedgerState, product: data_manager.Product) -> LedgerState:
    """Replace the catalog entry sharing ``product.product_id`` wholesale.

    Ledger snapshots are not touched.

    Raises:
        MissingReferenceError: If no product has that id.
    """
    if product.product_id not in _index_products(state.products):
        log.warning("Update requested for unknown product '%s'", product.product_id)
        raise MissingReferenceError(f"Unknown product id: {product.product_id}")

    products = tuple(
        product if existing.product_id == product.product_id else existing
        for existing in state.products
    )
    return replace(state, products=products)


def deactivate_product(
    state: LedgerState,
    product_id: str,
) -> tuple[data_manager.Product, LedgerState]:
    """Soft-delete a product by clearing its active flag.

    Deletion is allowed whatever the remaining stock. Invoices and purchases
    keep their snapshots.

    Raises:
        MissingReferenceError: If no product has ``product_id``.
    """
    existing = _index_products(state.products).get(product_id)
    if existing is None:
        log.warning("Delete requested for unknown product '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")

    deleted = replace(existing, is_active=False)
    return deleted, replace_product(state, deleted)


def _commit(context: RuntimeContext, state: LedgerState, *keys: StoreKey) -> None:
    """Write the whole value of each changed key back to the store."""
    for key in keys:
        if key is StoreKey.PRODUCTS:
            value = [data_manager.serialize_product(record) for record in state.products]
        elif key is StoreKey.INVOICES:
            value = [data_manager.serialize_invoice(record) for record in state.invoices]
        else:
            value = [data_manager.serialize_purchase(record) for record in state.purchases]
        context.store.put(key.value, value)
    _invalidate_cache(context, *(key.value for key in keys))


def record_invoice(context: RuntimeContext, command: CreateInvoiceCommand) -> data_manager.Invoice:
    """Create an invoice against the stored catalog and persist both values.

    Raises:
        MissingReferenceError: If a line references an unknown product; the
            store is not written.
        BusinessRuleViolation: If a line references a deleted product.
    """
    invoice, state = create_invoice(load_state(context), command)
    _commit(context, state, StoreKey.PRODUCTS, StoreKey.INVOICES)
    log.info(
        "Recorded invoice '%s' for '%s' (%d items, total=%s, status=%s)",
        invoice.invoice_id,
        invoice.customer_name,
        len(invoice.items),
        invoice.total,
        invoice.status.value,
    )
    return invoice


def record_purchase(context: RuntimeContext, command: PurchaseCommand) -> data_manager.Purchase:
    """Record a purchase against the stored catalog and persist both values.

    Raises:
        MissingReferenceError: If the product is unknown; the store is not
            written.
        BusinessRuleViolation: If the product has been deleted.
    """
    purchase, state = create_purchase(load_state(context), command)
    _commit(context, state, StoreKey.PRODUCTS, StoreKey.PURCHASES)
    log.info(
        "Recorded purchase '%s' for product '%s' (quantity=%s, cost=%s)",
        purchase.purchase_id,
        purchase.product_id,
        purchase.quantity,
        purchase.total_cost,
    )
    return purchase


def add_product(context: RuntimeContext, command: AddProductCommand) -> data_manager.Product:
    """Add a product to the stored catalog."""
    product, state = create_product(load_state(context), command)
    _commit(context, state, StoreKey.PRODUCTS)
    log.info("Added product '%s' (%s)", product.product_id, product.name)
    return product


def update_product(context: RuntimeContext, product: data_manager.Product) -> data_manager.Product:
    """Replace a stored product wholesale.

    Raises:
        MissingReferenceError: If the product id is unknown.
    """
    state = replace_product(load_state(context), product)
    _commit(context, state, StoreKey.PRODUCTS)
    log.info("Updated product '%s'", product.product_id)
    return product


def delete_product(context: RuntimeContext, product_id: str) -> data_manager.Product:
    """Soft-delete a stored product.

    Raises:
        MissingReferenceError: If the product id is unknown.
    """
    product, state = deactivate_product(load_state(context), product_id)
    _commit(context, state, StoreKey.PRODUCTS)
    log.info("Deleted product '%s' (remaining stock=%d)", product_id, product.stock)
    return product


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory store changes to disk.

    Contexts backed by an in-memory store have nothing to save.
    """
    if context.workbook is None:
        log.debug("No workbook attached; nothing to persist")
        return
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted store '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a context with an empty cache over a freshly read store.

    Workbook-backed contexts reopen the workbook from disk, so unsaved
    modifications are discarded. Memory-backed contexts keep the same
    :class:`~ai_vyapar.data_manager.MemoryStore`; only the cache is dropped
    and everything already written stays visible.

    Returns:
        RuntimeContext: Fresh context with an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    if context.workbook is None:
        return RuntimeContext(settings=context.settings, store=context.store)

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded store '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        store=data_manager.WorkbookStore(workbook),
        workbook=workbook,
    )
