"""Shared pytest fixtures and utilities for AI Vyapar tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from ai_vyapar import constants, core_logic, data_manager  # noqa: E402
from ai_vyapar.setup_store import create_store_workbook  # noqa: E402

IST = timezone(timedelta(hours=5, minutes=30))

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "InvoiceStatus = {invoice_status}\n\n"
    "[AI]\n"
    "Model = test-model\n"
    "ApiKeyEnv = VYAPAR_TEST_API_KEY\n"
    "TimeoutSeconds = 5\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


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
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "vyapar_store.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def store_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Shop",
        schema_version: str = constants.EXPECTED_SCHEMA_VERSION,
        invoice_status: str = "Due",
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                invoice_status=invoice_status,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "vyapar_store.xlsx",
        shop_name="Test Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def memory_store() -> data_manager.MemoryStore:
    return data_manager.MemoryStore()


@pytest.fixture
def context(settings: data_manager.ConfigSettings, memory_store: data_manager.MemoryStore) -> core_logic.RuntimeContext:
    """Assemble a runtime context around an in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=memory_store)


def make_product(
    product_id: str = "p1",
    *,
    name: str = "Wireless Mouse",
    price: str = "2500",
    cost_price: str = "1800",
    stock: int = 150,
    is_active: bool = True,
) -> data_manager.Product:
    """Build a product with the wireless mouse defaults."""

    return data_manager.Product(
        product_id=product_id,
        name=name,
        price=Decimal(price),
        cost_price=Decimal(cost_price),
        stock=stock,
        image_url=f"https://picsum.photos/seed/{product_id}/200",
        is_active=is_active,
    )


@pytest.fixture
def catalog_state() -> core_logic.LedgerState:
    """A catalog holding a mouse and a keyboard, with empty ledgers."""

    return core_logic.LedgerState(
        products=(
            make_product("p1"),
            make_product("p2", name="Mechanical Keyboard", price="8000", cost_price="6000", stock=80),
        )
    )


@pytest.fixture
def fixed_now() -> datetime:
    """Wednesday 15 October 2025, mid-afternoon IST."""

    return datetime(2025, 10, 15, 15, 30, tzinfo=IST)
