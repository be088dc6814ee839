"""Shared pytest fixtures and utilities for shop ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from shop_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from shop_ledger.repository import LedgerRepository  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "BreadUnitPrice = {bread_unit_price}\n"
    "Currency = DZD\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_path: Path
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
def data_file_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that writes an empty ledger data file in a temp folder."""

    def _create(
        *,
        subdir: str | None = None,
        filename: str = "ledger.json",
        snapshot: data_manager.LedgerSnapshot | None = None,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        data_path = base_dir / filename
        data_manager.open_store(data_path).save(snapshot or data_manager.LedgerSnapshot())
        return data_path

    return _create


@pytest.fixture
def config_factory(tmp_path: Path, data_file_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/data-file bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        filename: str = "ledger.json",
        shop_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        bread_unit_price: str = "10",
        snapshot: data_manager.LedgerSnapshot | None = None,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        data_path = data_file_factory(subdir=bundle_dir_name, filename=filename, snapshot=snapshot)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_path.name if make_relative else str(data_path),
                shop_name=shop_name,
                schema_version=schema_version,
                bread_unit_price=bread_unit_price,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_path=data_path,
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
    """Load a file-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory context with a mocked backing store
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.json",
        shop_name="Test Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def store(tmp_path: Path) -> Mock:
    """Return a mock backing store; ``save`` succeeds unless a test says otherwise."""

    mock_store = Mock(name="store")
    mock_store.path = tmp_path / "ledger.json"
    return mock_store


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context around an empty in-memory repository."""

    return core_logic.RuntimeContext(settings=settings, repository=LedgerRepository(store))


@pytest.fixture
def customer(context: core_logic.RuntimeContext) -> data_manager.Customer:
    """A freshly added customer with a zero balance."""

    return core_logic.add_customer(context, name="Amina", phone="0550 00 00 00")


@pytest.fixture
def product(context: core_logic.RuntimeContext) -> data_manager.Product:
    """A product with a little stock."""

    return core_logic.add_product(
        context,
        name="Milk 1L",
        category="Dairy",
        selling_price=Decimal("120"),
        purchase_price=Decimal("95"),
        barcodes=["6130000000017"],
        stock=5,
        min_stock=2,
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="shop-ledger", description="Shop ledger CLI")


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser) -> argparse._SubParsersAction:
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
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
