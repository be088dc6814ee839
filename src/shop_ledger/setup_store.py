"""Create a new, empty ledger data file plus the ``config.ini`` that points at it."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path
from typing import Optional

from . import log
from .constants import DEFAULT_BREAD_UNIT_PRICE, DEFAULT_CURRENCY, EXPECTED_SCHEMA_VERSION
from .data_manager import CONFIG_FILE_NAME, LedgerSnapshot, Settings, open_store

DEFAULT_DATA_FILE = "shop_ledger.json"


def write_config(
    config_path: Path,
    *,
    data_file: str,
    shop_name: str,
    bread_unit_price: Decimal = DEFAULT_BREAD_UNIT_PRICE,
    currency: str = DEFAULT_CURRENCY,
) -> Path:
    parser = configparser.ConfigParser()
    parser["System"] = {
        "DataFile": data_file,
        "ShopName": shop_name,
        "SchemaVersion": EXPECTED_SCHEMA_VERSION,
    }
    parser["Defaults"] = {
        "BreadUnitPrice": str(bread_unit_price),
        "Currency": currency,
    }
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        parser.write(handle)
    return config_path


def create_store(
    directory: Path,
    *,
    data_file: str = DEFAULT_DATA_FILE,
    shop_name: str = "My Shop",
    bread_unit_price: Decimal = DEFAULT_BREAD_UNIT_PRICE,
    currency: str = DEFAULT_CURRENCY,
    overwrite: bool = False,
) -> Path:
    """Initialise ``directory`` with an empty data file and ``config.ini``.

    ``data_file`` is relative to ``directory``; its suffix picks the backing
    store (``.json`` or ``.xlsx``).

    Returns:
        Path: The written ``config.ini``.

    Raises:
        FileExistsError: If the data file exists and ``overwrite`` is false.
        ValueError: If the data file suffix is not supported.
        StoreUnavailable: If the data file cannot be written.
    """

    directory = Path(directory).expanduser().resolve()
    data_path = directory / data_file
    if data_path.exists() and not overwrite:
        log.error("Refusing to overwrite existing data file '%s'", data_path)
        raise FileExistsError(f"'{data_path}' already exists. Remove it to re-initialise.")

    store = open_store(data_path)
    snapshot = LedgerSnapshot(
        settings=Settings(bread_unit_price=bread_unit_price, shop_name=shop_name, currency=currency)
    )
    store.save(snapshot)
    config_path = write_config(
        directory / CONFIG_FILE_NAME,
        data_file=data_file,
        shop_name=shop_name,
        bread_unit_price=bread_unit_price,
        currency=currency,
    )
    log.info("Initialised ledger '%s' with config '%s'", data_path, config_path)
    return config_path


if __name__ == "__main__":
    print("Initializing new shop ledger data file...")
    written = create_store(Path.cwd())
    print(f"Successfully created '{written}'.")
    print("You can now run 'shop-ledger' to interact with the ledger.")
