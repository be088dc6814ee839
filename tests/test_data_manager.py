"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
import json
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
import pytest

from shop_ledger import constants, data_manager
from shop_ledger.constants import TransactionType


CREATED = datetime(2024, 5, 1, 8, 30, tzinfo=UTC)


def _sample_snapshot() -> data_manager.LedgerSnapshot:
    snapshot = data_manager.LedgerSnapshot()
    snapshot.customers["1"] = data_manager.Customer(
        id="1", name="Amina", phone="0550", created_at=CREATED, balance=Decimal("20")
    )
    snapshot.products["1"] = data_manager.Product(
        id="1",
        name="Milk",
        category="Dairy",
        selling_price=Decimal("120.5"),
        barcodes=("111", "222"),
        stock=4,
    )
    snapshot.bread_orders["1"] = data_manager.BreadOrder(
        id="1",
        name="Amina",
        quantity=10,
        unit_price=Decimal("2"),
        total_amount=Decimal("20"),
        created_at=CREATED,
        customer_id="1",
        customer_name="Amina",
    )
    snapshot.put_transaction(
        data_manager.Transaction(
            id="1",
            customer_id="1",
            type=TransactionType.DEBT,
            amount=Decimal("20"),
            description="Order: Amina",
            date=CREATED,
            order_id="1",
        )
    )
    snapshot.settings = data_manager.Settings(bread_unit_price=Decimal("2"), shop_name="Corner")
    return snapshot


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile=ledger.json")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_path


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    if any((parent / "config.ini").exists() for parent in tmp_path.parents):
        pytest.skip("a config.ini exists above the temporary directory")
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, bread_unit_price="12.5")
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == bundle.data_path.resolve()
    assert settings.shop_name == "Test Shop"
    assert settings.bread_unit_price == Decimal("12.5")
    assert settings.currency == "DZD"


def test_parse_settings_requires_system_section(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_defaults_are_optional(tmp_path):
    """Optional config keys fall back to their defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=x.json\nShopName=S\nSchemaVersion=1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.bread_unit_price == constants.DEFAULT_BREAD_UNIT_PRICE


@pytest.mark.parametrize("price", ["cheap", "Infinity", "NaN"])
def test_parse_settings_rejects_bad_price(tmp_path, price):
    """A non-numeric or non-finite bread price in config.ini is rejected."""

    parser = configparser.ConfigParser()
    parser.read_string(
        f"[System]\nDataFile=x.json\nShopName=S\nSchemaVersion=1.0.0\n[Defaults]\nBreadUnitPrice={price}\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Order index
# ---------------------------------------------------------------------------


def test_put_transaction_rejects_second_debt_for_order():
    """An order may link at most one debt transaction."""

    snapshot = _sample_snapshot()
    duplicate = data_manager.Transaction(
        id="2",
        customer_id="1",
        type=TransactionType.DEBT,
        amount=Decimal("5"),
        description="dup",
        date=CREATED,
        order_id="1",
    )
    with pytest.raises(ValueError):
        snapshot.put_transaction(duplicate)
    assert "2" not in snapshot.transactions
    assert snapshot.order_links("1").debt_id == "1"


def test_drop_transaction_clears_order_link():
    """Dropping a linked transaction clears its order link."""

    snapshot = _sample_snapshot()
    snapshot.drop_transaction("1")
    assert snapshot.order_links("1").is_empty()
    assert snapshot.linked_transaction("1", TransactionType.DEBT) is None


def test_put_transaction_replacing_link_with_none_detaches():
    """Clearing order_id on a transaction removes its order link."""

    snapshot = _sample_snapshot()
    snapshot.put_transaction(replace(snapshot.transactions["1"], order_id=None))
    assert snapshot.order_links("1").is_empty()
    assert snapshot.transactions["1"].order_id is None


def test_copy_is_independent():
    """Changes to a copy should not reach the original snapshot."""

    snapshot = _sample_snapshot()
    working = snapshot.copy()
    working.drop_transaction("1")
    working.customers.clear()
    assert "1" in snapshot.transactions
    assert snapshot.order_links("1").debt_id == "1"
    assert "1" in snapshot.customers


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def test_snapshot_document_uses_wire_field_names():
    """The document should use the camelCase wire field names."""

    document = data_manager.snapshot_to_document(_sample_snapshot())
    assert document["schemaVersion"] == constants.EXPECTED_SCHEMA_VERSION
    assert set(document["customers"][0]) == set(data_manager.CUSTOMER_FIELDS)
    assert set(document["products"][0]) == set(data_manager.PRODUCT_FIELDS)
    assert set(document["breadOrders"][0]) == set(data_manager.BREAD_ORDER_FIELDS)
    assert document["customers"][0]["balance"] == 20
    assert document["products"][0]["sellingPrice"] == 120.5
    assert document["products"][0]["barcodes"] == ["111", "222"]
    assert document["transactions"][0]["orderId"] == "1"
    assert document["settings"]["breadUnitPrice"] == 2


def test_snapshot_from_document_restores_records_and_index():
    """Loading a document restores records and the order index."""

    document = json.loads(json.dumps(data_manager.snapshot_to_document(_sample_snapshot())))
    restored = data_manager.snapshot_from_document(document)
    original = _sample_snapshot()
    assert restored.customers == original.customers
    assert restored.products == original.products
    assert restored.transactions == original.transactions
    assert restored.order_links("1").debt_id == "1"
    assert restored.settings.shop_name == "Corner"


def test_snapshot_from_document_keeps_unknown_collections():
    """Unknown top-level collections survive a load and save."""

    document = data_manager.snapshot_to_document(_sample_snapshot())
    document["auditLog"] = [{"id": "a1", "action": "login"}]
    restored = data_manager.snapshot_from_document(document)
    assert restored.extras == {"auditLog": [{"id": "a1", "action": "login"}]}
    assert data_manager.snapshot_to_document(restored)["auditLog"] == [{"id": "a1", "action": "login"}]


def test_snapshot_from_document_folds_legacy_price_and_barcode():
    """Legacy breadUnitPrice and barcode fields are folded on load."""

    document = {
        "breadUnitPrice": 15,
        "products": [{"id": "9", "name": "Tea", "sellingPrice": "80", "barcode": "999"}],
    }
    restored = data_manager.snapshot_from_document(document)
    assert restored.settings.bread_unit_price == Decimal("15")
    assert restored.products["9"].barcodes == ("999",)


def test_snapshot_from_document_rejects_duplicate_ids():
    """Two records with the same id make the document invalid."""

    document = data_manager.snapshot_to_document(_sample_snapshot())
    document["customers"].append(dict(document["customers"][0]))
    with pytest.raises(ValueError):
        data_manager.snapshot_from_document(document)


def test_snapshot_from_document_rejects_malformed_record():
    """A record without an id makes the document invalid."""

    with pytest.raises(ValueError):
        data_manager.snapshot_from_document({"customers": [{"name": "no id"}]})


def test_money_to_wire_keeps_integers_integral():
    """Whole amounts are written as integers, others as floats."""

    assert data_manager.money_to_wire(Decimal("20.00")) == 20
    assert isinstance(data_manager.money_to_wire(Decimal("20.00")), int)
    assert data_manager.money_to_wire(Decimal("2.5")) == 2.5


# ---------------------------------------------------------------------------
# Backing stores
# ---------------------------------------------------------------------------


def test_json_store_round_trip(tmp_path):
    """The JSON store should save and load a snapshot."""

    store = data_manager.JsonFileStore(tmp_path / "ledger.json")
    store.save(_sample_snapshot())
    loaded = store.load()
    assert loaded.customers["1"].balance == Decimal("20")
    assert loaded.order_links("1").debt_id == "1"
    assert not list(tmp_path.glob(".ledger.json.*"))


def test_json_store_missing_file_raises(tmp_path):
    """Loading a missing JSON file raises FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.JsonFileStore(tmp_path / "missing.json").load()


def test_json_store_corrupt_file_is_store_unavailable(tmp_path):
    """An unreadable JSON file surfaces as StoreUnavailable."""

    path = tmp_path / "ledger.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(data_manager.StoreUnavailable):
        data_manager.JsonFileStore(path).load()


def test_json_store_failed_write_leaves_previous_file(tmp_path, monkeypatch):
    """A failed save must leave the previous file intact."""

    path = tmp_path / "ledger.json"
    store = data_manager.JsonFileStore(path)
    store.save(_sample_snapshot())
    before = path.read_text(encoding="utf-8")

    def _boom(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(data_manager.os, "replace", _boom)
    with pytest.raises(data_manager.StoreUnavailable):
        store.save(data_manager.LedgerSnapshot())
    assert path.read_text(encoding="utf-8") == before


def test_workbook_store_round_trip(tmp_path):
    """The workbook store should save and load a snapshot."""

    path = tmp_path / "ledger.xlsx"
    store = data_manager.WorkbookStore(path)
    store.save(_sample_snapshot())

    workbook = openpyxl.load_workbook(path)
    assert constants.SheetName.CUSTOMERS.value in workbook.sheetnames
    header = [cell.value for cell in workbook[constants.SheetName.PRODUCTS.value][1]]
    assert header == list(data_manager.PRODUCT_FIELDS)
    assert workbook[constants.SheetName.PRODUCTS.value]["A1"].font.bold

    loaded = store.load()
    assert loaded.products["1"].barcodes == ("111", "222")
    assert loaded.customers["1"].balance == Decimal("20")
    assert loaded.transactions["1"].order_id == "1"
    assert loaded.settings.bread_unit_price == Decimal("2")


def test_expense_uses_wire_field_names():
    """Expenses should serialize with the camelCase wire fields."""

    expense = data_manager.Expense(
        id="3", description="Flour sacks", category="Supplies", amount=Decimal("1500"), date=CREATED
    )
    wire = data_manager.serialize_expense(expense)
    assert wire == {
        "id": "3",
        "description": "Flour sacks",
        "category": "Supplies",
        "amount": 1500,
        "date": CREATED.isoformat(),
    }
    assert data_manager.deserialize_expense(wire) == expense


def test_settings_expense_categories_default_and_reject_bad_shape():
    """Missing categories fall back to the defaults; a non-list is rejected."""

    assert data_manager.deserialize_settings({}).expense_categories == constants.DEFAULT_EXPENSE_CATEGORIES
    restored = data_manager.deserialize_settings({"expenseCategories": '["Rent", "Gas"]'})
    assert restored.expense_categories == ("Rent", "Gas")
    with pytest.raises(ValueError):
        data_manager.deserialize_settings({"expenseCategories": 5})


def test_workbook_store_keeps_expenses_and_categories(tmp_path):
    """Expenses and expense categories survive a workbook save and load."""

    snapshot = _sample_snapshot()
    snapshot.expenses["1"] = data_manager.Expense(
        id="1", description="Electricity", category="Utilities", amount=Decimal("320.5"), date=CREATED
    )
    snapshot.settings = replace(snapshot.settings, expense_categories=("Utilities", "Rent"))
    path = tmp_path / "ledger.xlsx"
    store = data_manager.WorkbookStore(path)
    store.save(snapshot)

    workbook = openpyxl.load_workbook(path)
    header = [cell.value for cell in workbook[constants.SheetName.EXPENSES.value][1]]
    assert header == list(data_manager.EXPENSE_FIELDS)

    loaded = store.load()
    assert loaded.expenses == snapshot.expenses
    assert loaded.settings.expense_categories == ("Utilities", "Rent")


def test_workbook_store_corrupt_file_is_store_unavailable(tmp_path):
    """An unreadable workbook surfaces as StoreUnavailable."""

    path = tmp_path / "ledger.xlsx"
    path.write_bytes(b"not a workbook")
    with pytest.raises(data_manager.StoreUnavailable):
        data_manager.WorkbookStore(path).load()


def test_open_store_picks_backend_by_suffix(tmp_path):
    """open_store should choose the store from the file suffix."""

    assert isinstance(data_manager.open_store(tmp_path / "a.json"), data_manager.JsonFileStore)
    assert isinstance(data_manager.open_store(tmp_path / "a.xlsx"), data_manager.WorkbookStore)
    with pytest.raises(ValueError):
        data_manager.open_store(tmp_path / "a.csv")
