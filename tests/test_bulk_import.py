"""Tests for CSV-style bulk imports."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from shop_ledger import bulk_import, core_logic, data_manager
from shop_ledger.constants import ImportEntity, TransactionType


CUSTOMER_MAPPING = {"ID": "id", "Nom": "name", "Tel": "phone", "Solde": "balance", "Notes": "ignore"}


def _seed_customer(context, customer_id: str) -> None:
    with context.repository.transaction() as snapshot:
        snapshot.customers[customer_id] = data_manager.Customer(
            id=customer_id, name="Existing", phone="", created_at=datetime(2024, 1, 1, tzinfo=UTC)
        )


def test_rows_without_id_continue_after_highest_numeric(context):
    """Rows without an id continue after the highest numeric id in the store."""

    _seed_customer(context, "7")
    _seed_customer(context, "legacy-12")
    rows = [
        {"ID": "", "Nom": "Sofiane", "Tel": "0551", "Solde": "", "Notes": "x"},
        {"ID": None, "Nom": "Lina", "Tel": "", "Solde": None, "Notes": ""},
    ]

    result = bulk_import.import_rows(context, ImportEntity.CUSTOMERS, rows, CUSTOMER_MAPPING)

    assert result.imported_ids == ["8", "9"]
    customers = context.repository.snapshot().customers
    assert customers["8"].name == "Sofiane"
    assert customers["8"].phone == "0551"
    assert customers["9"].balance == Decimal("0")


def test_existing_id_rejects_whole_batch(context):
    """An explicit id already in the store should reject the whole batch."""

    _seed_customer(context, "7")
    rows = [
        {"ID": "", "Nom": "Sofiane"},
        {"ID": "7", "Nom": "Clash"},
    ]
    with pytest.raises(core_logic.DuplicateIdError):
        bulk_import.import_rows(context, ImportEntity.CUSTOMERS, rows, {"ID": "id", "Nom": "name"})
    assert set(context.repository.snapshot().customers) == {"7"}


def test_id_repeated_within_batch_rejected(context):
    """The same explicit id twice in one batch is a duplicate."""

    rows = [{"ID": "3", "Nom": "A"}, {"ID": "3", "Nom": "B"}]
    with pytest.raises(core_logic.DuplicateIdError):
        bulk_import.import_rows(context, ImportEntity.CUSTOMERS, rows, {"ID": "id", "Nom": "name"})


def test_explicit_ids_raise_the_next_allocated_id(context):
    """Allocated ids should continue after the highest explicit id in the batch."""

    rows = [{"ID": "20", "Nom": "A"}, {"ID": "", "Nom": "B"}]
    result = bulk_import.import_rows(context, ImportEntity.CUSTOMERS, rows, {"ID": "id", "Nom": "name"})
    assert result.imported_ids == ["20", "21"]


def test_missing_mandatory_mapping(context):
    """A product mapping without sellingPrice is rejected up front."""

    with pytest.raises(core_logic.ValidationError):
        bulk_import.import_rows(context, ImportEntity.PRODUCTS, [{"Nom": "Tea"}], {"Nom": "name"})


def test_unknown_and_repeated_targets(context):
    """Mappings to unknown fields or to one field twice are rejected."""

    with pytest.raises(core_logic.ValidationError):
        bulk_import.validate_mapping(ImportEntity.CUSTOMERS, {"A": "name", "B": "nickname"})
    with pytest.raises(core_logic.ValidationError):
        bulk_import.validate_mapping(ImportEntity.CUSTOMERS, {"A": "name", "B": "name"})


def test_blank_rows_are_skipped_and_empty_import_rejected(context):
    """Rows with only blank cells are skipped; a batch left empty is rejected."""

    rows = [{"Nom": "  "}, {"Nom": None}]
    with pytest.raises(core_logic.ValidationError):
        bulk_import.import_rows(context, ImportEntity.CUSTOMERS, rows, {"Nom": "name"})


def test_row_without_name_rejects_batch(context):
    """One row without a name should reject every row of the batch."""

    rows = [{"Nom": "Ok", "Tel": ""}, {"Nom": "", "Tel": "0552"}]
    with pytest.raises(core_logic.ValidationError):
        bulk_import.import_rows(context, ImportEntity.CUSTOMERS, rows, {"Nom": "name", "Tel": "phone"})
    assert context.repository.snapshot().customers == {}


def test_opening_balances_are_backed_by_transactions(context):
    """Imported balances should arrive as opening-balance transactions."""

    rows = [
        {"Nom": "Owes", "Solde": "1 250,00 DA"},
        {"Nom": "Credit", "Solde": "-300"},
    ]
    result = bulk_import.import_rows(
        context, ImportEntity.CUSTOMERS, rows, {"Nom": "name", "Solde": "balance"}
    )

    snapshot = context.repository.snapshot()
    owes, credit = (snapshot.customers[identifier] for identifier in result.imported_ids)
    assert owes.balance == Decimal("1250.00")
    assert credit.balance == Decimal("-300")
    kinds = sorted(snapshot.transactions[tx_id].type for tx_id in result.opening_balance_ids)
    assert kinds == [TransactionType.DEBT, TransactionType.PAYMENT]
    assert core_logic.find_balance_drift(snapshot) == []


def test_supplier_opening_balance(context):
    """A supplier balance cell should become an opening purchase."""

    result = bulk_import.import_rows(
        context,
        ImportEntity.SUPPLIERS,
        [{"Name": "Mill", "Owed": "4000", "Cat": "Flour"}],
        {"Name": "name", "Owed": "balance", "Cat": "category"},
    )
    snapshot = context.repository.snapshot()
    supplier = snapshot.suppliers[result.imported_ids[0]]
    assert supplier.balance == Decimal("4000")
    assert supplier.category == "Flour"
    assert core_logic.find_balance_drift(snapshot) == []


def test_product_import(context):
    """Product rows should map prices, barcodes, stock and supplier."""

    supplier = core_logic.add_supplier(context, name="Dairy Co")
    rows = [
        {
            "Name": "Yogurt",
            "Price": "45",
            "Cost": "30,5",
            "Codes": "111; 222",
            "Qty": "12",
            "Supplier": supplier.id,
        }
    ]
    mapping = {
        "Name": "name",
        "Price": "sellingPrice",
        "Cost": "purchasePrice",
        "Codes": "barcodes",
        "Qty": "stock",
        "Supplier": "supplierId",
    }
    result = bulk_import.import_rows(context, ImportEntity.PRODUCTS, rows, mapping)

    product = context.repository.snapshot().products[result.imported_ids[0]]
    assert product.selling_price == Decimal("45")
    assert product.purchase_price == Decimal("30.5")
    assert product.barcodes == ("111", "222")
    assert product.stock == 12
    assert product.supplier_id == supplier.id


@pytest.mark.parametrize(
    "row",
    [
        {"Name": "Free", "Price": "0"},
        {"Name": "Half", "Price": "10", "Qty": "1.5"},
        {"Name": "Junk", "Price": "abc"},
    ],
)
def test_invalid_product_rows(context, row):
    """Invalid price or stock cells should reject the batch without writes."""

    mapping = {"Name": "name", "Price": "sellingPrice", "Qty": "stock"}
    with pytest.raises(core_logic.ValidationError):
        bulk_import.import_rows(context, ImportEntity.PRODUCTS, [row], mapping)
    assert context.repository.snapshot().products == {}


def test_product_with_unknown_supplier(context):
    """A product row naming a missing supplier is rejected."""

    with pytest.raises(core_logic.NotFoundError):
        bulk_import.import_rows(
            context,
            ImportEntity.PRODUCTS,
            [{"Name": "Tea", "Price": "80", "Supplier": "404"}],
            {"Name": "name", "Price": "sellingPrice", "Supplier": "supplierId"},
        )


def test_product_barcode_clash(context, product):
    """A barcode already in the catalog rejects the imported product."""

    with pytest.raises(core_logic.ValidationError):
        bulk_import.import_rows(
            context,
            ImportEntity.PRODUCTS,
            [{"Name": "Copy", "Price": "80", "Codes": product.barcodes[0]}],
            {"Name": "name", "Price": "sellingPrice", "Codes": "barcodes"},
        )


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1 250,00 DA", Decimal("1250.00")),
        ("1,250.50", Decimal("1250.50")),
        ("1.250,00", Decimal("1250.00")),
        ("1.250.000,5 DA", Decimal("1250000.5")),
        ("12,5", Decimal("12.5")),
        ("DZD 99", Decimal("99")),
        (42, Decimal("42")),
        ("", None),
        (None, None),
    ],
)
def test_parse_number(raw, expected):
    """parse_number should strip currency and grouping noise."""

    assert bulk_import.parse_number(raw, row=1, column="x") == expected


@pytest.mark.parametrize("raw", [float("inf"), float("-inf"), float("nan"), Decimal("NaN"), "Infinity"])
def test_parse_number_rejects_non_finite(raw):
    """Infinite and NaN cells are rejected instead of imported."""

    with pytest.raises(core_logic.ValidationError):
        bulk_import.parse_number(raw, row=3, column="balance")
