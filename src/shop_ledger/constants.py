"""Enumerations and fixed values shared across the ledger modules.

The store, the business rules and the CLI all import from here so that
transaction kinds, sheet names and wire-level markers have one definition.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Version of the persisted snapshot layout; bumped when field names change.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_BREAD_UNIT_PRICE = Decimal("10")
DEFAULT_CURRENCY = "DZD"
DEFAULT_EXPENSE_CATEGORIES: tuple[str, ...] = ("Rent", "Utilities", "Supplies", "Wages", "Other")

# Date format of the daily reconciliation marker.
MARKER_DATE_FORMAT = "%Y-%m-%d"

IGNORE_COLUMN = "ignore"


class TransactionType(str, Enum):
    """Kinds of entries on a customer account."""

    DEBT = "debt"
    PAYMENT = "payment"


class SupplierTransactionType(str, Enum):
    """Kinds of entries on a supplier account."""

    PURCHASE = "purchase"
    PAYMENT = "payment"


class ImportEntity(str, Enum):
    """Collections that accept bulk CSV rows."""

    CUSTOMERS = "customers"
    PRODUCTS = "products"
    SUPPLIERS = "suppliers"


class SheetName(str, Enum):
    """Worksheet names used by the workbook-backed store."""

    CUSTOMERS = "Customers"
    SUPPLIERS = "Suppliers"
    PRODUCTS = "Products"
    TRANSACTIONS = "Transactions"
    SUPPLIER_TRANSACTIONS = "SupplierTransactions"
    BREAD_ORDERS = "BreadOrders"
    EXPENSES = "Expenses"
    SETTINGS = "Settings"


class Description:
    """Templates for descriptions of generated transactions."""

    ORDER_DEBT = "Order: {name}"
    ORDER_PAYMENT = "Order settled: {name}"
    ORDER_DEBT_AUTO = "Order (auto): {name}"
    SALE_DEBT = "Checkout purchase"
    SALE_PAYMENT = "Checkout payment"
    OPENING_BALANCE = "Opening balance"
    PURCHASE_PAYMENT = "Payment for invoice {invoice}"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_BREAD_UNIT_PRICE",
    "DEFAULT_CURRENCY",
    "DEFAULT_EXPENSE_CATEGORIES",
    "MARKER_DATE_FORMAT",
    "IGNORE_COLUMN",
    "TransactionType",
    "SupplierTransactionType",
    "ImportEntity",
    "SheetName",
    "Description",
]
