"""Data access layer for the shop ledger.

This module owns everything that touches the durable backing store. Business
rules belong elsewhere.

The public API is organised around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Typed records: immutable dataclasses for every entity plus the mutable
   :class:`LedgerSnapshot` that groups them.
3. Wire format: converting records to and from JSON-compatible dictionaries
   whose field names match previously exported backup and CSV files.
4. Backing stores: :class:`JsonFileStore` and :class:`WorkbookStore`, both
   exposing ``load()`` and ``save(snapshot)``.
"""


from __future__ import annotations

import configparser
import json
import os
import tempfile
import zipfile
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException

from . import log
from .constants import (
    DEFAULT_BREAD_UNIT_PRICE,
    DEFAULT_CURRENCY,
    DEFAULT_EXPENSE_CATEGORIES,
    EXPECTED_SCHEMA_VERSION,
    SheetName,
    SupplierTransactionType,
    TransactionType,
)


CONFIG_FILE_NAME = "config.ini"


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be read or written."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    bread_unit_price: Decimal = DEFAULT_BREAD_UNIT_PRICE
    currency: str = DEFAULT_CURRENCY


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    If the caller provides ``explicit_path`` it is returned untouched so a
    non-standard location can be targeted deliberately. Otherwise the search
    walks from the current working directory up to the filesystem root and
    returns the first ``config.ini`` found.

    Args:
        explicit_path (Path | None): Optional path to use instead of searching.

    Returns:
        Path: The supplied or discovered configuration file.

    Raises:
        FileNotFoundError: If no ``config.ini`` exists in any parent directory.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` into a ``ConfigParser``.

    Validation of individual options is left to :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` entries are optional and
    fall back to the package defaults. Relative ``DataFile`` values are
    anchored to ``base_path`` (or the current directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings with an absolute data file path.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``BreadUnitPrice`` is not a number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    price_raw = parser.get("Defaults", "BreadUnitPrice", fallback=str(DEFAULT_BREAD_UNIT_PRICE))
    try:
        bread_unit_price = Decimal(price_raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid BreadUnitPrice in configuration: {price_raw!r}") from exc
    if not bread_unit_price.is_finite():
        raise ValueError(f"Invalid BreadUnitPrice in configuration: {price_raw!r}")
    currency = parser.get("Defaults", "Currency", fallback=DEFAULT_CURRENCY)

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        bread_unit_price=bread_unit_price,
        currency=currency,
    )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Customer:
    """A credit account held by the shop; positive balance means the customer owes."""

    id: str
    name: str
    phone: str
    created_at: datetime
    balance: Decimal = Decimal("0")
    settlement_day: Optional[str] = None
    email: str = ""


@dataclass(frozen=True)
class Supplier:
    """A supplier account; positive balance means the shop owes the supplier."""

    id: str
    name: str
    category: str
    created_at: datetime
    balance: Decimal = Decimal("0")
    contact: str = ""
    phone: str = ""
    visit_day: Optional[str] = None


@dataclass(frozen=True)
class SaleItem:
    """Line detail attached to a checkout debt for reporting."""

    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    purchase_price: Decimal


@dataclass(frozen=True)
class Transaction:
    """One entry on a customer account."""

    id: str
    customer_id: str
    type: TransactionType
    amount: Decimal
    description: str
    date: datetime
    order_id: Optional[str] = None
    sale_items: Optional[tuple[SaleItem, ...]] = None


@dataclass(frozen=True)
class PurchaseItem:
    """Line detail of a supplier purchase invoice."""

    product_id: Optional[str]
    product_name: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class SupplierTransaction:
    """One entry on a supplier account."""

    id: str
    supplier_id: str
    type: SupplierTransactionType
    amount: Decimal
    description: str
    date: datetime
    items: Optional[tuple[PurchaseItem, ...]] = None


@dataclass(frozen=True)
class Product:
    """A catalog entry with its on-hand stock."""

    id: str
    name: str
    category: str
    selling_price: Decimal
    purchase_price: Decimal = Decimal("0")
    description: str = ""
    barcodes: tuple[str, ...] = ()
    stock: int = 0
    min_stock: int = 0
    supplier_id: Optional[str] = None
    is_archived: bool = False


@dataclass(frozen=True)
class BreadOrder:
    """A bread order; ``unit_price`` is a snapshot taken at creation time."""

    id: str
    name: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    created_at: datetime
    is_paid: bool = False
    is_delivered: bool = False
    is_pinned: bool = False
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None


@dataclass(frozen=True)
class Expense:
    """Money spent on running the shop; not tied to any account."""

    id: str
    description: str
    category: str
    amount: Decimal
    date: datetime


@dataclass(frozen=True)
class Settings:
    """Shop-wide settings persisted with the snapshot."""

    bread_unit_price: Decimal = DEFAULT_BREAD_UNIT_PRICE
    shop_name: str = ""
    currency: str = DEFAULT_CURRENCY
    last_reconciliation_date: Optional[str] = None
    expense_categories: tuple[str, ...] = DEFAULT_EXPENSE_CATEGORIES


@dataclass(frozen=True)
class OrderLinks:
    """Identifiers of the debt and payment transactions generated by one order."""

    debt_id: Optional[str] = None
    payment_id: Optional[str] = None

    def get(self, transaction_type: TransactionType) -> Optional[str]:
        return self.debt_id if transaction_type is TransactionType.DEBT else self.payment_id

    def with_link(self, transaction_type: TransactionType, transaction_id: Optional[str]) -> "OrderLinks":
        if transaction_type is TransactionType.DEBT:
            return replace(self, debt_id=transaction_id)
        return replace(self, payment_id=transaction_id)

    def is_empty(self) -> bool:
        return self.debt_id is None and self.payment_id is None


@dataclass
class LedgerSnapshot:
    """The full dataset of one shop.

    Records are immutable; collections are plain dictionaries keyed by id so
    a working copy only needs shallow copies of each mapping. Customer
    transactions must go through :meth:`put_transaction` and
    :meth:`drop_transaction` so the ``order_id`` index stays in step.
    """

    customers: Dict[str, Customer] = field(default_factory=dict)
    suppliers: Dict[str, Supplier] = field(default_factory=dict)
    products: Dict[str, Product] = field(default_factory=dict)
    transactions: Dict[str, Transaction] = field(default_factory=dict)
    supplier_transactions: Dict[str, SupplierTransaction] = field(default_factory=dict)
    bread_orders: Dict[str, BreadOrder] = field(default_factory=dict)
    expenses: Dict[str, Expense] = field(default_factory=dict)
    settings: Settings = field(default_factory=Settings)
    extras: Dict[str, Any] = field(default_factory=dict)
    _order_links: Dict[str, OrderLinks] = field(default_factory=dict, repr=False, compare=False)

    def copy(self) -> "LedgerSnapshot":
        """Return an independent working copy sharing the immutable records."""

        return LedgerSnapshot(
            customers=dict(self.customers),
            suppliers=dict(self.suppliers),
            products=dict(self.products),
            transactions=dict(self.transactions),
            supplier_transactions=dict(self.supplier_transactions),
            bread_orders=dict(self.bread_orders),
            expenses=dict(self.expenses),
            settings=self.settings,
            extras=json.loads(json.dumps(self.extras)),
            _order_links=dict(self._order_links),
        )

    def order_links(self, order_id: str) -> OrderLinks:
        return self._order_links.get(order_id, OrderLinks())

    def linked_transaction(self, order_id: str, transaction_type: TransactionType) -> Optional[Transaction]:
        transaction_id = self.order_links(order_id).get(transaction_type)
        if transaction_id is None:
            return None
        return self.transactions.get(transaction_id)

    def put_transaction(self, transaction: Transaction) -> None:
        """Insert or replace a customer transaction and maintain the order index.

        Raises:
            ValueError: If the order already links a different transaction of
                the same type.
        """

        previous = self.transactions.get(transaction.id)
        if previous is not None and previous.order_id is not None:
            self._unlink(previous.order_id, previous)

        if transaction.order_id is not None:
            links = self.order_links(transaction.order_id)
            existing = links.get(transaction.type)
            if existing is not None and existing != transaction.id:
                if previous is not None and previous.order_id is not None:
                    self._link(previous.order_id, previous)
                raise ValueError(
                    f"Order '{transaction.order_id}' already has a {transaction.type.value} "
                    f"transaction '{existing}'"
                )
            self._link(transaction.order_id, transaction)

        self.transactions[transaction.id] = transaction

    def drop_transaction(self, transaction_id: str) -> Transaction:
        """Remove a customer transaction and its index entry.

        Raises:
            KeyError: If the transaction does not exist.
        """

        transaction = self.transactions.pop(transaction_id)
        if transaction.order_id is not None:
            self._unlink(transaction.order_id, transaction)
        return transaction

    def rebuild_order_index(self) -> None:
        """Recompute the ``order_id`` index from the transaction collection.

        Raises:
            ValueError: If the loaded data links two transactions of the same
                type to one order.
        """

        self._order_links = {}
        for transaction in self.transactions.values():
            if transaction.order_id is None:
                continue
            links = self.order_links(transaction.order_id)
            existing = links.get(transaction.type)
            if existing is not None:
                raise ValueError(
                    f"Order '{transaction.order_id}' links two {transaction.type.value} "
                    f"transactions: '{existing}' and '{transaction.id}'"
                )
            self._link(transaction.order_id, transaction)
        log.debug("Rebuilt order index with %d linked orders", len(self._order_links))

    def _link(self, order_id: str, transaction: Transaction) -> None:
        links = self.order_links(order_id)
        self._order_links[order_id] = links.with_link(transaction.type, transaction.id)

    def _unlink(self, order_id: str, transaction: Transaction) -> None:
        links = self.order_links(order_id)
        if links.get(transaction.type) != transaction.id:
            return
        links = links.with_link(transaction.type, None)
        if links.is_empty():
            self._order_links.pop(order_id, None)
        else:
            self._order_links[order_id] = links


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


CUSTOMER_FIELDS: tuple[str, ...] = ("id", "name", "email", "phone", "createdAt", "balance", "settlementDay")
SUPPLIER_FIELDS: tuple[str, ...] = (
    "id", "name", "contact", "phone", "category", "balance", "visitDay", "createdAt",
)
PRODUCT_FIELDS: tuple[str, ...] = (
    "id", "name", "category", "description", "barcodes", "purchasePrice",
    "sellingPrice", "stock", "minStock", "supplierId", "isArchived",
)
TRANSACTION_FIELDS: tuple[str, ...] = (
    "id", "customerId", "type", "amount", "date", "description", "orderId", "saleItems",
)
SUPPLIER_TRANSACTION_FIELDS: tuple[str, ...] = (
    "id", "supplierId", "type", "amount", "date", "description", "items",
)
BREAD_ORDER_FIELDS: tuple[str, ...] = (
    "id", "name", "quantity", "unitPrice", "totalAmount", "isPaid", "isDelivered",
    "isPinned", "createdAt", "customerId", "customerName",
)
EXPENSE_FIELDS: tuple[str, ...] = ("id", "description", "category", "amount", "date")

# Top-level keys of the snapshot document, in export order.
COLLECTION_KEYS: tuple[str, ...] = (
    "customers",
    "transactions",
    "breadOrders",
    "suppliers",
    "supplierTransactions",
    "products",
    "expenses",
)


def money_to_wire(value: Decimal) -> int | float:
    """Render a Decimal as a JSON number, keeping integers integral."""

    if value == value.to_integral_value():
        return int(value)
    return float(value)


def to_decimal(raw: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Coerce wire values (numbers or numeric strings) into ``Decimal``."""

    if raw is None or raw == "":
        return default
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {raw!r}") from exc


def to_datetime(raw: Any) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""

    if isinstance(raw, datetime):
        parsed = raw
    elif raw is None or raw == "":
        raise ValueError("Missing date value")
    else:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_str(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    return bool(raw)


def serialize_customer(record: Customer) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "email": record.email,
        "phone": record.phone,
        "createdAt": record.created_at.isoformat(),
        "balance": money_to_wire(record.balance),
        "settlementDay": record.settlement_day,
    }


def deserialize_customer(raw: Mapping[str, Any]) -> Customer:
    return Customer(
        id=str(raw["id"]),
        name=str(raw["name"]),
        phone=str(raw.get("phone") or ""),
        created_at=to_datetime(raw.get("createdAt")),
        balance=to_decimal(raw.get("balance")),
        settlement_day=_optional_str(raw.get("settlementDay")),
        email=str(raw.get("email") or ""),
    )


def serialize_supplier(record: Supplier) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "contact": record.contact,
        "phone": record.phone,
        "category": record.category,
        "balance": money_to_wire(record.balance),
        "visitDay": record.visit_day,
        "createdAt": record.created_at.isoformat(),
    }


def deserialize_supplier(raw: Mapping[str, Any]) -> Supplier:
    created = raw.get("createdAt")
    return Supplier(
        id=str(raw["id"]),
        name=str(raw["name"]),
        category=str(raw.get("category") or ""),
        created_at=to_datetime(created) if created else datetime.now(UTC),
        balance=to_decimal(raw.get("balance")),
        contact=str(raw.get("contact") or ""),
        phone=str(raw.get("phone") or ""),
        visit_day=_optional_str(raw.get("visitDay")),
    )


def serialize_product(record: Product) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "category": record.category,
        "description": record.description,
        "barcodes": list(record.barcodes),
        "purchasePrice": money_to_wire(record.purchase_price),
        "sellingPrice": money_to_wire(record.selling_price),
        "stock": record.stock,
        "minStock": record.min_stock,
        "supplierId": record.supplier_id,
        "isArchived": record.is_archived,
    }


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    """Build a :class:`Product`, accepting the legacy single ``barcode`` field."""

    barcodes = raw.get("barcodes")
    if barcodes is None:
        legacy = raw.get("barcode")
        barcodes = [legacy] if legacy else []
    elif isinstance(barcodes, str):
        barcodes = [part for part in barcodes.split(";")]
    return Product(
        id=str(raw["id"]),
        name=str(raw["name"]),
        category=str(raw.get("category") or ""),
        description=str(raw.get("description") or ""),
        barcodes=tuple(str(code).strip() for code in barcodes if str(code).strip()),
        purchase_price=to_decimal(raw.get("purchasePrice")),
        selling_price=to_decimal(raw.get("sellingPrice")),
        stock=int(to_decimal(raw.get("stock"))),
        min_stock=int(to_decimal(raw.get("minStock"))),
        supplier_id=_optional_str(raw.get("supplierId")),
        is_archived=_as_bool(raw.get("isArchived", False)),
    )


def serialize_sale_item(item: SaleItem) -> Dict[str, Any]:
    return {
        "productId": item.product_id,
        "productName": item.product_name,
        "quantity": item.quantity,
        "unitPrice": money_to_wire(item.unit_price),
        "purchasePrice": money_to_wire(item.purchase_price),
    }


def deserialize_sale_item(raw: Mapping[str, Any]) -> SaleItem:
    return SaleItem(
        product_id=str(raw["productId"]),
        product_name=str(raw.get("productName") or ""),
        quantity=int(to_decimal(raw.get("quantity"))),
        unit_price=to_decimal(raw.get("unitPrice")),
        purchase_price=to_decimal(raw.get("purchasePrice")),
    )


def serialize_transaction(record: Transaction) -> Dict[str, Any]:
    return {
        "id": record.id,
        "customerId": record.customer_id,
        "type": record.type.value,
        "amount": money_to_wire(record.amount),
        "date": record.date.isoformat(),
        "description": record.description,
        "orderId": record.order_id,
        "saleItems": (
            [serialize_sale_item(item) for item in record.sale_items]
            if record.sale_items is not None
            else None
        ),
    }


def deserialize_transaction(raw: Mapping[str, Any]) -> Transaction:
    items_raw = raw.get("saleItems")
    return Transaction(
        id=str(raw["id"]),
        customer_id=str(raw["customerId"]),
        type=TransactionType(raw["type"]),
        amount=to_decimal(raw["amount"]),
        description=str(raw.get("description") or ""),
        date=to_datetime(raw.get("date")),
        order_id=_optional_str(raw.get("orderId")),
        sale_items=(
            tuple(deserialize_sale_item(item) for item in items_raw)
            if items_raw is not None
            else None
        ),
    )


def serialize_supplier_transaction(record: SupplierTransaction) -> Dict[str, Any]:
    return {
        "id": record.id,
        "supplierId": record.supplier_id,
        "type": record.type.value,
        "amount": money_to_wire(record.amount),
        "date": record.date.isoformat(),
        "description": record.description,
        "items": (
            [
                {
                    "productId": item.product_id,
                    "productName": item.product_name,
                    "quantity": item.quantity,
                    "unitPrice": money_to_wire(item.unit_price),
                }
                for item in record.items
            ]
            if record.items is not None
            else None
        ),
    }


def deserialize_supplier_transaction(raw: Mapping[str, Any]) -> SupplierTransaction:
    items_raw = raw.get("items")
    items = None
    if items_raw is not None:
        items = tuple(
            PurchaseItem(
                product_id=_optional_str(item.get("productId")),
                product_name=str(item.get("productName") or ""),
                quantity=int(to_decimal(item.get("quantity"))),
                unit_price=to_decimal(item.get("unitPrice")),
            )
            for item in items_raw
        )
    return SupplierTransaction(
        id=str(raw["id"]),
        supplier_id=str(raw["supplierId"]),
        type=SupplierTransactionType(raw["type"]),
        amount=to_decimal(raw["amount"]),
        description=str(raw.get("description") or ""),
        date=to_datetime(raw.get("date")),
        items=items,
    )


def serialize_bread_order(record: BreadOrder) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "quantity": record.quantity,
        "unitPrice": money_to_wire(record.unit_price),
        "totalAmount": money_to_wire(record.total_amount),
        "isPaid": record.is_paid,
        "isDelivered": record.is_delivered,
        "isPinned": record.is_pinned,
        "createdAt": record.created_at.isoformat(),
        "customerId": record.customer_id,
        "customerName": record.customer_name,
    }


def deserialize_bread_order(raw: Mapping[str, Any]) -> BreadOrder:
    quantity = int(to_decimal(raw.get("quantity")))
    unit_price = to_decimal(raw.get("unitPrice"))
    total_raw = raw.get("totalAmount")
    total = to_decimal(total_raw) if total_raw not in (None, "") else unit_price * quantity
    return BreadOrder(
        id=str(raw["id"]),
        name=str(raw["name"]),
        quantity=quantity,
        unit_price=unit_price,
        total_amount=total,
        created_at=to_datetime(raw.get("createdAt")),
        is_paid=_as_bool(raw.get("isPaid", False)),
        is_delivered=_as_bool(raw.get("isDelivered", False)),
        is_pinned=_as_bool(raw.get("isPinned", False)),
        customer_id=_optional_str(raw.get("customerId")),
        customer_name=_optional_str(raw.get("customerName")),
    )


def serialize_expense(record: Expense) -> Dict[str, Any]:
    return {
        "id": record.id,
        "description": record.description,
        "category": record.category,
        "amount": money_to_wire(record.amount),
        "date": record.date.isoformat(),
    }


def deserialize_expense(raw: Mapping[str, Any]) -> Expense:
    return Expense(
        id=str(raw["id"]),
        description=str(raw.get("description") or ""),
        category=str(raw.get("category") or ""),
        amount=to_decimal(raw.get("amount")),
        date=to_datetime(raw.get("date")),
    )


def serialize_settings(record: Settings) -> Dict[str, Any]:
    return {
        "breadUnitPrice": money_to_wire(record.bread_unit_price),
        "shopName": record.shop_name,
        "currency": record.currency,
        "lastReconciliationDate": record.last_reconciliation_date,
        "expenseCategories": list(record.expense_categories),
    }


def deserialize_settings(raw: Mapping[str, Any]) -> Settings:
    company = raw.get("companyInfo") or {}
    return Settings(
        bread_unit_price=to_decimal(raw.get("breadUnitPrice"), DEFAULT_BREAD_UNIT_PRICE),
        shop_name=str(raw.get("shopName") or company.get("name") or ""),
        currency=str(raw.get("currency") or company.get("currency") or DEFAULT_CURRENCY),
        last_reconciliation_date=_optional_str(raw.get("lastReconciliationDate")),
        expense_categories=_categories(raw.get("expenseCategories")),
    )


def _categories(raw: Any) -> tuple[str, ...]:
    if raw is None or raw == "":
        return DEFAULT_EXPENSE_CATEGORIES
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, (list, tuple)):
        raise ValueError(f"expenseCategories must be a list, got {raw!r}")
    return tuple(str(item) for item in raw)


def snapshot_to_document(snapshot: LedgerSnapshot) -> Dict[str, Any]:
    """Serialize a snapshot into the JSON backup document."""

    document: Dict[str, Any] = {"schemaVersion": EXPECTED_SCHEMA_VERSION}
    document["customers"] = [serialize_customer(item) for item in snapshot.customers.values()]
    document["transactions"] = [serialize_transaction(item) for item in snapshot.transactions.values()]
    document["breadOrders"] = [serialize_bread_order(item) for item in snapshot.bread_orders.values()]
    document["suppliers"] = [serialize_supplier(item) for item in snapshot.suppliers.values()]
    document["supplierTransactions"] = [
        serialize_supplier_transaction(item) for item in snapshot.supplier_transactions.values()
    ]
    document["products"] = [serialize_product(item) for item in snapshot.products.values()]
    document["expenses"] = [serialize_expense(item) for item in snapshot.expenses.values()]
    document["settings"] = serialize_settings(snapshot.settings)
    for key, value in snapshot.extras.items():
        document.setdefault(key, value)
    return document


def snapshot_from_document(document: Mapping[str, Any]) -> LedgerSnapshot:
    """Build a snapshot from a backup document.

    Unknown top-level keys (for example a collection written by another
    tool) are kept in :attr:`LedgerSnapshot.extras` so an export after
    an import does not lose them. A legacy top-level ``breadUnitPrice`` is
    folded into the settings.

    Raises:
        ValueError: If a record is malformed or the order links conflict.
    """

    if not isinstance(document, Mapping):
        raise ValueError("Snapshot document must be a JSON object")

    try:
        snapshot = LedgerSnapshot(
            customers=_index(deserialize_customer(raw) for raw in document.get("customers") or []),
            suppliers=_index(deserialize_supplier(raw) for raw in document.get("suppliers") or []),
            products=_index(deserialize_product(raw) for raw in document.get("products") or []),
            transactions=_index(deserialize_transaction(raw) for raw in document.get("transactions") or []),
            supplier_transactions=_index(
                deserialize_supplier_transaction(raw) for raw in document.get("supplierTransactions") or []
            ),
            bread_orders=_index(deserialize_bread_order(raw) for raw in document.get("breadOrders") or []),
            expenses=_index(deserialize_expense(raw) for raw in document.get("expenses") or []),
        )
    except (KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"Malformed snapshot record: {exc}") from exc

    settings_raw = dict(document.get("settings") or {})
    if "breadUnitPrice" not in settings_raw and "breadUnitPrice" in document:
        settings_raw["breadUnitPrice"] = document["breadUnitPrice"]
    snapshot.settings = deserialize_settings(settings_raw)

    known = set(COLLECTION_KEYS) | {"settings", "schemaVersion", "breadUnitPrice"}
    snapshot.extras = {key: value for key, value in document.items() if key not in known}
    snapshot.rebuild_order_index()
    return snapshot


def _index(records: Iterable[Any]) -> Dict[str, Any]:
    indexed: Dict[str, Any] = {}
    for record in records:
        if record.id in indexed:
            raise ValueError(f"Duplicate id in snapshot: {record.id}")
        indexed[record.id] = record
    return indexed


# ---------------------------------------------------------------------------
# Backing stores
# ---------------------------------------------------------------------------


class LedgerStore(Protocol):
    """Persistence boundary shared by every backing store."""

    path: Path

    def load(self) -> LedgerSnapshot: ...

    def save(self, snapshot: LedgerSnapshot) -> None: ...


class JsonFileStore:
    """Persist the snapshot as a single JSON document.

    The document format is the same as the full-backup export, so a data file
    can be copied and imported elsewhere without conversion.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser().resolve()

    def load(self) -> LedgerSnapshot:
        """Read and parse the data file.

        Raises:
            FileNotFoundError: If the data file does not exist.
            StoreUnavailable: If the file cannot be read or decoded.
        """

        if not self.path.exists():
            raise FileNotFoundError(f"Data file not found: {self.path}")
        try:
            document = read_json_document(self.path)
            snapshot = snapshot_from_document(document)
        except (OSError, ValueError) as exc:
            log.error("Failed to load ledger from '%s': %s", self.path, exc)
            raise StoreUnavailable(f"Cannot load ledger from {self.path}: {exc}") from exc
        log.debug("Loaded JSON ledger '%s'", self.path)
        return snapshot

    def save(self, snapshot: LedgerSnapshot) -> None:
        """Write the snapshot atomically (temporary file then rename).

        Raises:
            StoreUnavailable: If the file cannot be written.
        """

        try:
            write_json_document(self.path, snapshot_to_document(snapshot))
        except (OSError, TypeError, ValueError) as exc:
            log.error("Failed to save ledger to '%s': %s", self.path, exc)
            raise StoreUnavailable(f"Cannot save ledger to {self.path}: {exc}") from exc
        log.debug("Saved JSON ledger '%s'", self.path)


def read_json_document(path: Path) -> Any:
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)


def write_json_document(path: Path, document: Mapping[str, Any]) -> None:
    """Write ``document`` to ``path`` through a temporary sibling file."""

    dest = Path(path).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=dest.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


SHEET_LAYOUT: Mapping[SheetName, tuple[str, Sequence[str]]] = {
    SheetName.CUSTOMERS: ("customers", CUSTOMER_FIELDS),
    SheetName.TRANSACTIONS: ("transactions", TRANSACTION_FIELDS),
    SheetName.BREAD_ORDERS: ("breadOrders", BREAD_ORDER_FIELDS),
    SheetName.SUPPLIERS: ("suppliers", SUPPLIER_FIELDS),
    SheetName.SUPPLIER_TRANSACTIONS: ("supplierTransactions", SUPPLIER_TRANSACTION_FIELDS),
    SheetName.PRODUCTS: ("products", PRODUCT_FIELDS),
    SheetName.EXPENSES: ("expenses", EXPENSE_FIELDS),
}

# Cells holding lists are stored as JSON text.
JSON_CELL_FIELDS = frozenset({"barcodes", "saleItems", "items", "expenseCategories"})


class WorkbookStore:
    """Persist the snapshot in an ``openpyxl`` workbook, one sheet per collection.

    The first row of each sheet holds the wire field names. A ``Settings``
    sheet stores key/value pairs. Every save rebuilds the workbook from the
    snapshot so the file always mirrors committed state exactly.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser().resolve()

    def load(self) -> LedgerSnapshot:
        if not self.path.exists():
            raise FileNotFoundError(f"Workbook not found: {self.path}")
        try:
            workbook = openpyxl.load_workbook(self.path)
            document = workbook_to_document(workbook)
            snapshot = snapshot_from_document(document)
        except (OSError, ValueError, KeyError, InvalidFileException, zipfile.BadZipFile) as exc:
            log.error("Failed to load workbook ledger '%s': %s", self.path, exc)
            raise StoreUnavailable(f"Cannot load ledger from {self.path}: {exc}") from exc
        log.debug("Loaded workbook ledger '%s'", self.path)
        return snapshot

    def save(self, snapshot: LedgerSnapshot) -> None:
        workbook = document_to_workbook(snapshot_to_document(snapshot))
        dest = self.path
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".xlsx", dir=dest.parent)
            os.close(fd)
            try:
                workbook.save(tmp_name)
                os.replace(tmp_name, dest)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            log.error("Failed to save workbook ledger '%s': %s", dest, exc)
            raise StoreUnavailable(f"Cannot save ledger to {dest}: {exc}") from exc
        log.debug("Saved workbook ledger '%s'", dest)


def iter_sheet_records(sheet: Any) -> Iterator[Dict[str, Any]]:
    """Yield one dictionary per non-empty data row, keyed by the header row."""

    rows = sheet.iter_rows(values_only=True)
    try:
        headers = [str(cell) if cell is not None else "" for cell in next(rows)]
    except StopIteration:
        return
    for raw in rows:
        # skip fully empty rows
        if not any(cell is not None for cell in raw):
            continue
        record: Dict[str, Any] = {}
        for header, cell in zip(headers, raw):
            if not header:
                continue
            if header in JSON_CELL_FIELDS and isinstance(cell, str):
                cell = json.loads(cell)
            record[header] = cell
        yield record


def workbook_to_document(workbook: Any) -> Dict[str, Any]:
    document: Dict[str, Any] = {}
    for sheet_name, (key, _columns) in SHEET_LAYOUT.items():
        if sheet_name.value not in workbook.sheetnames:
            document[key] = []
            continue
        document[key] = list(iter_sheet_records(workbook[sheet_name.value]))
    settings: Dict[str, Any] = {}
    if SheetName.SETTINGS.value in workbook.sheetnames:
        sheet = workbook[SheetName.SETTINGS.value]
        for raw in sheet.iter_rows(min_row=2, values_only=True):
            if raw and raw[0] is not None:
                settings[str(raw[0])] = raw[1] if len(raw) > 1 else None
    document["settings"] = settings
    return document


def document_to_workbook(document: Mapping[str, Any]) -> Any:
    """Lay a snapshot document out as a fresh workbook with bold headers."""

    workbook = openpyxl.Workbook()
    if "Sheet" in workbook.sheetnames:
        del workbook["Sheet"]
    bold_font = Font(bold=True)

    for sheet_name, (key, columns) in SHEET_LAYOUT.items():
        sheet = workbook.create_sheet(title=sheet_name.value)
        _write_header(sheet, columns, bold_font)
        for record in document.get(key) or []:
            sheet.append([_cell_value(column, record.get(column)) for column in columns])

    settings_sheet = workbook.create_sheet(title=SheetName.SETTINGS.value)
    _write_header(settings_sheet, ("key", "value"), bold_font)
    for name, value in (document.get("settings") or {}).items():
        settings_sheet.append([name, _cell_value(name, value)])
    return workbook


def _write_header(sheet: Any, columns: Sequence[str], font: Font) -> None:
    for col_idx, column_name in enumerate(columns, 1):
        cell = sheet.cell(row=1, column=col_idx)
        cell.value = column_name
        cell.font = font


def _cell_value(column: str, value: Any) -> Any:
    if column in JSON_CELL_FIELDS:
        return json.dumps(value, ensure_ascii=False) if value is not None else None
    return value


def open_store(data_file: Path) -> LedgerStore:
    """Pick the backing store implementation from the data file suffix."""

    suffix = Path(data_file).suffix.lower()
    if suffix == ".json":
        return JsonFileStore(data_file)
    if suffix in {".xlsx", ".xlsm"}:
        return WorkbookStore(data_file)
    raise ValueError(f"Unsupported data file type: {data_file}")


__all__: List[str] = [
    "StoreUnavailable",
    "ConfigSettings",
    "find_config_file",
    "read_config",
    "parse_settings",
    "Customer",
    "Supplier",
    "SaleItem",
    "Transaction",
    "PurchaseItem",
    "SupplierTransaction",
    "Product",
    "BreadOrder",
    "Expense",
    "Settings",
    "OrderLinks",
    "LedgerSnapshot",
    "snapshot_to_document",
    "snapshot_from_document",
    "JsonFileStore",
    "WorkbookStore",
    "open_store",
]
