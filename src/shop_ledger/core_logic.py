"""Business logic layer for the shop ledger.

This module holds the rules that keep running balances consistent with the
transaction log. Every balance change is computed by
:func:`apply_transaction_delta`; every write happens inside one
:meth:`LedgerRepository.transaction` so a compound update is persisted
entirely or not at all.

Functions taking a ``snapshot`` operate on a working copy and are meant to be
composed inside a unit of work (the order synchronizer, the sale processor
and the reconciliation job build on them). Functions taking a ``context`` open
their own unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    Description,
    SupplierTransactionType,
    TransactionType,
)
from .data_manager import (
    BreadOrder,
    Customer,
    Expense,
    LedgerSnapshot,
    Product,
    PurchaseItem,
    SaleItem,
    StoreUnavailable,
    Supplier,
    SupplierTransaction,
    Transaction,
)
from .repository import LedgerRepository


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced record (customer, product, order, expense...) is unknown."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a sale or stock subtraction would take stock below zero."""


class EmptyCartError(BusinessRuleViolation):
    """Raised when a checkout is attempted without cart lines."""


class DuplicateIdError(BusinessRuleViolation):
    """Raised when imported rows collide with existing ids or with each other."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for missing mandatory fields and non-positive amounts or quantities."""


class _Unset:
    """Marker for patch fields that were not supplied."""

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration plus the repository used by every operation."""

    settings: data_manager.ConfigSettings
    repository: LedgerRepository


@dataclass(frozen=True)
class CustomerPatch:
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    settlement_day: Any = UNSET


@dataclass(frozen=True)
class SupplierPatch:
    name: Optional[str] = None
    category: Optional[str] = None
    contact: Optional[str] = None
    phone: Optional[str] = None
    visit_day: Any = UNSET


@dataclass(frozen=True)
class ProductPatch:
    """Partial product update; ``stock`` here is a deliberate override."""

    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    barcodes: Optional[Sequence[str]] = None
    purchase_price: Optional[Decimal] = None
    selling_price: Optional[Decimal] = None
    stock: Optional[int] = None
    min_stock: Optional[int] = None
    supplier_id: Any = UNSET


@dataclass(frozen=True)
class TransactionPatch:
    amount: Optional[Decimal] = None
    description: Optional[str] = None
    date: Optional[datetime] = None


@dataclass(frozen=True)
class ExpensePatch:
    description: Optional[str] = None
    category: Optional[str] = None
    amount: Optional[Decimal] = None
    date: Optional[datetime] = None


@dataclass(frozen=True)
class TransactionRemoval:
    """Outcome of deleting a transaction.

    ``orphaned`` is true when the owning customer no longer existed, in which
    case no balance was adjusted.
    """

    transaction: Transaction
    orphaned: bool = False


@dataclass(frozen=True)
class PurchaseInvoiceCommand:
    """User intent for recording a supplier purchase invoice."""

    supplier_id: str
    items: Sequence[PurchaseItem]
    description: str
    amount_paid: Decimal = Decimal("0")
    date: Optional[datetime] = None


@dataclass(frozen=True)
class PurchaseReceipt:
    purchase: SupplierTransaction
    payment: Optional[SupplierTransaction]


@dataclass(frozen=True)
class BalanceDrift:
    """A stored balance that disagrees with the signed sum of its transactions."""

    owner_kind: str
    owner_id: str
    stored: Decimal
    expected: Decimal


@dataclass(frozen=True)
class ExpenseSummary:
    """Spending over a period, in total and per category."""

    total: Decimal
    by_category: Dict[str, Decimal]
    count: int


@dataclass(frozen=True)
class CustomerStatement:
    customer: Customer
    transactions: List[Transaction]
    total_debts: Decimal
    total_payments: Decimal


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the configured ledger store.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upward from the working
            directory.

    Returns:
        RuntimeContext: Settings and a repository over the loaded snapshot.

    Raises:
        FileNotFoundError: If the configuration file or data file is missing.
        KeyError: When mandatory configuration options are missing.
        StoreUnavailable: If the data file cannot be read.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.open_store(settings.data_file)
    repository = LedgerRepository.open(store)
    log.info("Loaded runtime context for ledger '%s'", settings.data_file)
    return RuntimeContext(settings=settings, repository=repository)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to run against a data file declared for another schema version.

    Raises:
        RuntimeError: If ``SchemaVersion`` in ``config.ini`` does not match
            :data:`EXPECTED_SCHEMA_VERSION`.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Ledger schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Ledger schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the snapshot from the backing store into a new context."""

    repository = LedgerRepository.open(context.repository.store)
    return RuntimeContext(settings=context.settings, repository=repository)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def next_numeric_id(*id_pools: Iterable[str]) -> int:
    """Return one more than the largest purely numeric id in ``id_pools``.

    Non-numeric ids (for example ``"import-17"``) are ignored so legacy data
    never blocks allocation.
    """

    highest = 0
    for pool in id_pools:
        for value in pool:
            text = str(value).strip()
            if text.isdigit():
                highest = max(highest, int(text))
    return highest + 1


def to_money(value: Any, *, field_name: str = "amount") -> Decimal:
    """Coerce user input into ``Decimal``.

    Raises:
        ValidationError: If ``value`` is not numeric, or is infinite or NaN.
    """

    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            log.error("Invalid %s: %r", field_name, value)
            raise ValidationError(f"{field_name} must be a number, got {value!r}") from exc
    if not result.is_finite():
        log.error("Invalid %s: %r is not a finite number", field_name, value)
        raise ValidationError(f"{field_name} must be a finite number, got {value!r}")
    return result


def require_positive_amount(amount: Decimal, *, field_name: str = "Amount") -> None:
    """Validate that a monetary value is strictly positive.

    Raises:
        ValidationError: If ``amount`` is zero or negative.
    """

    if amount <= Decimal("0"):
        log.error("%s validation failed: %s", field_name, amount)
        raise ValidationError(f"{field_name} must be greater than zero")


def require_nonnegative_money(amount: Decimal, *, field_name: str = "Amount") -> None:
    """Validate that a monetary value is zero or positive.

    Raises:
        ValidationError: If ``amount`` is negative.
    """

    if amount < Decimal("0"):
        log.error("%s validation failed: %s", field_name, amount)
        raise ValidationError(f"{field_name} must be zero or positive")


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is zero, negative or fractional.
    """

    if isinstance(quantity, bool) or int(quantity) != quantity or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")


def require_name(name: Optional[str], *, what: str = "Name") -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        log.error("%s validation failed: empty value", what)
        raise ValidationError(f"{what} is required")
    return cleaned


def get_customer_in(snapshot: LedgerSnapshot, customer_id: str) -> Customer:
    try:
        return snapshot.customers[customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise NotFoundError(f"Unknown customer id: {customer_id}") from exc


def get_supplier_in(snapshot: LedgerSnapshot, supplier_id: str) -> Supplier:
    try:
        return snapshot.suppliers[supplier_id]
    except KeyError as exc:
        log.warning("Supplier lookup failed for id '%s'", supplier_id)
        raise NotFoundError(f"Unknown supplier id: {supplier_id}") from exc


def get_product_in(snapshot: LedgerSnapshot, product_id: str) -> Product:
    try:
        return snapshot.products[product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}") from exc


def get_order_in(snapshot: LedgerSnapshot, order_id: str) -> BreadOrder:
    try:
        return snapshot.bread_orders[order_id]
    except KeyError as exc:
        log.warning("Bread order lookup failed for id '%s'", order_id)
        raise NotFoundError(f"Unknown bread order id: {order_id}") from exc


def get_expense_in(snapshot: LedgerSnapshot, expense_id: str) -> Expense:
    try:
        return snapshot.expenses[expense_id]
    except KeyError as exc:
        log.warning("Expense lookup failed for id '%s'", expense_id)
        raise NotFoundError(f"Unknown expense id: {expense_id}") from exc


# ---------------------------------------------------------------------------
# Balance maintainer
# ---------------------------------------------------------------------------


def apply_transaction_delta(
    balance: Decimal,
    old_amount: Decimal,
    new_amount: Decimal,
    *,
    is_debt_like: bool,
) -> Decimal:
    """Return ``balance`` after a transaction amount moves from old to new.

    Insertions pass ``old_amount=0``; deletions pass ``new_amount=0``. A
    debt-like entry (customer ``debt``, supplier ``purchase``) moves the
    balance by ``new - old``; a payment moves it by ``-(new - old)``.

    This is the only place a stored balance is computed.
    """

    delta = Decimal(new_amount) - Decimal(old_amount)
    return balance + delta if is_debt_like else balance - delta


def _apply_to_customer(
    snapshot: LedgerSnapshot,
    customer_id: str,
    transaction_type: TransactionType,
    old_amount: Decimal,
    new_amount: Decimal,
) -> bool:
    customer = snapshot.customers.get(customer_id)
    if customer is None:
        return False
    balance = apply_transaction_delta(
        customer.balance,
        old_amount,
        new_amount,
        is_debt_like=transaction_type is TransactionType.DEBT,
    )
    snapshot.customers[customer_id] = replace(customer, balance=balance)
    return True


def _apply_to_supplier(
    snapshot: LedgerSnapshot,
    supplier_id: str,
    transaction_type: SupplierTransactionType,
    old_amount: Decimal,
    new_amount: Decimal,
) -> bool:
    supplier = snapshot.suppliers.get(supplier_id)
    if supplier is None:
        return False
    balance = apply_transaction_delta(
        supplier.balance,
        old_amount,
        new_amount,
        is_debt_like=transaction_type is SupplierTransactionType.PURCHASE,
    )
    snapshot.suppliers[supplier_id] = replace(supplier, balance=balance)
    return True


def recompute_balance(snapshot: LedgerSnapshot, customer_id: str) -> Decimal:
    """Signed sum of a customer's transactions (debts minus payments)."""

    balance = Decimal("0")
    for transaction in snapshot.transactions.values():
        if transaction.customer_id == customer_id:
            balance = apply_transaction_delta(
                balance,
                Decimal("0"),
                transaction.amount,
                is_debt_like=transaction.type is TransactionType.DEBT,
            )
    return balance


def recompute_supplier_balance(snapshot: LedgerSnapshot, supplier_id: str) -> Decimal:
    """Signed sum of a supplier's transactions (purchases minus payments)."""

    balance = Decimal("0")
    for transaction in snapshot.supplier_transactions.values():
        if transaction.supplier_id == supplier_id:
            balance = apply_transaction_delta(
                balance,
                Decimal("0"),
                transaction.amount,
                is_debt_like=transaction.type is SupplierTransactionType.PURCHASE,
            )
    return balance


def find_balance_drift(snapshot: LedgerSnapshot) -> List[BalanceDrift]:
    drifts: List[BalanceDrift] = []
    for customer in snapshot.customers.values():
        expected = recompute_balance(snapshot, customer.id)
        if expected != customer.balance:
            drifts.append(BalanceDrift("customer", customer.id, customer.balance, expected))
    for supplier in snapshot.suppliers.values():
        expected = recompute_supplier_balance(snapshot, supplier.id)
        if expected != supplier.balance:
            drifts.append(BalanceDrift("supplier", supplier.id, supplier.balance, expected))
    return drifts


def verify_balances(context: RuntimeContext) -> List[BalanceDrift]:
    """Report every stored balance that disagrees with its transaction log."""

    drifts = find_balance_drift(context.repository.snapshot())
    for drift in drifts:
        log.warning(
            "Balance drift on %s '%s': stored=%s expected=%s",
            drift.owner_kind,
            drift.owner_id,
            drift.stored,
            drift.expected,
        )
    return drifts


def repair_balances(context: RuntimeContext) -> List[BalanceDrift]:
    """Rewrite drifting balances from the transaction log in one unit of work."""

    with context.repository.transaction() as snapshot:
        drifts = find_balance_drift(snapshot)
        for drift in drifts:
            if drift.owner_kind == "customer":
                customer = snapshot.customers[drift.owner_id]
                snapshot.customers[drift.owner_id] = replace(customer, balance=drift.expected)
            else:
                supplier = snapshot.suppliers[drift.owner_id]
                snapshot.suppliers[drift.owner_id] = replace(supplier, balance=drift.expected)
    if drifts:
        log.info("Repaired %d drifting balances", len(drifts))
    return drifts


# ---------------------------------------------------------------------------
# Customer transactions (snapshot level)
# ---------------------------------------------------------------------------


def insert_customer_transaction(
    snapshot: LedgerSnapshot,
    *,
    customer_id: str,
    transaction_type: TransactionType,
    amount: Decimal,
    description: str,
    date: Optional[datetime] = None,
    order_id: Optional[str] = None,
    sale_items: Optional[Sequence[SaleItem]] = None,
) -> Transaction:
    """Append a transaction and move the owner's balance accordingly.

    Raises:
        NotFoundError: If the customer does not exist.
        ValidationError: If ``amount`` is not positive.
        BusinessRuleViolation: If ``order_id`` already links a transaction of
            this type.
    """

    amount = to_money(amount)
    require_positive_amount(amount)
    get_customer_in(snapshot, customer_id)

    transaction = Transaction(
        id=str(next_numeric_id(snapshot.transactions)),
        customer_id=customer_id,
        type=TransactionType(transaction_type),
        amount=amount,
        description=description,
        date=resolve_timestamp(date),
        order_id=order_id,
        sale_items=tuple(sale_items) if sale_items is not None else None,
    )
    try:
        snapshot.put_transaction(transaction)
    except ValueError as exc:
        log.error("Rejected transaction for order '%s': %s", order_id, exc)
        raise BusinessRuleViolation(str(exc)) from exc
    _apply_to_customer(snapshot, customer_id, transaction.type, Decimal("0"), amount)
    log.info(
        "Recorded %s transaction '%s' for customer '%s' (amount=%s, order=%s)",
        transaction.type.value,
        transaction.id,
        customer_id,
        amount,
        order_id,
    )
    return transaction


def edit_customer_transaction(
    snapshot: LedgerSnapshot,
    transaction_id: str,
    patch: TransactionPatch,
) -> Optional[Transaction]:
    """Apply ``patch`` and adjust the owner's balance by the amount delta.

    Returns ``None`` when the transaction turned out to be an orphan; the
    orphan is removed instead of edited.

    Raises:
        NotFoundError: If the transaction does not exist.
        ValidationError: If the new amount is not positive.
    """

    current = snapshot.transactions.get(transaction_id)
    if current is None:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}")

    if current.customer_id not in snapshot.customers:
        snapshot.drop_transaction(transaction_id)
        log.warning(
            "Removed orphaned transaction '%s' (customer '%s' no longer exists)",
            transaction_id,
            current.customer_id,
        )
        return None

    new_amount = current.amount
    if patch.amount is not None:
        new_amount = to_money(patch.amount)
        require_positive_amount(new_amount)

    updated = replace(
        current,
        amount=new_amount,
        description=patch.description if patch.description is not None else current.description,
        date=patch.date if patch.date is not None else current.date,
    )
    if updated == current:
        return current

    snapshot.put_transaction(updated)
    _apply_to_customer(snapshot, current.customer_id, current.type, current.amount, new_amount)
    log.info(
        "Updated transaction '%s' (amount %s -> %s)",
        transaction_id,
        current.amount,
        new_amount,
    )
    return updated


def remove_customer_transaction(snapshot: LedgerSnapshot, transaction_id: str) -> TransactionRemoval:
    """Delete a transaction and revert its balance effect.

    Raises:
        NotFoundError: If the transaction does not exist.
    """

    if transaction_id not in snapshot.transactions:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}")

    transaction = snapshot.drop_transaction(transaction_id)
    applied = _apply_to_customer(
        snapshot, transaction.customer_id, transaction.type, transaction.amount, Decimal("0")
    )
    if not applied:
        log.warning(
            "Removed orphaned transaction '%s' (customer '%s' no longer exists)",
            transaction_id,
            transaction.customer_id,
        )
        return TransactionRemoval(transaction, orphaned=True)

    log.info(
        "Deleted %s transaction '%s' for customer '%s' (amount=%s)",
        transaction.type.value,
        transaction_id,
        transaction.customer_id,
        transaction.amount,
    )
    return TransactionRemoval(transaction)


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def list_customers(context: RuntimeContext) -> List[Customer]:
    return list(context.repository.snapshot().customers.values())


def get_customer(context: RuntimeContext, customer_id: str) -> Customer:
    return get_customer_in(context.repository.snapshot(), customer_id)


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    phone: str = "",
    email: str = "",
    settlement_day: Optional[str] = None,
) -> Customer:
    """Create a customer with a zero balance."""

    name = require_name(name)
    with context.repository.transaction() as snapshot:
        customer = Customer(
            id=str(next_numeric_id(snapshot.customers)),
            name=name,
            phone=phone,
            email=email,
            created_at=resolve_timestamp(None),
            settlement_day=settlement_day,
        )
        snapshot.customers[customer.id] = customer
    log.info("Added customer '%s' (%s)", customer.id, customer.name)
    return customer


def update_customer(context: RuntimeContext, customer_id: str, patch: CustomerPatch) -> Customer:
    """Update contact fields; the balance is never patched directly."""

    with context.repository.transaction() as snapshot:
        current = get_customer_in(snapshot, customer_id)
        updated = replace(
            current,
            name=require_name(patch.name) if patch.name is not None else current.name,
            phone=patch.phone if patch.phone is not None else current.phone,
            email=patch.email if patch.email is not None else current.email,
            settlement_day=current.settlement_day if patch.settlement_day is UNSET else patch.settlement_day,
        )
        snapshot.customers[customer_id] = updated
        if updated.name != current.name:
            for order in list(snapshot.bread_orders.values()):
                if order.customer_id == customer_id:
                    snapshot.bread_orders[order.id] = replace(order, customer_name=updated.name)
    log.info("Updated customer '%s'", customer_id)
    return updated


def delete_customer(context: RuntimeContext, customer_id: str) -> int:
    """Delete a customer together with their transactions.

    Bread orders that referenced the customer keep ``customer_name`` as text
    but lose ``customer_id``.

    Returns:
        int: Number of transactions removed.
    """

    with context.repository.transaction() as snapshot:
        get_customer_in(snapshot, customer_id)
        del snapshot.customers[customer_id]
        owned = [tx.id for tx in snapshot.transactions.values() if tx.customer_id == customer_id]
        for transaction_id in owned:
            snapshot.drop_transaction(transaction_id)
        for order in list(snapshot.bread_orders.values()):
            if order.customer_id == customer_id:
                snapshot.bread_orders[order.id] = replace(order, customer_id=None)
    log.info("Deleted customer '%s' and %d transactions", customer_id, len(owned))
    return len(owned)


# ---------------------------------------------------------------------------
# Customer transactions (context level)
# ---------------------------------------------------------------------------


def list_transactions(context: RuntimeContext, customer_id: Optional[str] = None) -> List[Transaction]:
    """Return transactions, newest first, optionally for one customer."""

    transactions = context.repository.snapshot().transactions.values()
    selected = [tx for tx in transactions if customer_id is None or tx.customer_id == customer_id]
    return sorted(selected, key=lambda tx: tx.date, reverse=True)


def add_transaction(
    context: RuntimeContext,
    *,
    customer_id: str,
    transaction_type: TransactionType,
    amount: Decimal,
    description: str,
    date: Optional[datetime] = None,
    order_id: Optional[str] = None,
    sale_items: Optional[Sequence[SaleItem]] = None,
) -> Transaction:
    """Record a manual debt or payment for a customer."""

    with context.repository.transaction() as snapshot:
        return insert_customer_transaction(
            snapshot,
            customer_id=customer_id,
            transaction_type=transaction_type,
            amount=amount,
            description=description,
            date=date,
            order_id=order_id,
            sale_items=sale_items,
        )


def update_transaction(
    context: RuntimeContext, transaction_id: str, patch: TransactionPatch
) -> Optional[Transaction]:
    with context.repository.transaction() as snapshot:
        return edit_customer_transaction(snapshot, transaction_id, patch)


def delete_transaction(context: RuntimeContext, transaction_id: str) -> TransactionRemoval:
    with context.repository.transaction() as snapshot:
        return remove_customer_transaction(snapshot, transaction_id)


def purge_orphan_transactions(context: RuntimeContext) -> List[Transaction]:
    """Remove every transaction whose customer no longer exists."""

    with context.repository.transaction() as snapshot:
        orphans = [
            tx for tx in snapshot.transactions.values() if tx.customer_id not in snapshot.customers
        ]
        for transaction in orphans:
            snapshot.drop_transaction(transaction.id)
    for transaction in orphans:
        log.warning(
            "Removed orphaned transaction '%s' (customer '%s')",
            transaction.id,
            transaction.customer_id,
        )
    return orphans


# ---------------------------------------------------------------------------
# Suppliers
# ---------------------------------------------------------------------------


def add_supplier(
    context: RuntimeContext,
    *,
    name: str,
    category: str = "",
    contact: str = "",
    phone: str = "",
    visit_day: Optional[str] = None,
) -> Supplier:
    name = require_name(name)
    with context.repository.transaction() as snapshot:
        supplier = Supplier(
            id=str(next_numeric_id(snapshot.suppliers)),
            name=name,
            category=category,
            contact=contact,
            phone=phone,
            visit_day=visit_day,
            created_at=resolve_timestamp(None),
        )
        snapshot.suppliers[supplier.id] = supplier
    log.info("Added supplier '%s' (%s)", supplier.id, supplier.name)
    return supplier


def update_supplier(context: RuntimeContext, supplier_id: str, patch: SupplierPatch) -> Supplier:
    with context.repository.transaction() as snapshot:
        current = get_supplier_in(snapshot, supplier_id)
        updated = replace(
            current,
            name=require_name(patch.name) if patch.name is not None else current.name,
            category=patch.category if patch.category is not None else current.category,
            contact=patch.contact if patch.contact is not None else current.contact,
            phone=patch.phone if patch.phone is not None else current.phone,
            visit_day=current.visit_day if patch.visit_day is UNSET else patch.visit_day,
        )
        snapshot.suppliers[supplier_id] = updated
    log.info("Updated supplier '%s'", supplier_id)
    return updated


def delete_supplier(context: RuntimeContext, supplier_id: str) -> int:
    """Delete a supplier and its transactions; products are detached.

    Returns:
        int: Number of supplier transactions removed.
    """

    with context.repository.transaction() as snapshot:
        get_supplier_in(snapshot, supplier_id)
        del snapshot.suppliers[supplier_id]
        owned = [tx.id for tx in snapshot.supplier_transactions.values() if tx.supplier_id == supplier_id]
        for transaction_id in owned:
            del snapshot.supplier_transactions[transaction_id]
        for product in list(snapshot.products.values()):
            if product.supplier_id == supplier_id:
                snapshot.products[product.id] = replace(product, supplier_id=None)
    log.info("Deleted supplier '%s' and %d transactions", supplier_id, len(owned))
    return len(owned)


def insert_supplier_transaction(
    snapshot: LedgerSnapshot,
    *,
    supplier_id: str,
    transaction_type: SupplierTransactionType,
    amount: Decimal,
    description: str,
    date: Optional[datetime] = None,
    items: Optional[Sequence[PurchaseItem]] = None,
) -> SupplierTransaction:
    amount = to_money(amount)
    require_positive_amount(amount)
    get_supplier_in(snapshot, supplier_id)
    transaction = SupplierTransaction(
        id=str(next_numeric_id(snapshot.supplier_transactions)),
        supplier_id=supplier_id,
        type=SupplierTransactionType(transaction_type),
        amount=amount,
        description=description,
        date=resolve_timestamp(date),
        items=tuple(items) if items is not None else None,
    )
    snapshot.supplier_transactions[transaction.id] = transaction
    _apply_to_supplier(snapshot, supplier_id, transaction.type, Decimal("0"), amount)
    log.info(
        "Recorded supplier %s '%s' for supplier '%s' (amount=%s)",
        transaction.type.value,
        transaction.id,
        supplier_id,
        amount,
    )
    return transaction


def add_supplier_transaction(
    context: RuntimeContext,
    *,
    supplier_id: str,
    transaction_type: SupplierTransactionType,
    amount: Decimal,
    description: str,
    date: Optional[datetime] = None,
) -> SupplierTransaction:
    with context.repository.transaction() as snapshot:
        return insert_supplier_transaction(
            snapshot,
            supplier_id=supplier_id,
            transaction_type=transaction_type,
            amount=amount,
            description=description,
            date=date,
        )


def delete_supplier_transaction(context: RuntimeContext, transaction_id: str) -> SupplierTransaction:
    """Delete a supplier transaction and revert its balance effect.

    Stock received through a purchase invoice is not taken back; stock
    corrections go through :func:`adjust_stock`.
    """

    with context.repository.transaction() as snapshot:
        transaction = snapshot.supplier_transactions.pop(transaction_id, None)
        if transaction is None:
            log.warning("Supplier transaction lookup failed for id '%s'", transaction_id)
            raise NotFoundError(f"Unknown supplier transaction id: {transaction_id}")
        if not _apply_to_supplier(
            snapshot, transaction.supplier_id, transaction.type, transaction.amount, Decimal("0")
        ):
            log.warning("Removed orphaned supplier transaction '%s'", transaction_id)
    log.info("Deleted supplier transaction '%s'", transaction_id)
    return transaction


def record_purchase_invoice(context: RuntimeContext, command: PurchaseInvoiceCommand) -> PurchaseReceipt:
    """Record a purchase invoice, receive its stock and an optional payment.

    The purchase amount is the sum of ``quantity * unit_price`` over the
    items. Items that reference a catalog product increase its stock.

    Raises:
        NotFoundError: If the supplier or a referenced product is unknown.
        ValidationError: If an item is invalid, the invoice total is zero,
            or ``amount_paid`` exceeds the total.
    """

    if not command.items:
        raise ValidationError("A purchase invoice needs at least one item")
    amount_paid = to_money(command.amount_paid, field_name="amount_paid")
    require_nonnegative_money(amount_paid, field_name="Amount paid")

    total = Decimal("0")
    for item in command.items:
        require_name(item.product_name, what="Item name")
        require_positive_quantity(item.quantity)
        require_nonnegative_money(to_money(item.unit_price), field_name="Unit price")
        total += item.quantity * to_money(item.unit_price)
    require_positive_amount(total, field_name="Invoice total")
    if amount_paid > total:
        log.error("Invoice payment %s exceeds invoice total %s", amount_paid, total)
        raise ValidationError("Amount paid cannot exceed the invoice total")

    when = resolve_timestamp(command.date)
    with context.repository.transaction() as snapshot:
        get_supplier_in(snapshot, command.supplier_id)
        for item in command.items:
            if item.product_id is None:
                continue
            product = get_product_in(snapshot, item.product_id)
            snapshot.products[product.id] = replace(product, stock=product.stock + item.quantity)

        purchase = insert_supplier_transaction(
            snapshot,
            supplier_id=command.supplier_id,
            transaction_type=SupplierTransactionType.PURCHASE,
            amount=total,
            description=command.description,
            date=when,
            items=command.items,
        )
        payment = None
        if amount_paid > 0:
            payment = insert_supplier_transaction(
                snapshot,
                supplier_id=command.supplier_id,
                transaction_type=SupplierTransactionType.PAYMENT,
                amount=amount_paid,
                description=Description.PURCHASE_PAYMENT.format(invoice=command.description),
                date=when,
            )
    log.info(
        "Recorded purchase invoice '%s' for supplier '%s' (total=%s, paid=%s)",
        command.description,
        command.supplier_id,
        total,
        amount_paid,
    )
    return PurchaseReceipt(purchase=purchase, payment=payment)


# ---------------------------------------------------------------------------
# Products and stock
# ---------------------------------------------------------------------------


def normalize_barcodes(barcodes: Iterable[str]) -> tuple[str, ...]:
    seen: Dict[str, None] = {}
    for code in barcodes:
        cleaned = str(code).strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return tuple(seen)


def check_barcodes_available(
    snapshot: LedgerSnapshot, barcodes: Iterable[str], *, exclude_product_id: Optional[str] = None
) -> None:
    """Ensure none of ``barcodes`` is already used by another product.

    Raises:
        ValidationError: On the first barcode owned by another product.
    """

    taken: Dict[str, str] = {}
    for product in snapshot.products.values():
        if product.id == exclude_product_id:
            continue
        for code in product.barcodes:
            taken[code] = product.id
    for code in barcodes:
        if code in taken:
            log.error("Barcode '%s' already belongs to product '%s'", code, taken[code])
            raise ValidationError(f"Barcode '{code}' is already used by product '{taken[code]}'")


def _validate_product(product: Product) -> None:
    require_name(product.name)
    require_positive_amount(product.selling_price, field_name="Selling price")
    require_nonnegative_money(product.purchase_price, field_name="Purchase price")
    if product.stock < 0 or product.min_stock < 0:
        log.error("Stock validation failed for product '%s'", product.id)
        raise ValidationError("Stock and minimum stock must be zero or positive")


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    category: str,
    selling_price: Decimal,
    purchase_price: Decimal = Decimal("0"),
    description: str = "",
    barcodes: Sequence[str] = (),
    stock: int = 0,
    min_stock: int = 0,
    supplier_id: Optional[str] = None,
) -> Product:
    """Add a catalog product.

    Raises:
        ValidationError: If a field is invalid or a barcode is taken.
        NotFoundError: If ``supplier_id`` is unknown.
    """

    with context.repository.transaction() as snapshot:
        product = Product(
            id=str(next_numeric_id(snapshot.products)),
            name=(name or "").strip(),
            category=category,
            description=description,
            barcodes=normalize_barcodes(barcodes),
            purchase_price=to_money(purchase_price, field_name="purchase_price"),
            selling_price=to_money(selling_price, field_name="selling_price"),
            stock=int(stock),
            min_stock=int(min_stock),
            supplier_id=supplier_id,
        )
        _validate_product(product)
        check_barcodes_available(snapshot, product.barcodes)
        if supplier_id is not None:
            get_supplier_in(snapshot, supplier_id)
        snapshot.products[product.id] = product
    log.info("Added product '%s' (%s)", product.id, product.name)
    return product


def update_product(context: RuntimeContext, product_id: str, patch: ProductPatch) -> Product:
    """Apply a partial product update.

    Setting ``stock`` through a patch is a deliberate override and is logged
    as such; it does not create any ledger entry.
    """

    with context.repository.transaction() as snapshot:
        current = get_product_in(snapshot, product_id)
        changes: Dict[str, Any] = {}
        if patch.name is not None:
            changes["name"] = patch.name.strip()
        if patch.category is not None:
            changes["category"] = patch.category
        if patch.description is not None:
            changes["description"] = patch.description
        if patch.barcodes is not None:
            changes["barcodes"] = normalize_barcodes(patch.barcodes)
        if patch.purchase_price is not None:
            changes["purchase_price"] = to_money(patch.purchase_price, field_name="purchase_price")
        if patch.selling_price is not None:
            changes["selling_price"] = to_money(patch.selling_price, field_name="selling_price")
        if patch.stock is not None:
            changes["stock"] = int(patch.stock)
        if patch.min_stock is not None:
            changes["min_stock"] = int(patch.min_stock)
        if patch.supplier_id is not UNSET:
            if patch.supplier_id is not None:
                get_supplier_in(snapshot, patch.supplier_id)
            changes["supplier_id"] = patch.supplier_id

        updated = replace(current, **changes)
        _validate_product(updated)
        check_barcodes_available(snapshot, updated.barcodes, exclude_product_id=product_id)
        snapshot.products[product_id] = updated
    if "stock" in changes and changes["stock"] != current.stock:
        log.warning(
            "Stock of product '%s' overridden from %d to %d",
            product_id,
            current.stock,
            changes["stock"],
        )
    log.info("Updated product '%s'", product_id)
    return updated


def delete_product(context: RuntimeContext, product_id: str) -> Product:
    """Delete a product; sale line items already recorded are left as history."""

    with context.repository.transaction() as snapshot:
        product = get_product_in(snapshot, product_id)
        del snapshot.products[product_id]
    log.info("Deleted product '%s' (%s)", product_id, product.name)
    return product


def _set_archived(context: RuntimeContext, product_id: str, archived: bool) -> Product:
    with context.repository.transaction() as snapshot:
        product = replace(get_product_in(snapshot, product_id), is_archived=archived)
        snapshot.products[product_id] = product
    log.info("%s product '%s'", "Archived" if archived else "Unarchived", product_id)
    return product


def archive_product(context: RuntimeContext, product_id: str) -> Product:
    return _set_archived(context, product_id, True)


def unarchive_product(context: RuntimeContext, product_id: str) -> Product:
    return _set_archived(context, product_id, False)


def adjust_stock(context: RuntimeContext, product_id: str, delta: int) -> Product:
    """Add (positive ``delta``) or remove (negative ``delta``) stock.

    Raises:
        ValidationError: If ``delta`` is zero or fractional.
        InsufficientStockError: If removal would go below zero.
    """

    if isinstance(delta, bool) or int(delta) != delta or delta == 0:
        log.error("Stock adjustment validation failed: %s", delta)
        raise ValidationError("Stock adjustment must be a non-zero whole number")

    with context.repository.transaction() as snapshot:
        product = get_product_in(snapshot, product_id)
        new_stock = product.stock + int(delta)
        if new_stock < 0:
            log.warning(
                "Stock adjustment of %s rejected for product '%s' (stock=%d)",
                delta,
                product_id,
                product.stock,
            )
            raise InsufficientStockError(
                f"Cannot remove {-delta} units of '{product.name}': only {product.stock} in stock"
            )
        product = replace(product, stock=new_stock)
        snapshot.products[product_id] = product
    log.info("Adjusted stock of product '%s' by %s (now %d)", product_id, delta, new_stock)
    return product


def find_product_by_barcode(context: RuntimeContext, barcode: str) -> Product:
    code = barcode.strip()
    for product in context.repository.snapshot().products.values():
        if code in product.barcodes:
            return product
    log.warning("No product matches barcode '%s'", code)
    raise NotFoundError(f"No product matches barcode '{code}'")


def list_low_stock_products(context: RuntimeContext) -> List[Product]:
    """Active products at or below their minimum stock."""

    return [
        product
        for product in context.repository.snapshot().products.values()
        if not product.is_archived and product.stock <= product.min_stock
    ]


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------


def list_expenses(
    context: RuntimeContext,
    *,
    category: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[Expense]:
    """Return expenses newest first, optionally filtered.

    ``start`` and ``end`` are inclusive calendar days compared against the
    expense date.
    """

    selected = [
        expense
        for expense in context.repository.snapshot().expenses.values()
        if (category is None or expense.category == category)
        and (start is None or expense.date.date() >= start)
        and (end is None or expense.date.date() <= end)
    ]
    return sorted(selected, key=lambda expense: expense.date, reverse=True)


def list_expense_categories(context: RuntimeContext) -> List[str]:
    """Configured categories followed by any other category already in use."""

    snapshot = context.repository.snapshot()
    categories = list(snapshot.settings.expense_categories)
    for expense in snapshot.expenses.values():
        if expense.category not in categories:
            categories.append(expense.category)
    return categories


def add_expense(
    context: RuntimeContext,
    *,
    description: str,
    category: str,
    amount: Decimal,
    date: Optional[datetime] = None,
) -> Expense:
    """Record money spent on running the shop.

    Raises:
        ValidationError: If the description or category is empty or the
            amount is not positive.
    """

    description = require_name(description, what="Description")
    category = require_name(category, what="Category")
    amount = to_money(amount)
    require_positive_amount(amount)
    with context.repository.transaction() as snapshot:
        expense = Expense(
            id=str(next_numeric_id(snapshot.expenses)),
            description=description,
            category=category,
            amount=amount,
            date=resolve_timestamp(date),
        )
        snapshot.expenses[expense.id] = expense
    log.info("Added expense '%s' (%s, %s)", expense.id, expense.category, expense.amount)
    return expense


def update_expense(context: RuntimeContext, expense_id: str, patch: ExpensePatch) -> Expense:
    """Patch an expense; omitted fields keep their value.

    Raises:
        NotFoundError: If the expense does not exist.
        ValidationError: If a patched field is invalid.
    """

    changes: Dict[str, Any] = {}
    if patch.description is not None:
        changes["description"] = require_name(patch.description, what="Description")
    if patch.category is not None:
        changes["category"] = require_name(patch.category, what="Category")
    if patch.amount is not None:
        amount = to_money(patch.amount)
        require_positive_amount(amount)
        changes["amount"] = amount
    if patch.date is not None:
        changes["date"] = patch.date

    with context.repository.transaction() as snapshot:
        updated = replace(get_expense_in(snapshot, expense_id), **changes)
        snapshot.expenses[expense_id] = updated
    log.info("Updated expense '%s'", expense_id)
    return updated


def delete_expense(context: RuntimeContext, expense_id: str) -> Expense:
    with context.repository.transaction() as snapshot:
        expense = get_expense_in(snapshot, expense_id)
        del snapshot.expenses[expense_id]
    log.info("Deleted expense '%s'", expense_id)
    return expense


def summarize_expenses(
    context: RuntimeContext, *, start: Optional[date] = None, end: Optional[date] = None
) -> ExpenseSummary:
    """Total spending between ``start`` and ``end`` (inclusive), per category."""

    expenses = list_expenses(context, start=start, end=end)
    by_category: Dict[str, Decimal] = {}
    for expense in expenses:
        by_category[expense.category] = by_category.get(expense.category, Decimal("0")) + expense.amount
    total = sum((expense.amount for expense in expenses), Decimal("0"))
    return ExpenseSummary(total=total, by_category=by_category, count=len(expenses))


# ---------------------------------------------------------------------------
# Settings, backups and reports
# ---------------------------------------------------------------------------


def update_bread_unit_price(context: RuntimeContext, price: Decimal) -> Decimal:
    """Change the price used for new bread orders; existing orders keep theirs."""

    price = to_money(price, field_name="bread unit price")
    require_positive_amount(price, field_name="Bread unit price")
    with context.repository.transaction() as snapshot:
        snapshot.settings = replace(snapshot.settings, bread_unit_price=price)
    log.info("Bread unit price set to %s", price)
    return price


def export_backup(context: RuntimeContext, destination: Path) -> Path:
    """Write the whole committed snapshot as one JSON document.

    Raises:
        StoreUnavailable: If the file cannot be written.
    """

    document = data_manager.snapshot_to_document(context.repository.snapshot())
    dest = Path(destination).expanduser().resolve()
    try:
        data_manager.write_json_document(dest, document)
    except OSError as exc:
        log.error("Backup export to '%s' failed: %s", dest, exc)
        raise StoreUnavailable(f"Cannot write backup to {dest}: {exc}") from exc
    log.info("Exported backup to '%s'", dest)
    return dest


def import_backup(context: RuntimeContext, source: Path) -> LedgerSnapshot:
    """Replace the entire dataset with the contents of a backup document.

    The document is parsed completely before anything is replaced; a
    malformed file leaves the current data untouched.

    Raises:
        FileNotFoundError: If ``source`` does not exist.
        ValidationError: If the document is malformed.
        StoreUnavailable: If the new dataset cannot be persisted.
    """

    path = Path(source).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Backup file not found: {path}")
    try:
        snapshot = data_manager.snapshot_from_document(data_manager.read_json_document(path))
    except ValueError as exc:
        log.error("Backup import from '%s' rejected: %s", path, exc)
        raise ValidationError(f"Invalid backup file: {exc}") from exc

    context.repository.replace(snapshot)
    for drift in find_balance_drift(snapshot):
        log.warning(
            "Imported %s '%s' has balance %s but its transactions sum to %s",
            drift.owner_kind,
            drift.owner_id,
            drift.stored,
            drift.expected,
        )
    log.info(
        "Imported backup '%s' (%d customers, %d transactions)",
        path,
        len(snapshot.customers),
        len(snapshot.transactions),
    )
    return snapshot


def calculate_outstanding_debts(context: RuntimeContext) -> List[Customer]:
    """Customers who owe the shop money, largest balance first."""

    customers = context.repository.snapshot().customers.values()
    debtors = [customer for customer in customers if customer.balance > 0]
    return sorted(debtors, key=lambda customer: customer.balance, reverse=True)


def customer_statement(context: RuntimeContext, customer_id: str) -> CustomerStatement:
    snapshot = context.repository.snapshot()
    customer = get_customer_in(snapshot, customer_id)
    transactions = sorted(
        (tx for tx in snapshot.transactions.values() if tx.customer_id == customer_id),
        key=lambda tx: tx.date,
    )
    total_debts = sum((tx.amount for tx in transactions if tx.type is TransactionType.DEBT), Decimal("0"))
    total_payments = sum(
        (tx.amount for tx in transactions if tx.type is TransactionType.PAYMENT), Decimal("0")
    )
    return CustomerStatement(customer, transactions, total_debts, total_payments)
