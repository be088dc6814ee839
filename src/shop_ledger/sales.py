"""Point-of-sale checkout.

:func:`process_sale` validates a cart against current stock, decrements each
product, and records the customer's debt and payment in a single unit of
work. Stock is checked while the repository lock is held, so two checkouts
racing for the last unit cannot both succeed.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from . import log
from .constants import Description, TransactionType
from .core_logic import (
    EmptyCartError,
    InsufficientStockError,
    RuntimeContext,
    ValidationError,
    get_customer_in,
    get_product_in,
    insert_customer_transaction,
    require_nonnegative_money,
    require_positive_quantity,
    resolve_timestamp,
    to_money,
)
from .data_manager import Product, SaleItem, Transaction


@dataclass(frozen=True)
class CartItem:
    """One cart line; ``unit_price`` overrides the catalog selling price."""

    product_id: str
    quantity: int
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleDetails:
    """Checkout totals entered at the register.

    ``total`` may differ from the sum of the lines (discounts); when omitted
    it is computed from the cart.
    """

    customer_id: Optional[str] = None
    total: Optional[Decimal] = None
    amount_paid: Decimal = Decimal("0")
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleReceipt:
    total: Decimal
    amount_paid: Decimal
    change_due: Decimal
    items: tuple[SaleItem, ...]
    debt: Optional[Transaction] = None
    payment: Optional[Transaction] = None


def _aggregate_quantities(cart_items: Sequence[CartItem]) -> Dict[str, int]:
    quantities: Dict[str, int] = OrderedDict()
    for item in cart_items:
        require_positive_quantity(item.quantity)
        quantities[item.product_id] = quantities.get(item.product_id, 0) + int(item.quantity)
    return quantities


def _check_stock(product: Product, requested: int) -> None:
    if product.is_archived:
        log.warning("Attempted sale of archived product '%s'", product.id)
        raise ValidationError(f"Product '{product.name}' is archived")
    if product.stock < requested:
        log.warning(
            "Insufficient stock for product '%s': requested %d, available %d",
            product.id,
            requested,
            product.stock,
        )
        raise InsufficientStockError(
            f"Insufficient stock for {product.name}. Requested: {requested}, available: {product.stock}."
        )


def process_sale(context: RuntimeContext, cart_items: Sequence[CartItem], details: SaleDetails) -> SaleReceipt:
    """Execute a checkout atomically.

    Every cart line is validated before any stock moves. With a customer, a
    debt for ``total`` (carrying the line items) and, when ``amount_paid`` is
    positive, a payment for ``min(amount_paid, total)`` are recorded. Cash
    sales without a customer only move stock.

    Args:
        context (RuntimeContext): Runtime context holding the repository.
        cart_items (Sequence[CartItem]): Products and quantities being sold.
        details (SaleDetails): Customer, total and amount tendered.

    Returns:
        SaleReceipt: The recorded transactions plus the change due.

    Raises:
        EmptyCartError: If ``cart_items`` is empty.
        NotFoundError: If a product or the customer is unknown.
        InsufficientStockError: If a product lacks stock for the aggregated
            quantity requested.
        ValidationError: For non-positive quantities, negative totals or
            payments, and archived products.
    """

    if not cart_items:
        log.warning("Checkout attempted with an empty cart")
        raise EmptyCartError("The cart is empty")

    quantities = _aggregate_quantities(cart_items)
    amount_paid = to_money(details.amount_paid, field_name="amount_paid")
    require_nonnegative_money(amount_paid, field_name="Amount paid")
    when = resolve_timestamp(details.timestamp)

    with context.repository.transaction() as snapshot:
        products = {product_id: get_product_in(snapshot, product_id) for product_id in quantities}
        for product_id, requested in quantities.items():
            _check_stock(products[product_id], requested)
        if details.customer_id is not None:
            get_customer_in(snapshot, details.customer_id)

        items: List[SaleItem] = []
        for item in cart_items:
            product = products[item.product_id]
            unit_price = product.selling_price if item.unit_price is None else to_money(item.unit_price)
            require_nonnegative_money(unit_price, field_name="Unit price")
            items.append(
                SaleItem(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=int(item.quantity),
                    unit_price=unit_price,
                    purchase_price=product.purchase_price,
                )
            )

        if details.total is None:
            total = sum((line.unit_price * line.quantity for line in items), Decimal("0"))
        else:
            total = to_money(details.total, field_name="total")
        require_nonnegative_money(total, field_name="Sale total")

        for product_id, requested in quantities.items():
            product = products[product_id]
            snapshot.products[product_id] = replace(product, stock=product.stock - requested)

        debt = None
        payment = None
        if details.customer_id is not None:
            if total > 0:
                debt = insert_customer_transaction(
                    snapshot,
                    customer_id=details.customer_id,
                    transaction_type=TransactionType.DEBT,
                    amount=total,
                    description=Description.SALE_DEBT,
                    date=when,
                    sale_items=items,
                )
            settled = min(amount_paid, total)
            if settled > 0:
                payment = insert_customer_transaction(
                    snapshot,
                    customer_id=details.customer_id,
                    transaction_type=TransactionType.PAYMENT,
                    amount=settled,
                    description=Description.SALE_PAYMENT,
                    date=when,
                )

    change_due = max(amount_paid - total, Decimal("0"))
    log.info(
        "Processed sale of %d lines (total=%s, paid=%s, customer=%s)",
        len(items),
        total,
        amount_paid,
        details.customer_id,
    )
    return SaleReceipt(
        total=total,
        amount_paid=amount_paid,
        change_due=change_due,
        items=tuple(items),
        debt=debt,
        payment=payment,
    )
