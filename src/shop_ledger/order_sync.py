"""Bread-order lifecycle and the synchronization of linked transactions.

A bread order with a customer owns at most one debt and one payment
transaction, both tagged with ``order_id``. Whenever the order's customer,
total, name or paid flag changes, :func:`sync_linked_transactions` brings
those transactions back in line. The rules are applied in this order:

1. Customer changed: drop both linked transactions, then recreate the debt
   (and the payment when the order is paid) for the new customer. This rule
   owns the payment for the update, so rules 3 and 4 are skipped.
2. Total or name changed: edit the debt, and the payment if any, in place.
3. Paid flag false -> true: create the payment if missing.
4. Paid flag true -> false: delete the payment if present.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, List, Optional

from . import log
from .constants import Description, TransactionType
from .core_logic import (
    UNSET,
    BusinessRuleViolation,
    RuntimeContext,
    TransactionPatch,
    edit_customer_transaction,
    get_customer_in,
    get_order_in,
    insert_customer_transaction,
    next_numeric_id,
    remove_customer_transaction,
    require_name,
    require_positive_amount,
    require_positive_quantity,
    resolve_timestamp,
    to_money,
)
from .data_manager import BreadOrder, LedgerSnapshot


@dataclass(frozen=True)
class BreadOrderPatch:
    """Partial bread-order update.

    ``customer_id`` uses :data:`UNSET` for "leave as is" so that ``None`` can
    detach the order from its customer. A new ``quantity`` or ``unit_price``
    recomputes ``total_amount``.
    """

    name: Optional[str] = None
    quantity: Optional[int] = None
    unit_price: Optional[Decimal] = None
    is_paid: Optional[bool] = None
    is_delivered: Optional[bool] = None
    is_pinned: Optional[bool] = None
    customer_id: Any = UNSET


def _create_linked(
    snapshot: LedgerSnapshot,
    order: BreadOrder,
    transaction_type: TransactionType,
    *,
    description: Optional[str] = None,
) -> None:
    if order.customer_id is None:
        log.error("Order '%s' has no customer to carry a %s transaction", order.id, transaction_type.value)
        raise BusinessRuleViolation(f"Order '{order.id}' is not linked to a customer")
    if description is None:
        template = Description.ORDER_DEBT if transaction_type is TransactionType.DEBT else Description.ORDER_PAYMENT
        description = template.format(name=order.name)
    insert_customer_transaction(
        snapshot,
        customer_id=order.customer_id,
        transaction_type=transaction_type,
        amount=order.total_amount,
        description=description,
        order_id=order.id,
    )


def _remove_linked(snapshot: LedgerSnapshot, order_id: str, transaction_type: TransactionType) -> bool:
    linked = snapshot.linked_transaction(order_id, transaction_type)
    if linked is None:
        return False
    remove_customer_transaction(snapshot, linked.id)
    return True


def sync_linked_transactions(snapshot: LedgerSnapshot, old: BreadOrder, new: BreadOrder) -> None:
    """Bring the transactions linked to ``new.id`` in line with ``new``.

    Must run inside a unit of work together with the order write. A patch that
    leaves customer, total, name and paid flag unchanged touches nothing.
    """

    if old.customer_id != new.customer_id:
        _remove_linked(snapshot, old.id, TransactionType.DEBT)
        _remove_linked(snapshot, old.id, TransactionType.PAYMENT)
        if new.customer_id is not None:
            _create_linked(snapshot, new, TransactionType.DEBT)
            if new.is_paid:
                _create_linked(snapshot, new, TransactionType.PAYMENT)
        log.info(
            "Moved order '%s' from customer '%s' to '%s'",
            new.id,
            old.customer_id,
            new.customer_id,
        )
        return

    if old.total_amount != new.total_amount or old.name != new.name:
        debt = snapshot.linked_transaction(new.id, TransactionType.DEBT)
        if debt is not None:
            edit_customer_transaction(
                snapshot,
                debt.id,
                TransactionPatch(
                    amount=new.total_amount,
                    description=Description.ORDER_DEBT.format(name=new.name),
                ),
            )
        elif new.customer_id is not None:
            # left to the daily reconciliation when the order is unpaid
            log.warning("Order '%s' has no linked debt transaction to update", new.id)
        payment = snapshot.linked_transaction(new.id, TransactionType.PAYMENT)
        if payment is not None:
            edit_customer_transaction(
                snapshot,
                payment.id,
                TransactionPatch(
                    amount=new.total_amount,
                    description=Description.ORDER_PAYMENT.format(name=new.name),
                ),
            )

    if not old.is_paid and new.is_paid and new.customer_id is not None:
        if snapshot.linked_transaction(new.id, TransactionType.PAYMENT) is None:
            _create_linked(snapshot, new, TransactionType.PAYMENT)

    if old.is_paid and not new.is_paid:
        _remove_linked(snapshot, new.id, TransactionType.PAYMENT)


def list_bread_orders(context: RuntimeContext) -> List[BreadOrder]:
    """Orders with pinned ones first, then newest first."""

    orders = context.repository.snapshot().bread_orders.values()
    return sorted(orders, key=lambda order: (not order.is_pinned, -order.created_at.timestamp()))


def add_bread_order(
    context: RuntimeContext,
    *,
    name: str,
    quantity: int,
    customer_id: Optional[str] = None,
    unit_price: Optional[Decimal] = None,
    is_paid: bool = False,
    is_pinned: bool = False,
) -> BreadOrder:
    """Create a bread order and, for a customer, its linked transactions.

    ``unit_price`` defaults to the current bread unit price and is frozen
    into the order; later price changes do not touch it.

    Raises:
        ValidationError: If the name is empty, the quantity is not a positive
            whole number or the unit price is not positive.
        NotFoundError: If ``customer_id`` is unknown.
    """

    name = require_name(name)
    require_positive_quantity(quantity)

    with context.repository.transaction() as snapshot:
        price = snapshot.settings.bread_unit_price if unit_price is None else to_money(unit_price)
        require_positive_amount(price, field_name="Unit price")
        customer_name = None
        if customer_id is not None:
            customer_name = get_customer_in(snapshot, customer_id).name

        order = BreadOrder(
            id=str(next_numeric_id(snapshot.bread_orders)),
            name=name,
            quantity=int(quantity),
            unit_price=price,
            total_amount=price * int(quantity),
            created_at=resolve_timestamp(None),
            is_paid=is_paid,
            is_pinned=is_pinned,
            customer_id=customer_id,
            customer_name=customer_name,
        )
        snapshot.bread_orders[order.id] = order
        if customer_id is not None:
            _create_linked(snapshot, order, TransactionType.DEBT)
            if is_paid:
                _create_linked(snapshot, order, TransactionType.PAYMENT)

    log.info(
        "Added bread order '%s' (%s x%d = %s, customer=%s)",
        order.id,
        order.name,
        order.quantity,
        order.total_amount,
        customer_id,
    )
    return order


def _apply_patch(snapshot: LedgerSnapshot, current: BreadOrder, patch: BreadOrderPatch) -> BreadOrder:
    changes: dict[str, Any] = {}
    if patch.name is not None:
        changes["name"] = require_name(patch.name)
    if patch.quantity is not None:
        require_positive_quantity(patch.quantity)
        changes["quantity"] = int(patch.quantity)
    if patch.unit_price is not None:
        price = to_money(patch.unit_price)
        require_positive_amount(price, field_name="Unit price")
        changes["unit_price"] = price
    for flag in ("is_paid", "is_delivered", "is_pinned"):
        value = getattr(patch, flag)
        if value is not None:
            changes[flag] = bool(value)
    if patch.customer_id is not UNSET:
        changes["customer_id"] = patch.customer_id
        if patch.customer_id is None:
            changes["customer_name"] = None
        else:
            changes["customer_name"] = get_customer_in(snapshot, patch.customer_id).name

    updated = replace(current, **changes)
    if "quantity" in changes or "unit_price" in changes:
        updated = replace(updated, total_amount=updated.unit_price * updated.quantity)
    return updated


def update_bread_order(context: RuntimeContext, order_id: str, patch: BreadOrderPatch) -> BreadOrder:
    """Patch an order and synchronize its linked transactions atomically.

    Raises:
        NotFoundError: If the order or the new customer does not exist.
        ValidationError: If a patched field is invalid.
    """

    with context.repository.transaction() as snapshot:
        current = get_order_in(snapshot, order_id)
        updated = _apply_patch(snapshot, current, patch)
        if updated == current:
            log.debug("Order '%s' patch is a no-op", order_id)
            return current
        sync_linked_transactions(snapshot, current, updated)
        snapshot.bread_orders[order_id] = updated

    log.info("Updated bread order '%s'", order_id)
    return updated


def delete_bread_order(context: RuntimeContext, order_id: str) -> BreadOrder:
    """Delete an order after removing its linked transactions."""

    with context.repository.transaction() as snapshot:
        order = get_order_in(snapshot, order_id)
        _remove_linked(snapshot, order_id, TransactionType.DEBT)
        _remove_linked(snapshot, order_id, TransactionType.PAYMENT)
        del snapshot.bread_orders[order_id]
    log.info("Deleted bread order '%s' (%s)", order_id, order.name)
    return order


def reset_bread_orders(context: RuntimeContext) -> List[str]:
    """Delete every non-pinned order, keeping their transactions as history.

    Linked transactions stay on the customer account (balances are not
    touched) but their ``order_id`` is cleared so no stale link remains.

    Returns:
        List[str]: Ids of the removed orders.
    """

    with context.repository.transaction() as snapshot:
        removed = [order.id for order in snapshot.bread_orders.values() if not order.is_pinned]
        for order_id in removed:
            for transaction_type in (TransactionType.DEBT, TransactionType.PAYMENT):
                linked = snapshot.linked_transaction(order_id, transaction_type)
                if linked is not None:
                    snapshot.put_transaction(replace(linked, order_id=None))
            del snapshot.bread_orders[order_id]
    log.info("Reset bread orders: removed %d, kept %d pinned", len(removed), len(snapshot.bread_orders))
    return removed
