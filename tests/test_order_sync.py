"""Tests for bread orders and the transactions they keep in step."""

from __future__ import annotations

from decimal import Decimal

import pytest

from shop_ledger import core_logic, order_sync
from shop_ledger.constants import TransactionType
from shop_ledger.order_sync import (
    BreadOrderPatch,
    add_bread_order,
    delete_bread_order,
    list_bread_orders,
    reset_bread_orders,
    update_bread_order,
)


def _balance(context, customer_id: str) -> Decimal:
    return core_logic.get_customer(context, customer_id).balance


def _linked(context, order_id: str, transaction_type: TransactionType):
    return context.repository.snapshot().linked_transaction(order_id, transaction_type)


def _order_transactions(context, order_id: str):
    return [tx for tx in context.repository.snapshot().transactions.values() if tx.order_id == order_id]


def test_order_lifecycle_keeps_balance_in_step(context, customer):
    """Paying and unpaying an order keeps the balance in step."""

    order = add_bread_order(
        context, name="Amina", quantity=10, unit_price=Decimal("2"), customer_id=customer.id
    )
    assert order.total_amount == Decimal("20")
    assert _balance(context, customer.id) == Decimal("20")
    debt = _linked(context, order.id, TransactionType.DEBT)
    assert debt is not None and debt.amount == Decimal("20")

    update_bread_order(context, order.id, BreadOrderPatch(is_paid=True))
    payment = _linked(context, order.id, TransactionType.PAYMENT)
    assert payment is not None and payment.amount == Decimal("20")
    assert _balance(context, customer.id) == Decimal("0")

    update_bread_order(context, order.id, BreadOrderPatch(is_paid=False))
    assert _linked(context, order.id, TransactionType.PAYMENT) is None
    assert _balance(context, customer.id) == Decimal("20")

    delete_bread_order(context, order.id)
    assert _order_transactions(context, order.id) == []
    assert _balance(context, customer.id) == Decimal("0")


def test_add_order_uses_current_bread_price(context):
    """New orders freeze the current bread price."""

    core_logic.update_bread_unit_price(context, Decimal("12"))
    order = add_bread_order(context, name="Walk-in", quantity=3)
    assert order.unit_price == Decimal("12")
    assert order.total_amount == Decimal("36")
    assert context.repository.snapshot().transactions == {}


def test_add_paid_order_creates_debt_and_payment(context, customer):
    """An order created as paid gets both a debt and a payment."""

    order = add_bread_order(context, name="Amina", quantity=2, customer_id=customer.id, is_paid=True)
    assert _linked(context, order.id, TransactionType.DEBT) is not None
    assert _linked(context, order.id, TransactionType.PAYMENT) is not None
    assert _balance(context, customer.id) == Decimal("0")


@pytest.mark.parametrize("quantity", [0, -1, 1.5])
def test_add_order_rejects_bad_quantity(context, quantity):
    """Order quantities must be positive whole numbers."""

    with pytest.raises(core_logic.ValidationError):
        add_bread_order(context, name="Bad", quantity=quantity)
    assert context.repository.snapshot().bread_orders == {}


def test_add_order_unknown_customer(context):
    """An order for a missing customer is rejected."""

    with pytest.raises(core_logic.NotFoundError):
        add_bread_order(context, name="Ghost", quantity=1, customer_id="404")


def test_quantity_change_edits_linked_amounts(context, customer):
    """A new quantity updates the debt and payment amounts."""

    order = add_bread_order(
        context, name="Amina", quantity=10, unit_price=Decimal("2"), customer_id=customer.id, is_paid=True
    )
    updated = update_bread_order(context, order.id, BreadOrderPatch(quantity=15))

    assert updated.total_amount == Decimal("30")
    assert _linked(context, order.id, TransactionType.DEBT).amount == Decimal("30")
    assert _linked(context, order.id, TransactionType.PAYMENT).amount == Decimal("30")
    assert _balance(context, customer.id) == Decimal("0")
    assert len(_order_transactions(context, order.id)) == 2


def test_rename_updates_debt_description(context, customer):
    """Renaming an order rewrites the debt description."""

    order = add_bread_order(context, name="Amina", quantity=1, customer_id=customer.id)
    update_bread_order(context, order.id, BreadOrderPatch(name="Amina (school)"))
    assert "Amina (school)" in _linked(context, order.id, TransactionType.DEBT).description


def test_customer_change_moves_debt(context, customer):
    """Changing customer moves the debt to the new account."""

    other = core_logic.add_customer(context, name="Yacine")
    order = add_bread_order(
        context, name="Morning", quantity=10, unit_price=Decimal("2"), customer_id=customer.id
    )

    updated = update_bread_order(context, order.id, BreadOrderPatch(customer_id=other.id))

    assert updated.customer_name == "Yacine"
    assert _balance(context, customer.id) == Decimal("0")
    assert _balance(context, other.id) == Decimal("20")
    debt = _linked(context, order.id, TransactionType.DEBT)
    assert debt.customer_id == other.id


def test_customer_change_with_paid_flag_creates_single_payment(context, customer):
    """Changing customer and paying at once leaves one debt and one payment."""

    other = core_logic.add_customer(context, name="Yacine")
    order = add_bread_order(
        context, name="Morning", quantity=10, unit_price=Decimal("2"), customer_id=customer.id
    )

    update_bread_order(context, order.id, BreadOrderPatch(customer_id=other.id, is_paid=True))

    transactions = _order_transactions(context, order.id)
    assert sorted(tx.type for tx in transactions) == [TransactionType.DEBT, TransactionType.PAYMENT]
    assert all(tx.customer_id == other.id for tx in transactions)
    assert _balance(context, other.id) == Decimal("0")
    assert _balance(context, customer.id) == Decimal("0")


def test_detaching_customer_removes_links(context, customer):
    """Detaching the customer removes the linked transactions."""

    order = add_bread_order(context, name="Morning", quantity=4, customer_id=customer.id, is_paid=True)
    updated = update_bread_order(context, order.id, BreadOrderPatch(customer_id=None))
    assert updated.customer_id is None and updated.customer_name is None
    assert _order_transactions(context, order.id) == []
    assert _balance(context, customer.id) == Decimal("0")


def test_attaching_customer_to_walk_in_order(context, customer):
    """Attaching a customer creates the order's debt."""

    order = add_bread_order(context, name="Walk-in", quantity=2, unit_price=Decimal("5"))
    update_bread_order(context, order.id, BreadOrderPatch(customer_id=customer.id))
    assert _balance(context, customer.id) == Decimal("10")


def test_linked_transaction_needs_a_customer(context):
    """A walk-in order cannot carry a linked transaction."""

    order = add_bread_order(context, name="Walk-in", quantity=2, unit_price=Decimal("5"))
    with pytest.raises(core_logic.BusinessRuleViolation):
        with context.repository.transaction() as snapshot:
            order_sync._create_linked(snapshot, snapshot.bread_orders[order.id], TransactionType.DEBT)
    assert context.repository.snapshot().transactions == {}


def test_noop_patch_is_idempotent(context, customer):
    """A patch that changes nothing touches no transaction."""

    order = add_bread_order(context, name="Amina", quantity=3, customer_id=customer.id)
    before = context.repository.snapshot()

    result = update_bread_order(context, order.id, BreadOrderPatch(quantity=3, name="Amina"))

    after = context.repository.snapshot()
    assert result == order
    assert after.transactions == before.transactions
    assert after.customers == before.customers


def test_delivery_flag_does_not_touch_transactions(context, customer):
    """Toggling delivery leaves the linked transactions alone."""

    order = add_bread_order(context, name="Amina", quantity=3, customer_id=customer.id)
    before = context.repository.snapshot().transactions
    updated = update_bread_order(context, order.id, BreadOrderPatch(is_delivered=True))
    assert updated.is_delivered
    assert context.repository.snapshot().transactions == before


def test_update_missing_order(context):
    """Updating an unknown order raises NotFoundError."""

    with pytest.raises(core_logic.NotFoundError):
        update_bread_order(context, "404", BreadOrderPatch(is_paid=True))


def test_failed_sync_leaves_order_unchanged(context, customer):
    """A failed update leaves the order and its transactions unchanged."""

    order = add_bread_order(context, name="Amina", quantity=3, customer_id=customer.id)
    with pytest.raises(core_logic.NotFoundError):
        update_bread_order(context, order.id, BreadOrderPatch(quantity=5, customer_id="404"))
    assert context.repository.snapshot().bread_orders[order.id] == order
    assert _balance(context, customer.id) == order.total_amount


def test_list_orders_pinned_first(context):
    """Pinned orders are listed first, then newest first."""

    first = add_bread_order(context, name="First", quantity=1)
    pinned = add_bread_order(context, name="Pinned", quantity=1, is_pinned=True)
    assert list_bread_orders(context)[0].id == pinned.id
    assert {order.id for order in list_bread_orders(context)} == {first.id, pinned.id}


def test_reset_keeps_pinned_and_history(context, customer):
    """Reset keeps pinned orders and the transactions of removed ones."""

    pinned = add_bread_order(context, name="Regular", quantity=2, customer_id=customer.id, is_pinned=True)
    daily = add_bread_order(context, name="Daily", quantity=5, customer_id=customer.id)
    balance = _balance(context, customer.id)

    removed = reset_bread_orders(context)

    snapshot = context.repository.snapshot()
    assert removed == [daily.id]
    assert set(snapshot.bread_orders) == {pinned.id}
    assert _balance(context, customer.id) == balance
    assert len(snapshot.transactions) == 2
    assert snapshot.order_links(daily.id).is_empty()
    assert snapshot.linked_transaction(pinned.id, TransactionType.DEBT) is not None
