"""Daily self-healing pass over bread orders.

Once per calendar day, every unpaid order that belongs to a customer is
checked for its linked debt transaction. A missing debt is recreated through
the same insert path as a manual entry. Existing transactions are never
edited or removed here.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import List, Optional

from . import log
from .constants import MARKER_DATE_FORMAT, Description, TransactionType
from .core_logic import BusinessRuleViolation, RuntimeContext, insert_customer_transaction
from .data_manager import StoreUnavailable


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one call to :func:`reconcile`.

    ``did_sync`` is true only when at least one missing debt was recreated.
    ``already_ran`` is true when the call was skipped because the sweep had
    already run on that day.
    """

    did_sync: bool
    already_ran: bool = False
    repaired_order_ids: List[str] = field(default_factory=list)
    failed_order_ids: List[str] = field(default_factory=list)


def _marker_for(today: Optional[date]) -> str:
    if today is None:
        today = datetime.now().date()
    return today.strftime(MARKER_DATE_FORMAT)


def _repair_order(context: RuntimeContext, order_id: str) -> bool:
    """Recreate the missing debt of one order in its own unit of work.

    Returns ``False`` when, under the lock, the order no longer needs a
    repair (deleted, paid, detached, or the debt appeared meanwhile).
    """

    with context.repository.transaction() as snapshot:
        order = snapshot.bread_orders.get(order_id)
        if order is None or order.customer_id is None or order.is_paid:
            return False
        if snapshot.linked_transaction(order_id, TransactionType.DEBT) is not None:
            return False
        insert_customer_transaction(
            snapshot,
            customer_id=order.customer_id,
            transaction_type=TransactionType.DEBT,
            amount=order.total_amount,
            description=Description.ORDER_DEBT_AUTO.format(name=order.name),
            date=order.created_at,
            order_id=order.id,
        )
    return True


def reconcile(context: RuntimeContext, today: Optional[date] = None) -> ReconciliationResult:
    """Run the daily sweep unless it already ran on ``today``.

    A repair that fails is logged and recorded in ``failed_order_ids``; the
    sweep moves on to the next order. The date marker is written after the
    sweep so the next call on the same day is a no-op.

    Raises:
        StoreUnavailable: If the date marker cannot be persisted.
    """

    marker = _marker_for(today)
    snapshot = context.repository.snapshot()
    if snapshot.settings.last_reconciliation_date == marker:
        log.debug("Reconciliation already ran on %s", marker)
        return ReconciliationResult(did_sync=False, already_ran=True)

    candidates = [
        order.id
        for order in snapshot.bread_orders.values()
        if order.customer_id is not None
        and not order.is_paid
        and snapshot.linked_transaction(order.id, TransactionType.DEBT) is None
    ]

    repaired: List[str] = []
    failed: List[str] = []
    for order_id in candidates:
        try:
            if _repair_order(context, order_id):
                repaired.append(order_id)
                log.warning("Recreated missing debt transaction for order '%s'", order_id)
        except (BusinessRuleViolation, StoreUnavailable) as exc:
            failed.append(order_id)
            log.error("Could not repair order '%s': %s", order_id, exc)

    with context.repository.transaction() as working:
        working.settings = replace(working.settings, last_reconciliation_date=marker)

    log.info(
        "Reconciliation for %s finished: %d repaired, %d failed",
        marker,
        len(repaired),
        len(failed),
    )
    return ReconciliationResult(did_sync=bool(repaired), repaired_order_ids=repaired, failed_order_ids=failed)
