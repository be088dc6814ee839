"""Transactional access to the committed ledger snapshot.

:class:`LedgerRepository` is the single gate through which every compound
update reaches the backing store. A unit of work runs against a private
working copy while holding a re-entrant lock; the copy is saved and then
published only when the unit finishes without raising. Readers never observe
a half-applied update, and an in-memory change is never visible before the
backing write has been confirmed.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, TypeVar

from . import log
from .data_manager import LedgerSnapshot, LedgerStore, StoreUnavailable


T = TypeVar("T")
Subscriber = Callable[[LedgerSnapshot], None]


class LedgerRepository:
    """Owns the committed snapshot and serializes writes to the store."""

    def __init__(self, store: LedgerStore, snapshot: Optional[LedgerSnapshot] = None) -> None:
        self.store = store
        self._committed = snapshot if snapshot is not None else LedgerSnapshot()
        self._lock = threading.RLock()
        self._working: Optional[LedgerSnapshot] = None
        self._subscribers: List[Subscriber] = []

    @classmethod
    def open(cls, store: LedgerStore) -> "LedgerRepository":
        """Load the store once and wrap the result.

        Raises:
            FileNotFoundError: If the data file does not exist.
            StoreUnavailable: If the data file cannot be read.
        """

        snapshot = store.load()
        log.info(
            "Opened ledger '%s' (%d customers, %d transactions, %d orders)",
            store.path,
            len(snapshot.customers),
            len(snapshot.transactions),
            len(snapshot.bread_orders),
        )
        return cls(store, snapshot)

    def snapshot(self) -> LedgerSnapshot:
        """Return a detached copy of the committed state for reading."""

        with self._lock:
            return self._committed.copy()

    @contextmanager
    def transaction(self) -> Iterator[LedgerSnapshot]:
        """Run a unit of work against a working copy.

        Nested use joins the outer unit: the inner block receives the same
        working copy and only the outermost block saves. Any exception
        discards the working copy and propagates unchanged.

        Raises:
            StoreUnavailable: If the backing write fails; the committed state
                is left untouched.
        """

        with self._lock:
            if self._working is not None:
                yield self._working
                return

            working = self._committed.copy()
            self._working = working
            try:
                yield working
            except BaseException:
                log.debug("Discarding working copy after failed unit of work")
                raise
            else:
                self.store.save(working)
                self._committed = working
            finally:
                self._working = None

        self._notify()

    def with_transaction(self, fn: Callable[[LedgerSnapshot], T]) -> T:
        """Call ``fn`` with a working copy inside :meth:`transaction`."""

        with self.transaction() as working:
            return fn(working)

    def replace(self, snapshot: LedgerSnapshot) -> None:
        """Persist ``snapshot`` as the whole dataset, discarding the current one."""

        with self.transaction() as working:
            working.customers = dict(snapshot.customers)
            working.suppliers = dict(snapshot.suppliers)
            working.products = dict(snapshot.products)
            working.transactions = dict(snapshot.transactions)
            working.supplier_transactions = dict(snapshot.supplier_transactions)
            working.bread_orders = dict(snapshot.bread_orders)
            working.expenses = dict(snapshot.expenses)
            working.settings = snapshot.settings
            working.extras = dict(snapshot.extras)
            working.rebuild_order_index()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` to receive each newly committed snapshot.

        Returns:
            Callable[[], None]: Function that removes the subscription.
        """

        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
            committed = self._committed
        for callback in subscribers:
            try:
                callback(committed.copy())
            except Exception:  # a listener must not undo a commit
                log.exception("Ledger subscriber %r failed", callback)


__all__ = ["LedgerRepository", "StoreUnavailable", "Subscriber"]
