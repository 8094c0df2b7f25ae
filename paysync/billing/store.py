"""Billing store capability: read by key, insert, update.

The store is passed explicitly into the dispatcher and every handler.
``InMemoryBillingStore`` serves tests and single-process runs;
``paysync.billing.postgres.PostgresBillingStore`` is the production backend.

Both enforce uniqueness on the external ids at insert time and raise
``DuplicateKeyError`` on conflict, closing the check-then-insert race that
concurrent redeliveries would otherwise open.
"""

from __future__ import annotations

import copy
import threading
from typing import Protocol, runtime_checkable

from paysync.billing.models import Payment, Subscription
from paysync.exceptions import DuplicateKeyError, StoreError


@runtime_checkable
class BillingStore(Protocol):
    """Protocol for subscription and payment persistence.

    Every method may raise ``StoreError``. Inserts raise
    ``DuplicateKeyError`` when the external id already exists.
    """

    def get_subscription(self, external_subscription_id: str) -> Subscription | None:
        ...

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def update_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def get_payment(self, external_payment_id: str) -> Payment | None:
        ...

    def insert_payment(self, payment: Payment) -> Payment:
        ...


class InMemoryBillingStore:
    """Dict-backed billing store for testing and single-process use.

    Rows are copied on the way in and out so callers cannot mutate stored
    state without going through ``update_subscription``.  Each check-and-write
    runs under one lock; the HTTP layer calls the store from a thread pool.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._payments: dict[str, Payment] = {}
        self._lock = threading.Lock()

    def get_subscription(self, external_subscription_id: str) -> Subscription | None:
        with self._lock:
            row = self._subscriptions.get(external_subscription_id)
            return copy.deepcopy(row) if row is not None else None

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        key = subscription.external_subscription_id
        with self._lock:
            if key in self._subscriptions:
                raise DuplicateKeyError("user_subscriptions", key)
            self._subscriptions[key] = copy.deepcopy(subscription)
        return copy.deepcopy(subscription)

    def update_subscription(self, subscription: Subscription) -> Subscription:
        key = subscription.external_subscription_id
        with self._lock:
            if key not in self._subscriptions:
                raise StoreError(f"subscription {key} does not exist")
            self._subscriptions[key] = copy.deepcopy(subscription)
        return copy.deepcopy(subscription)

    def get_payment(self, external_payment_id: str) -> Payment | None:
        with self._lock:
            return self._payments.get(external_payment_id)

    def insert_payment(self, payment: Payment) -> Payment:
        key = payment.external_payment_id
        with self._lock:
            if key in self._payments:
                raise DuplicateKeyError("payment_history", key)
            self._payments[key] = payment
        return payment

    # ── Inspection helpers ────────────────────────────────────────────────

    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._subscriptions.values()]

    def payments(self) -> list[Payment]:
        with self._lock:
            return list(self._payments.values())
