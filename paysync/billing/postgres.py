"""Postgres billing store (psycopg 3).

Tables:
  user_subscriptions: one row per gateway subscription, UNIQUE external id
  payment_history: one row per gateway payment, UNIQUE external id

The unique constraints are what make concurrent duplicate deliveries safe:
a racing second insert fails with UniqueViolation, which is surfaced as
``DuplicateKeyError`` and treated by callers as "already recorded".
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from paysync.billing.models import (
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from paysync.exceptions import DuplicateKeyError, StoreError

logger = logging.getLogger(__name__)

_SUBSCRIPTION_COLUMNS = (
    "id, external_subscription_id, user_id, plan_id, status, metadata, created_at, updated_at"
)
_PAYMENT_COLUMNS = (
    "id, external_payment_id, user_id, subscription_id, amount, currency, "
    "status, payment_method, payment_date"
)


class PostgresBillingStore:
    """Billing store backed by Postgres. One short-lived connection per call."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        try:
            return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)
        except psycopg.Error as exc:
            raise StoreError(f"could not connect to billing database: {exc}") from exc

    def init_tables(self) -> None:
        """Create billing tables if they don't exist.  Idempotent."""
        try:
            with self._get_conn() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS user_subscriptions (
                        id                        UUID PRIMARY KEY,
                        external_subscription_id  TEXT NOT NULL UNIQUE,
                        user_id                   TEXT NOT NULL,
                        plan_id                   TEXT NOT NULL,
                        status                    TEXT NOT NULL,
                        metadata                  JSONB NOT NULL DEFAULT '{}',
                        created_at                TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at                TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS payment_history (
                        id                   UUID PRIMARY KEY,
                        external_payment_id  TEXT NOT NULL UNIQUE,
                        user_id              TEXT NOT NULL,
                        subscription_id      UUID REFERENCES user_subscriptions (id),
                        amount               NUMERIC(14, 2) NOT NULL CHECK (amount >= 0),
                        currency             TEXT NOT NULL,
                        status               TEXT NOT NULL,
                        payment_method       TEXT NOT NULL,
                        payment_date         TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
        except psycopg.Error as exc:
            raise StoreError(f"failed to initialize billing tables: {exc}") from exc
        logger.info("Billing tables initialized")

    # ── Subscriptions ─────────────────────────────────────────────────────

    def get_subscription(self, external_subscription_id: str) -> Subscription | None:
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    f"SELECT {_SUBSCRIPTION_COLUMNS} FROM user_subscriptions "
                    "WHERE external_subscription_id = %s",
                    (external_subscription_id,),
                ).fetchone()
        except psycopg.Error as exc:
            raise StoreError(f"failed to read subscription {external_subscription_id}: {exc}") from exc
        return _row_to_subscription(row) if row else None

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        try:
            with self._get_conn() as conn:
                conn.execute(
                    """INSERT INTO user_subscriptions
                       (id, external_subscription_id, user_id, plan_id, status,
                        metadata, created_at, updated_at)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s)""",
                    (
                        subscription.id,
                        subscription.external_subscription_id,
                        subscription.user_id,
                        subscription.plan_id,
                        subscription.status.value,
                        Jsonb(subscription.metadata),
                        subscription.created_at,
                        subscription.updated_at,
                    ),
                )
        except UniqueViolation as exc:
            raise DuplicateKeyError(
                "user_subscriptions", subscription.external_subscription_id
            ) from exc
        except psycopg.Error as exc:
            raise StoreError(
                f"failed to insert subscription {subscription.external_subscription_id}: {exc}"
            ) from exc
        return subscription

    def update_subscription(self, subscription: Subscription) -> Subscription:
        try:
            with self._get_conn() as conn:
                result = conn.execute(
                    """UPDATE user_subscriptions
                       SET status = %s, metadata = %s, updated_at = %s
                       WHERE external_subscription_id = %s""",
                    (
                        subscription.status.value,
                        Jsonb(subscription.metadata),
                        subscription.updated_at,
                        subscription.external_subscription_id,
                    ),
                )
        except psycopg.Error as exc:
            raise StoreError(
                f"failed to update subscription {subscription.external_subscription_id}: {exc}"
            ) from exc
        if result.rowcount == 0:
            raise StoreError(f"subscription {subscription.external_subscription_id} does not exist")
        return subscription

    # ── Payments ──────────────────────────────────────────────────────────

    def get_payment(self, external_payment_id: str) -> Payment | None:
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    f"SELECT {_PAYMENT_COLUMNS} FROM payment_history "
                    "WHERE external_payment_id = %s",
                    (external_payment_id,),
                ).fetchone()
        except psycopg.Error as exc:
            raise StoreError(f"failed to read payment {external_payment_id}: {exc}") from exc
        return _row_to_payment(row) if row else None

    def insert_payment(self, payment: Payment) -> Payment:
        try:
            with self._get_conn() as conn:
                conn.execute(
                    """INSERT INTO payment_history
                       (id, external_payment_id, user_id, subscription_id, amount,
                        currency, status, payment_method, payment_date)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                    (
                        payment.id,
                        payment.external_payment_id,
                        payment.user_id,
                        payment.subscription_id,
                        payment.amount,
                        payment.currency,
                        payment.status.value,
                        payment.payment_method,
                        payment.payment_date,
                    ),
                )
        except UniqueViolation as exc:
            raise DuplicateKeyError("payment_history", payment.external_payment_id) from exc
        except psycopg.Error as exc:
            raise StoreError(f"failed to insert payment {payment.external_payment_id}: {exc}") from exc
        return payment


def _row_to_subscription(row: dict[str, Any]) -> Subscription:
    return Subscription(
        id=str(row["id"]),
        external_subscription_id=row["external_subscription_id"],
        user_id=row["user_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        metadata=row["metadata"] or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_payment(row: dict[str, Any]) -> Payment:
    return Payment(
        id=str(row["id"]),
        external_payment_id=row["external_payment_id"],
        user_id=row["user_id"],
        subscription_id=str(row["subscription_id"]) if row["subscription_id"] else None,
        amount=row["amount"],
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        payment_method=row["payment_method"],
        payment_date=row["payment_date"],
    )
