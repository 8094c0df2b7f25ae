"""Payment ledger: one payment row per gateway payment id.

The existence check is the first defense against duplicate delivery; the
unique index on external_payment_id is the second, for deliveries that race
past the check.  Either way the caller sees DUPLICATE_PAYMENT carrying the
row that was already recorded, which the HTTP layer acknowledges with 200.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable

from paysync.billing.models import Payment, PaymentStatus, utcnow
from paysync.billing.store import BillingStore
from paysync.exceptions import DuplicateKeyError, StoreError
from paysync.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)


class PaymentLedger:
    """Idempotent payment recording against a billing store."""

    def __init__(
        self,
        store: BillingStore,
        *,
        currency: str,
        payment_method: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._currency = currency
        self._payment_method = payment_method
        self._clock = clock

    def record_payment(
        self,
        user_id: str,
        subscription_external_id: str | None,
        payment_external_id: str,
        amount: Decimal,
        status: PaymentStatus,
    ) -> Result[Payment]:
        """Record a payment once.

        Steps:
            1. Resolve the subscription link (a miss is logged, not fatal)
            2. Return DUPLICATE_PAYMENT if the payment id is already recorded
            3. Insert with payment_date = now, fixed currency and method

        Returns:
            Ok(new payment), Err(DUPLICATE_PAYMENT, value=existing payment),
            Err(MALFORMED_PAYLOAD) for a negative amount, or Err(STORE_FAILURE).
        """
        if amount < 0:
            return Err(ErrorKind.MALFORMED_PAYLOAD, "Invalid payment amount")

        try:
            subscription_id = self._resolve_subscription(subscription_external_id)

            existing = self._store.get_payment(payment_external_id)
            if existing is not None:
                logger.info("Payment %s already recorded: no-op", payment_external_id)
                return Err(
                    ErrorKind.DUPLICATE_PAYMENT,
                    f"Payment {payment_external_id} already recorded",
                    value=existing,
                )

            payment = Payment(
                external_payment_id=payment_external_id,
                user_id=user_id,
                subscription_id=subscription_id,
                amount=amount,
                currency=self._currency,
                status=status,
                payment_method=self._payment_method,
                payment_date=self._clock(),
            )
            try:
                recorded = self._store.insert_payment(payment)
            except DuplicateKeyError:
                winner = self._store.get_payment(payment_external_id)
                logger.info("Payment %s recorded concurrently: no-op", payment_external_id)
                return Err(
                    ErrorKind.DUPLICATE_PAYMENT,
                    f"Payment {payment_external_id} already recorded",
                    value=winner,
                )
        except StoreError as exc:
            logger.exception("Failed to record payment %s", payment_external_id)
            return Err(ErrorKind.STORE_FAILURE, str(exc))

        logger.info(
            "Payment %s recorded: %s %s %s (user=%s, subscription=%s)",
            payment_external_id,
            status.value,
            amount,
            self._currency,
            user_id,
            subscription_external_id or "-",
        )
        return Ok(recorded)

    def _resolve_subscription(self, subscription_external_id: str | None) -> str | None:
        if not subscription_external_id:
            return None
        subscription = self._store.get_subscription(subscription_external_id)
        if subscription is None:
            logger.warning(
                "Subscription %s not found: recording payment without a subscription link",
                subscription_external_id,
            )
            return None
        return subscription.id
