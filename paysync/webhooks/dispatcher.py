"""Webhook event dispatcher: routes a normalized event to its transition.

Event type -> effect:

    subscription.authenticated       ensure-exists
    subscription.activated           update-status -> active
    subscription.charged             update-status -> active, record payment
    subscription.payment.succeeded   update-status -> active, record payment
    subscription.pending             update-status -> pending
    subscription.halted              update-status -> halted
    subscription.paused              update-status -> halted (no paused state)
    subscription.resumed             update-status -> active
    subscription.cancelled           update-status -> cancelled
    subscription.completed           update-status -> expired
    payment.failed                   record payment (failed)

Contract:
- Exactly one handler runs per event
- Unknown event types are logged and acknowledged (UNKNOWN_EVENT), never retried
- Correlation-required events without a resolvable user id or subscription id
  fail with MISSING_CORRELATION before any write
- A failure recording the payment does not roll back the status update;
  both are idempotent and are re-derived on redelivery
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Callable

from paysync.billing.ledger import PaymentLedger
from paysync.billing.models import (
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from paysync.billing.state_machine import SubscriptionStateMachine
from paysync.billing.store import BillingStore
from paysync.config import Settings
from paysync.result import Err, ErrorKind, Ok, Result
from paysync.webhooks.normalizer import (
    Correlation,
    NormalizedEvent,
    correlate,
    parse_amount,
)

logger = logging.getLogger(__name__)

# Dropping these silently would leave a subscription unlinked to a user.
CORRELATION_REQUIRED_EVENTS = frozenset(
    {
        "subscription.authenticated",
        "subscription.charged",
        "subscription.payment.succeeded",
    }
)


@dataclass(frozen=True)
class DispatchOutcome:
    """What a handler did for one event."""

    event_type: str
    action: str
    subscription: Subscription | None = None
    payment: Payment | None = None


@dataclass(frozen=True)
class WebhookContext:
    """Everything a handler needs; no module-level state."""

    event: NormalizedEvent
    correlation: Correlation
    subscriptions: SubscriptionStateMachine
    ledger: PaymentLedger


Handler = Callable[[WebhookContext], Result[DispatchOutcome]]


# ── Handlers ──────────────────────────────────────────────────────────────


def _ensure_subscription(ctx: WebhookContext) -> Result[DispatchOutcome]:
    corr = ctx.correlation
    result = ctx.subscriptions.ensure_exists(
        corr.subscription_id,
        corr.user_id,
        ctx.event.notes,
        event_type=ctx.event.event_type,
    )
    if not result.ok:
        return result
    return Ok(DispatchOutcome(ctx.event.event_type, "subscription_ensured", subscription=result.value))


def _update_status(status: SubscriptionStatus, ctx: WebhookContext) -> Result[DispatchOutcome]:
    subscription_id = ctx.correlation.subscription_id
    if not subscription_id:
        logger.info("%s without a subscription id: nothing to update", ctx.event.event_type)
        return Err(ErrorKind.IGNORED, "No subscription id in payload")

    result = ctx.subscriptions.update_status(
        subscription_id, status, event_type=ctx.event.event_type
    )
    if not result.ok:
        return result
    return Ok(DispatchOutcome(ctx.event.event_type, "status_updated", subscription=result.value))


def _charge(ctx: WebhookContext) -> Result[DispatchOutcome]:
    """Activate the subscription, then record the completed payment."""
    corr = ctx.correlation
    if not corr.payment_id:
        return Err(ErrorKind.MISSING_CORRELATION, "Missing payment id in webhook payload")
    amount = parse_amount(corr.amount)
    if not amount.ok:
        return amount

    status = ctx.subscriptions.update_status(
        corr.subscription_id, SubscriptionStatus.ACTIVE, event_type=ctx.event.event_type
    )
    if not status.ok and not status.benign:
        return status

    payment = ctx.ledger.record_payment(
        corr.user_id,
        corr.subscription_id,
        corr.payment_id,
        amount.value,
        PaymentStatus.COMPLETED,
    )
    if not payment.ok:
        return payment
    return Ok(
        DispatchOutcome(
            ctx.event.event_type,
            "payment_recorded",
            subscription=status.value,
            payment=payment.value,
        )
    )


def _record_failed_payment(ctx: WebhookContext) -> Result[DispatchOutcome]:
    corr = ctx.correlation
    if not corr.payment_id or not corr.user_id:
        logger.warning(
            "payment.failed without payment id or user id (payment=%s, user=%s): skipping",
            corr.payment_id,
            corr.user_id,
        )
        return Err(ErrorKind.IGNORED, "Missing payment id or user id")
    amount = parse_amount(corr.amount)
    if not amount.ok:
        return amount

    payment = ctx.ledger.record_payment(
        corr.user_id,
        corr.subscription_id,
        corr.payment_id,
        amount.value,
        PaymentStatus.FAILED,
    )
    if not payment.ok:
        return payment
    return Ok(DispatchOutcome(ctx.event.event_type, "payment_recorded", payment=payment.value))


EVENT_HANDLERS: dict[str, Handler] = {
    "subscription.authenticated": _ensure_subscription,
    "subscription.activated": partial(_update_status, SubscriptionStatus.ACTIVE),
    "subscription.charged": _charge,
    "subscription.payment.succeeded": _charge,
    "subscription.pending": partial(_update_status, SubscriptionStatus.PENDING),
    "subscription.halted": partial(_update_status, SubscriptionStatus.HALTED),
    "subscription.paused": partial(_update_status, SubscriptionStatus.HALTED),
    "subscription.resumed": partial(_update_status, SubscriptionStatus.ACTIVE),
    "subscription.cancelled": partial(_update_status, SubscriptionStatus.CANCELLED),
    "subscription.completed": partial(_update_status, SubscriptionStatus.EXPIRED),
    "payment.failed": _record_failed_payment,
}


# ── Dispatcher ────────────────────────────────────────────────────────────


class EventDispatcher:
    """Routes normalized events to handlers over an injected billing store."""

    def __init__(self, store: BillingStore, settings: Settings) -> None:
        self.subscriptions = SubscriptionStateMachine(
            store, default_plan_id=settings.default_plan_id
        )
        self.ledger = PaymentLedger(
            store,
            currency=settings.currency,
            payment_method=settings.payment_method,
        )

    def dispatch(self, event: NormalizedEvent) -> Result[DispatchOutcome]:
        handler = EVENT_HANDLERS.get(event.event_type)
        if handler is None:
            logger.info("Unhandled webhook event %s, acknowledging", event.event_type)
            return Err(ErrorKind.UNKNOWN_EVENT, f"Unhandled event {event.event_type}")

        logger.debug("Dispatching %s (%s entity)", event.event_type, event.kind.value)
        correlation = correlate(event)
        missing = check_correlation(event.event_type, correlation)
        if missing is not None:
            logger.warning("%s rejected: %s", event.event_type, missing.message)
            return missing

        ctx = WebhookContext(
            event=event,
            correlation=correlation,
            subscriptions=self.subscriptions,
            ledger=self.ledger,
        )
        return handler(ctx)


def check_correlation(event_type: str, correlation: Correlation) -> Err | None:
    """Return MISSING_CORRELATION for a correlation-required event lacking ids."""
    if event_type not in CORRELATION_REQUIRED_EVENTS:
        return None
    if not correlation.user_id:
        return Err(ErrorKind.MISSING_CORRELATION, "Missing userId in webhook payload")
    if not correlation.subscription_id:
        return Err(ErrorKind.MISSING_CORRELATION, "Missing subscription id in webhook payload")
    return None
