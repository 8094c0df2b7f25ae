"""Tests for event dispatch.

Tests:
- Event routing table covers every supported event type
- Correlation enforcement for authenticated / charged / payment.succeeded
- Unknown events produce no writes
- Status-only events never create subscriptions
"""

from __future__ import annotations

import logging
from decimal import Decimal

import pytest

from paysync.billing.models import PaymentStatus, SubscriptionStatus
from paysync.result import ErrorKind
from paysync.webhooks.dispatcher import (
    CORRELATION_REQUIRED_EVENTS,
    EVENT_HANDLERS,
    EventDispatcher,
)
from paysync.webhooks.normalizer import normalize

STATUS_EVENTS = {
    "subscription.activated": SubscriptionStatus.ACTIVE,
    "subscription.pending": SubscriptionStatus.PENDING,
    "subscription.halted": SubscriptionStatus.HALTED,
    "subscription.paused": SubscriptionStatus.HALTED,
    "subscription.resumed": SubscriptionStatus.ACTIVE,
    "subscription.cancelled": SubscriptionStatus.CANCELLED,
    "subscription.completed": SubscriptionStatus.EXPIRED,
}


@pytest.fixture()
def dispatcher(store, test_settings) -> EventDispatcher:
    return EventDispatcher(store, test_settings)


@pytest.fixture()
def dispatch(dispatcher):
    def _dispatch(body):
        return dispatcher.dispatch(normalize(body).value)

    return _dispatch


class TestRoutingTable:

    def test_all_supported_events_have_handlers(self):
        expected = set(STATUS_EVENTS) | {
            "subscription.authenticated",
            "subscription.charged",
            "subscription.payment.succeeded",
            "payment.failed",
        }
        assert set(EVENT_HANDLERS) == expected

    def test_correlation_required_events_are_routed(self):
        assert CORRELATION_REQUIRED_EVENTS <= set(EVENT_HANDLERS)


class TestCorrelationEnforcement:

    @pytest.mark.parametrize("event", sorted(CORRELATION_REQUIRED_EVENTS))
    def test_missing_user_id_rejected(self, dispatch, make_event, store, event):
        body = make_event(event, subscription_id="sub_1", payment_id="pay_1", amount=100)
        result = dispatch(body)
        assert result.kind == ErrorKind.MISSING_CORRELATION
        assert result.message == "Missing userId in webhook payload"
        assert store.subscriptions() == []
        assert store.payments() == []

    @pytest.mark.parametrize("event", sorted(CORRELATION_REQUIRED_EVENTS))
    def test_missing_subscription_id_rejected(self, dispatch, make_event, store, event):
        body = make_event(event, notes={"userId": "u1"}, payment_id="pay_1", amount=100)
        result = dispatch(body)
        assert result.kind == ErrorKind.MISSING_CORRELATION
        assert store.subscriptions() == []
        assert store.payments() == []

    def test_customer_id_satisfies_user_correlation(self, dispatch, make_event, store):
        body = make_event(
            "subscription.charged", subscription_id="sub_1", payment_id="pay_1", amount=100, customer_id="cust_1"
        )
        assert dispatch(body).ok
        assert store.get_payment("pay_1").user_id == "cust_1"


class TestAuthenticated:

    def test_creates_pending_subscription(self, dispatch, make_event, store):
        body = make_event(
            "subscription.authenticated",
            subscription_id="sub_1",
            notes={"userId": "u1", "planId": "annual_plan", "userEmail": "a@b.c"},
        )
        result = dispatch(body)
        assert result.ok
        assert result.value.action == "subscription_ensured"
        sub = store.get_subscription("sub_1")
        assert sub.status == SubscriptionStatus.PENDING
        assert sub.plan_id == "annual_plan"
        assert sub.metadata["createdFromEvent"] == "subscription.authenticated"

    def test_redelivery_is_no_op(self, dispatch, make_event, store):
        body = make_event("subscription.authenticated", subscription_id="sub_1", notes={"userId": "u1"})
        first = dispatch(body).value.subscription
        second = dispatch(body).value.subscription
        assert first == second
        assert len(store.subscriptions()) == 1


class TestStatusEvents:

    @pytest.mark.parametrize("event, status", sorted(STATUS_EVENTS.items()))
    def test_status_mapping(self, dispatch, make_event, store, event, status):
        dispatch(make_event("subscription.authenticated", subscription_id="sub_1", notes={"userId": "u1"}))
        result = dispatch(make_event(event, subscription_id="sub_1"))
        assert result.ok
        assert store.get_subscription("sub_1").status == status

    @pytest.mark.parametrize("event", sorted(STATUS_EVENTS))
    def test_unknown_subscription_not_created(self, dispatch, make_event, store, event):
        result = dispatch(make_event(event, subscription_id="sub_x"))
        assert result.kind == ErrorKind.SUBSCRIPTION_NOT_FOUND
        assert store.subscriptions() == []

    def test_no_subscription_id_is_ignored(self, dispatch):
        result = dispatch({"event": "subscription.halted", "payload": {"entity": {"status": "halted"}}})
        assert result.kind == ErrorKind.IGNORED


class TestCharged:

    @pytest.mark.parametrize("event", ["subscription.charged", "subscription.payment.succeeded"])
    def test_activates_and_records(self, dispatch, make_event, store, event):
        dispatch(make_event("subscription.authenticated", subscription_id="sub_1", notes={"userId": "u1"}))
        body = make_event(event, subscription_id="sub_1", notes={"userId": "u1"}, payment_id="pay_1", amount=49900)
        result = dispatch(body)
        assert result.ok
        assert result.value.action == "payment_recorded"
        sub = store.get_subscription("sub_1")
        assert sub.status == SubscriptionStatus.ACTIVE
        payment = store.get_payment("pay_1")
        assert payment.amount == Decimal("49900")
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.subscription_id == sub.id

    def test_unknown_subscription_still_records_payment(self, dispatch, make_event, store):
        body = make_event(
            "subscription.charged", subscription_id="sub_1", notes={"userId": "u1"}, payment_id="pay_1", amount=100
        )
        assert dispatch(body).ok
        assert store.subscriptions() == []
        assert store.get_payment("pay_1").subscription_id is None

    def test_duplicate_charge(self, dispatch, make_event, store):
        body = make_event(
            "subscription.charged", subscription_id="sub_1", notes={"userId": "u1"}, payment_id="pay_1", amount=100
        )
        dispatch(body)
        result = dispatch(body)
        assert result.kind == ErrorKind.DUPLICATE_PAYMENT
        assert len(store.payments()) == 1

    def test_missing_payment_id(self, dispatch, make_event, store):
        body = make_event("subscription.charged", subscription_id="sub_1", notes={"userId": "u1"})
        result = dispatch(body)
        assert result.kind == ErrorKind.MISSING_CORRELATION
        assert store.payments() == []

    def test_invalid_amount_before_any_write(self, dispatch, make_event, store):
        dispatch(make_event("subscription.authenticated", subscription_id="sub_1", notes={"userId": "u1"}))
        body = make_event(
            "subscription.charged", subscription_id="sub_1", notes={"userId": "u1"}, payment_id="pay_1", amount="abc"
        )
        result = dispatch(body)
        assert result.kind == ErrorKind.MALFORMED_PAYLOAD
        assert store.get_subscription("sub_1").status == SubscriptionStatus.PENDING
        assert store.payments() == []

    def test_amount_beyond_column_range_rejected_before_write(self, dispatch, make_event, store):
        dispatch(make_event("subscription.authenticated", subscription_id="sub_1", notes={"userId": "u1"}))
        body = make_event(
            "subscription.charged", subscription_id="sub_1", notes={"userId": "u1"}, payment_id="pay_1", amount=1e15
        )
        result = dispatch(body)
        assert result.kind == ErrorKind.MALFORMED_PAYLOAD
        assert store.get_subscription("sub_1").status == SubscriptionStatus.PENDING
        assert store.payments() == []

    def test_missing_amount_records_zero(self, dispatch, make_event, store):
        body = make_event("subscription.charged", subscription_id="sub_1", notes={"userId": "u1"}, payment_id="pay_1")
        assert dispatch(body).ok
        assert store.get_payment("pay_1").amount == Decimal("0")


class TestPaymentFailed:

    def test_records_failed_payment(self, dispatch, make_event, store):
        body = make_event("payment.failed", payment_id="pay_2", amount=100, customer_id="u1")
        assert dispatch(body).ok
        payment = store.get_payment("pay_2")
        assert payment.status == PaymentStatus.FAILED
        assert payment.user_id == "u1"

    def test_without_user_id_is_skipped(self, dispatch, make_event, store):
        result = dispatch(make_event("payment.failed", payment_id="pay_2", amount=100))
        assert result.kind == ErrorKind.IGNORED
        assert store.payments() == []

    def test_does_not_touch_subscription(self, dispatch, make_event, store):
        dispatch(make_event("subscription.authenticated", subscription_id="sub_1", notes={"userId": "u1"}))
        body = make_event("payment.failed", subscription_id="sub_1", notes={"userId": "u1"}, payment_id="pay_2")
        assert dispatch(body).ok
        assert store.get_subscription("sub_1").status == SubscriptionStatus.PENDING


class TestDispatchLogging:

    def test_logs_matched_entity_kind(self, dispatch, make_event, caplog):
        with caplog.at_level(logging.DEBUG, logger="paysync.webhooks.dispatcher"):
            dispatch(make_event("payment.failed", payment_id="pay_2", customer_id="u1"))
        assert "Dispatching payment.failed (payment entity)" in caplog.text


class TestUnknownEvents:

    @pytest.mark.parametrize("event", ["order.paid", "invoice.paid", "subscription.updated"])
    def test_no_writes(self, dispatch, make_event, store, event):
        body = make_event(event, subscription_id="sub_1", notes={"userId": "u1"}, payment_id="pay_1", amount=1)
        result = dispatch(body)
        assert result.kind == ErrorKind.UNKNOWN_EVENT
        assert result.benign
        assert store.subscriptions() == []
        assert store.payments() == []
