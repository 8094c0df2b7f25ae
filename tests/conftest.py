"""Shared fixtures for the paysync test suite.

- ``store``          fresh InMemoryBillingStore per test
- ``test_settings``  signatures off, no .env, fixed defaults
- ``client``         FastAPI TestClient wired to ``store``
- ``make_event``     factory for gateway webhook bodies
"""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from paysync.billing.store import InMemoryBillingStore
from paysync.config import Settings
from paysync.serve import create_app


@pytest.fixture()
def store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        default_plan_id="student_plan",
        currency="INR",
        payment_method="razorpay",
        webhook_secret="",
        verify_signatures=False,
        log_level="DEBUG",
    )


@pytest.fixture()
def app(store, test_settings):
    return create_app(store=store, settings=test_settings)


@pytest.fixture()
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture()
def make_event():
    """Factory for gateway webhook bodies.

    Builds ``payload.subscription.entity`` when ``subscription_id`` or
    ``notes`` is given and ``payload.payment.entity`` when ``payment_id`` is
    given.
    """

    def _make(
        event: str,
        *,
        subscription_id: str | None = None,
        payment_id: str | None = None,
        amount: Any = None,
        notes: dict[str, Any] | None = None,
        customer_id: str | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if subscription_id is not None or notes is not None:
            entity: dict[str, Any] = {"notes": notes if notes is not None else []}
            if subscription_id is not None:
                entity["id"] = subscription_id
            if status is not None:
                entity["status"] = status
            payload["subscription"] = {"entity": entity}
        if payment_id is not None:
            payment: dict[str, Any] = {"id": payment_id}
            if amount is not None:
                payment["amount"] = amount
            if customer_id is not None:
                payment["customer_id"] = customer_id
            payload["payment"] = {"entity": payment}
        return {"event": event, "payload": payload}

    return _make
