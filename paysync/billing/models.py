"""Billing data models: subscriptions and payments.

Invariants:
- At most one Subscription per external_subscription_id
- At most one Payment per external_payment_id (the idempotency key)
- Subscription status is only written by the subscription state machine
- Payments are never mutated after insert
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""
    PENDING = "pending"
    ACTIVE = "active"
    HALTED = "halted"
    CANCELLED = "cancelled"  # terminal
    EXPIRED = "expired"      # terminal

    @property
    def terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class PaymentStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Subscription:
    """A gateway subscription linked to a platform user."""

    external_subscription_id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def with_status(
        self, status: SubscriptionStatus, metadata: dict[str, Any], at: datetime
    ) -> Subscription:
        """Return a copy carrying the new status and metadata."""
        return replace(self, status=status, metadata=metadata, updated_at=at)


@dataclass(frozen=True)
class Payment:
    """A single recorded gateway payment. Immutable once created."""

    external_payment_id: str
    user_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: str
    subscription_id: str | None = None  # internal Subscription.id
    payment_date: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)
