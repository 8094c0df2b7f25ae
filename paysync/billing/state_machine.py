"""Subscription state machine: the only writer of subscription status.

Two write semantics, never conflated:

- ``ensure_exists``  create-if-absent; an existing row is returned unchanged
- ``update_status``  no-op-if-absent; a missing row is a benign miss because
                     status events can race ahead of the authenticating event

Terminal states (cancelled, expired) accept no further transitions, so a late
out-of-order delivery cannot resurrect a finished subscription.  Same-status
updates write nothing, which keeps redelivery byte-for-byte idempotent.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from paysync.billing.models import Subscription, SubscriptionStatus, utcnow
from paysync.billing.store import BillingStore
from paysync.exceptions import DuplicateKeyError, StoreError
from paysync.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)

# Notes keys copied into the audit metadata on creation
_NOTE_AUDIT_KEYS = ("userEmail", "userRole")


class SubscriptionStateMachine:
    """Applies subscription transitions against a billing store."""

    def __init__(
        self,
        store: BillingStore,
        *,
        default_plan_id: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._default_plan_id = default_plan_id
        self._clock = clock

    def ensure_exists(
        self,
        subscription_id: str,
        user_id: str,
        notes: dict[str, Any],
        *,
        event_type: str = "subscription.authenticated",
    ) -> Result[Subscription]:
        """Create a pending subscription unless one already exists.

        Returns:
            Ok(existing row) unchanged, Ok(new row), or Err(STORE_FAILURE).
        """
        try:
            existing = self._store.get_subscription(subscription_id)
            if existing is not None:
                logger.info("Subscription %s already exists: no-op", subscription_id)
                return Ok(existing)

            now = self._clock()
            plan_id = notes.get("planId")
            subscription = Subscription(
                external_subscription_id=subscription_id,
                user_id=user_id,
                plan_id=plan_id if isinstance(plan_id, str) and plan_id else self._default_plan_id,
                status=SubscriptionStatus.PENDING,
                metadata=self._creation_metadata(notes, event_type, now),
                created_at=now,
                updated_at=now,
            )
            try:
                created = self._store.insert_subscription(subscription)
            except DuplicateKeyError:
                # Lost the race to a concurrent delivery; the winner's row stands.
                winner = self._store.get_subscription(subscription_id)
                if winner is None:
                    return Err(
                        ErrorKind.STORE_FAILURE,
                        f"subscription {subscription_id} conflicted but could not be read",
                    )
                logger.info("Subscription %s created concurrently: using existing row", subscription_id)
                return Ok(winner)
        except StoreError as exc:
            logger.exception("Failed to ensure subscription %s", subscription_id)
            return Err(ErrorKind.STORE_FAILURE, str(exc))

        logger.info(
            "Subscription %s created for user %s (plan=%s)",
            subscription_id,
            user_id,
            created.plan_id,
        )
        return Ok(created)

    def update_status(
        self,
        subscription_id: str,
        status: SubscriptionStatus,
        *,
        event_type: str = "",
    ) -> Result[Subscription]:
        """Move an existing subscription to ``status``.

        Returns:
            Ok(updated or unchanged row), Err(SUBSCRIPTION_NOT_FOUND) when no
            row exists (nothing is created), Err(IGNORED) when the row is
            terminal, or Err(STORE_FAILURE).
        """
        try:
            existing = self._store.get_subscription(subscription_id)
            if existing is None:
                logger.info(
                    "Subscription %s not found for %s: skipping status update",
                    subscription_id,
                    event_type or status.value,
                )
                return Err(
                    ErrorKind.SUBSCRIPTION_NOT_FOUND,
                    f"Subscription {subscription_id} not found",
                )

            if existing.status == status:
                return Ok(existing)

            if existing.status.terminal:
                logger.info(
                    "Subscription %s is %s (terminal): ignoring transition to %s",
                    subscription_id,
                    existing.status.value,
                    status.value,
                )
                return Err(
                    ErrorKind.IGNORED,
                    f"Subscription {subscription_id} is {existing.status.value}",
                    value=existing,
                )

            now = self._clock()
            metadata = _append_status_audit(existing.metadata, existing.status, status, event_type, now)
            updated = self._store.update_subscription(existing.with_status(status, metadata, now))
        except StoreError as exc:
            logger.exception("Failed to update subscription %s to %s", subscription_id, status.value)
            return Err(ErrorKind.STORE_FAILURE, str(exc))

        logger.info(
            "Subscription %s: %s -> %s (%s)",
            subscription_id,
            existing.status.value,
            status.value,
            event_type,
        )
        return Ok(updated)

    @staticmethod
    def _creation_metadata(notes: dict[str, Any], event_type: str, now: datetime) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "createdVia": "webhook",
            "createdFromEvent": event_type,
            "createdAt": now.isoformat(),
        }
        for key in _NOTE_AUDIT_KEYS:
            if notes.get(key) is not None:
                metadata[key] = notes[key]
        return metadata


def _append_status_audit(
    metadata: dict[str, Any],
    previous: SubscriptionStatus,
    current: SubscriptionStatus,
    event_type: str,
    at: datetime,
) -> dict[str, Any]:
    """Return a copy of ``metadata`` with the transition appended. Prior keys are kept."""
    history = list(metadata.get("statusHistory") or [])
    history.append(
        {
            "from": previous.value,
            "to": current.value,
            "event": event_type,
            "at": at.isoformat(),
        }
    )
    return {
        **metadata,
        "lastStatus": previous.value,
        "currentStatus": current.value,
        "lastUpdatedAt": at.isoformat(),
        "statusHistory": history,
    }
