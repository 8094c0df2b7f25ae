"""Webhook payload normalization: arbitrary JSON body -> NormalizedEvent.

The gateway sends event-family-dependent shapes:

    {"event": "...", "payload": {"subscription": {"entity": {...}},
                                 "payment":      {"entity": {...}},
                                 "entity":       {...}}}

Extraction is an ordered list of rules, each a path plus a mapping
predicate, evaluated in fixed precedence (first match wins):

1. payload.subscription.entity
2. payload.payment.entity   (subscription entity defaults to {})
3. payload.entity           (generic fallback)

No match is ``MALFORMED_PAYLOAD`` and short-circuits before any handler
runs.  Correlation fields (payment id, subscription id, user id, amount)
are then derived from the normalized record with explicit fallback order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Union

from paysync.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)

# Matches the payment_history.amount column, NUMERIC(14, 2).
MAX_AMOUNT = Decimal("999999999999.99")
AMOUNT_QUANTUM = Decimal("0.01")


class EntityKind(str, Enum):
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"
    ENTITY = "entity"


@dataclass(frozen=True)
class Matched:
    kind: EntityKind
    entity: dict[str, Any]


@dataclass(frozen=True)
class NoMatch:
    kind: EntityKind


Extraction = Union[Matched, NoMatch]


@dataclass(frozen=True)
class ExtractionRule:
    """A typed accessor: walk ``path`` under ``payload``, match if a mapping."""

    kind: EntityKind
    path: tuple[str, ...]

    def apply(self, payload: dict[str, Any]) -> Extraction:
        entity = _mapping_at(payload, *self.path)
        if entity is None:
            return NoMatch(self.kind)
        return Matched(self.kind, entity)


EXTRACTION_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule(EntityKind.SUBSCRIPTION, ("subscription", "entity")),
    ExtractionRule(EntityKind.PAYMENT, ("payment", "entity")),
    ExtractionRule(EntityKind.ENTITY, ("entity",)),
)


@dataclass(frozen=True)
class NormalizedEvent:
    """Canonical view of one webhook delivery."""

    event_type: str
    kind: EntityKind
    subscription_entity: dict[str, Any] = field(default_factory=dict)
    payment_entity: dict[str, Any] | None = None
    entity: dict[str, Any] | None = None
    notes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Correlation:
    """Identifiers linking the event to internal records.

    ``amount`` is the raw value from the body; use ``parse_amount`` before
    recording it.
    """

    payment_id: str | None = None
    subscription_id: str | None = None
    user_id: str | None = None
    amount: Any = None


def extract_all(payload: dict[str, Any]) -> list[Matched]:
    """Apply every extraction rule; matches come back in precedence order."""
    results = (rule.apply(payload) for rule in EXTRACTION_RULES)
    return [result for result in results if isinstance(result, Matched)]


def extract(payload: dict[str, Any]) -> Extraction:
    """Run the extraction rules in precedence order. First match wins."""
    matches = extract_all(payload)
    if matches:
        return matches[0]
    return NoMatch(EXTRACTION_RULES[-1].kind)


def normalize(body: Any) -> Result[NormalizedEvent]:
    """Normalize a decoded JSON body.

    Returns:
        Ok(NormalizedEvent), or Err(MALFORMED_PAYLOAD) when the body has no
        event type or no recognizable entity shape.
    """
    if not isinstance(body, dict):
        return Err(ErrorKind.MALFORMED_PAYLOAD, "Invalid payload structure")

    event_type = body.get("event")
    if not isinstance(event_type, str) or not event_type.strip():
        return Err(ErrorKind.MALFORMED_PAYLOAD, "Missing event type")
    event_type = event_type.strip()

    payload = body.get("payload")
    if not isinstance(payload, dict):
        return Err(ErrorKind.MALFORMED_PAYLOAD, "Invalid payload structure")

    # Charged events carry both families; keep every shape that matched.
    matches = extract_all(payload)
    if not matches:
        logger.info("No recognizable entity in %s payload", event_type)
        return Err(ErrorKind.MALFORMED_PAYLOAD, "Invalid payload structure")
    entities = {match.kind: match.entity for match in matches}

    subscription_entity = entities.get(EntityKind.SUBSCRIPTION, {})
    payment_entity = entities.get(EntityKind.PAYMENT)
    entity = entities.get(EntityKind.ENTITY)

    return Ok(
        NormalizedEvent(
            event_type=event_type,
            kind=matches[0].kind,
            subscription_entity=subscription_entity,
            payment_entity=payment_entity,
            entity=entity,
            notes=_find_notes(subscription_entity, payment_entity, entity),
        )
    )


def correlate(event: NormalizedEvent) -> Correlation:
    """Derive correlation fields with explicit fallback order.

    payment_id:      payment.entity.id -> entity.payment_id -> entity.id
    subscription_id: subscription.entity.id -> payment.entity.subscription_id
                     -> entity.subscription_id -> entity.entity_id
    user_id:         notes.userId -> notes.user_id -> payment.entity.customer_id
                     -> entity.customer_id
    amount:          payment.entity.amount -> entity.amount
    """
    payment = event.payment_entity or {}
    generic = event.entity or {}
    notes = event.notes

    return Correlation(
        payment_id=_first_id(
            payment.get("id"),
            generic.get("payment_id"),
            generic.get("id"),
        ),
        subscription_id=_first_id(
            event.subscription_entity.get("id"),
            payment.get("subscription_id"),
            generic.get("subscription_id"),
            generic.get("entity_id"),
        ),
        user_id=_first_id(
            notes.get("userId"),
            notes.get("user_id"),
            payment.get("customer_id"),
            generic.get("customer_id"),
        ),
        amount=_first_present(payment.get("amount"), generic.get("amount")),
    )


def parse_amount(raw: Any) -> Result[Decimal]:
    """Parse a gateway amount into a non-negative Decimal.

    A missing amount is recorded as zero. Anything non-numeric, negative,
    above ``MAX_AMOUNT`` or finer than ``AMOUNT_QUANTUM`` is
    ``MALFORMED_PAYLOAD``.
    """
    if raw is None:
        return Ok(Decimal("0"))
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str, Decimal)):
        return Err(ErrorKind.MALFORMED_PAYLOAD, "Invalid payment amount")
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation:
        return Err(ErrorKind.MALFORMED_PAYLOAD, "Invalid payment amount")
    if not amount.is_finite() or amount < 0:
        return Err(ErrorKind.MALFORMED_PAYLOAD, "Invalid payment amount")
    if amount > MAX_AMOUNT or amount != amount.quantize(AMOUNT_QUANTUM):
        return Err(ErrorKind.MALFORMED_PAYLOAD, "Payment amount out of range")
    return Ok(amount)


# ── Helpers ───────────────────────────────────────────────────────────────


def _find_notes(*entities: dict[str, Any] | None) -> dict[str, Any]:
    """Return the first non-empty notes mapping found on any entity."""
    for source in entities:
        if not source:
            continue
        notes = _as_mapping(source.get("notes"))
        if notes:
            return notes
    return {}


def _mapping_at(node: Any, *path: str) -> dict[str, Any] | None:
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, dict) else None


def _as_mapping(value: Any) -> dict[str, Any]:
    # The gateway sends "notes": [] when a subscription has none.
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items()}
    return {}


def _first_id(*candidates: Any) -> str | None:
    for value in candidates:
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (str, int)):
            text = str(value).strip()
            if text:
                return text
    return None


def _first_present(*candidates: Any) -> Any:
    for value in candidates:
        if value is not None:
            return value
    return None
