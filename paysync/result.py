"""Operation results: explicit Ok / Err values instead of exceptions.

Every state-machine, ledger and dispatch operation returns either
``Ok(value)`` or ``Err(kind, message)``.  Handlers never decide HTTP
semantics; ``paysync.webhooks.responses`` is the single place that maps
an ``ErrorKind`` to a status code.

Benign kinds (duplicate payment, subscription not found, unknown event,
ignored) are acknowledged with 200 so the gateway does not redeliver.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure taxonomy for webhook processing."""

    MALFORMED_PAYLOAD = "malformed_payload"
    MISSING_CORRELATION = "missing_correlation"
    INVALID_SIGNATURE = "invalid_signature"
    DUPLICATE_PAYMENT = "duplicate_payment"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    UNKNOWN_EVENT = "unknown_event"
    IGNORED = "ignored"
    STORE_FAILURE = "store_failure"

    @property
    def benign(self) -> bool:
        """True when the outcome should be acknowledged as processed."""
        return self in _BENIGN_KINDS


_BENIGN_KINDS = frozenset(
    {
        ErrorKind.DUPLICATE_PAYMENT,
        ErrorKind.SUBSCRIPTION_NOT_FOUND,
        ErrorKind.UNKNOWN_EVENT,
        ErrorKind.IGNORED,
    }
)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """A failed (or benignly short-circuited) operation.

    ``value`` optionally carries the row the operation found instead of
    writing, e.g. the already-recorded payment on a duplicate delivery.
    """

    kind: ErrorKind
    message: str
    value: Any = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def benign(self) -> bool:
        return self.kind.benign


Result = Union[Ok[T], Err]
