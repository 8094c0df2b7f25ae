"""Response builder: the single mapping from processing outcome to HTTP.

The gateway redelivers on any non-2xx, so only STORE_FAILURE (where a replay
of the same event could succeed) returns 5xx.  Validation failures return
4xx because redelivery would reproduce the same body.  Benign outcomes
(duplicate payment, subscription not found, unknown or ignored event) are
acknowledged with 200.

Store failure details are logged, never returned to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse

from paysync.result import Err, ErrorKind, Result

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.MALFORMED_PAYLOAD: 400,
    ErrorKind.MISSING_CORRELATION: 400,
    ErrorKind.INVALID_SIGNATURE: 401,
    ErrorKind.DUPLICATE_PAYMENT: 200,
    ErrorKind.SUBSCRIPTION_NOT_FOUND: 200,
    ErrorKind.UNKNOWN_EVENT: 200,
    ErrorKind.IGNORED: 200,
    ErrorKind.STORE_FAILURE: 500,
}

_GENERIC_FAILURE = "Webhook handler failed"


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: dict[str, Any]

    def to_json_response(self) -> JSONResponse:
        return JSONResponse(self.body, status_code=self.status_code)


def build_response(result: Result[Any]) -> WebhookResponse:
    """Map Ok / Err to (status, body)."""
    if not isinstance(result, Err):
        return WebhookResponse(200, {"received": True})

    status_code = _STATUS_BY_KIND.get(result.kind, 500)
    if status_code == 200:
        return WebhookResponse(200, {"received": True})
    if status_code >= 500:
        return WebhookResponse(status_code, {"error": _GENERIC_FAILURE})
    return WebhookResponse(status_code, {"error": result.message})
