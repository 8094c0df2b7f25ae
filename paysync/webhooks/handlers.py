"""Webhook HTTP handler: POST /webhooks/payments.

Each delivery:
1. Reads the raw body (needed for HMAC verification)
2. Verifies the gateway signature (when enabled)
3. Decodes JSON and normalizes the payload
4. Dispatches to the subscription state machine and/or payment ledger
5. Maps the result to an HTTP response via the response builder

Security contract:
- Never return store error details to the webhook caller
- Return 200 for unrecognized events (acknowledge, don't retry)
- Return 500 only when replaying the same event could succeed
- Log every delivery for the audit trail
"""

from __future__ import annotations

import json
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from paysync.billing.store import BillingStore
from paysync.config import Settings
from paysync.result import Err, ErrorKind, Result
from paysync.webhooks.dispatcher import DispatchOutcome, EventDispatcher
from paysync.webhooks.normalizer import correlate, normalize
from paysync.webhooks.responses import WebhookResponse, build_response
from paysync.webhooks.verification import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/payments"


def _log_webhook(event_type: str, webhook_id: str, status: str, status_code: int) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT event=%s id=%s status=%s code=%d",
        event_type,
        webhook_id,
        status,
        status_code,
    )


def _outcome_label(result: Result[DispatchOutcome]) -> str:
    if isinstance(result, Err):
        return result.kind.value
    return result.value.action


async def handle_webhook(
    request: Request,
    dispatcher: EventDispatcher,
    settings: Settings,
) -> JSONResponse:
    """Process one gateway delivery end to end."""
    start = time.time()
    try:
        response = await _process_delivery(request, dispatcher, settings)
    except Exception:
        logger.exception("Webhook handler failed")
        response = build_response(Err(ErrorKind.STORE_FAILURE, "Webhook handler failed"))
        _log_webhook("unknown", "unknown", ErrorKind.STORE_FAILURE.value, response.status_code)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms (code=%d)", elapsed_ms, response.status_code)
    return response.to_json_response()


async def _process_delivery(
    request: Request,
    dispatcher: EventDispatcher,
    settings: Settings,
) -> WebhookResponse:
    body = await request.body()

    if settings.verify_signatures:
        signature = request.headers.get(SIGNATURE_HEADER)
        if not verify_signature(body, signature, settings.webhook_secret):
            response = build_response(Err(ErrorKind.INVALID_SIGNATURE, "Invalid signature"))
            _log_webhook("unknown", "unknown", "signature_failed", response.status_code)
            return response

    try:
        payload = json.loads(body)
    except (ValueError, RecursionError):
        # ValueError covers JSONDecodeError and UnicodeDecodeError.
        response = build_response(Err(ErrorKind.MALFORMED_PAYLOAD, "Invalid JSON payload"))
        _log_webhook("unknown", "unknown", "invalid_json", response.status_code)
        return response

    normalized = normalize(payload)
    if isinstance(normalized, Err):
        response = build_response(normalized)
        event_type = payload.get("event") if isinstance(payload, dict) else None
        _log_webhook(str(event_type or "unknown"), "unknown", normalized.kind.value, response.status_code)
        return response

    event = normalized.value
    corr = correlate(event)
    webhook_id = corr.payment_id or corr.subscription_id or "unknown"

    try:
        # Store calls block; keep them off the event loop.
        result = await run_in_threadpool(dispatcher.dispatch, event)
    except Exception:
        logger.exception("Webhook handler failed for %s (%s)", event.event_type, webhook_id)
        result = Err(ErrorKind.STORE_FAILURE, "Webhook handler failed")

    response = build_response(result)
    _log_webhook(event.event_type, webhook_id, _outcome_label(result), response.status_code)
    return response


def register_webhook_routes(app: FastAPI, store: BillingStore, settings: Settings) -> None:
    """Register the gateway webhook endpoint on the FastAPI app."""
    dispatcher = EventDispatcher(store, settings)

    @app.post(WEBHOOK_PATH)
    async def payment_webhook(request: Request):
        """Receive payment gateway webhooks."""
        return await handle_webhook(request, dispatcher, settings)
