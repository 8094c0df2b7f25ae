"""FastAPI application factory.

Run with:
    uvicorn paysync.serve:create_app --factory
or:
    python -m paysync.cli serve
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from paysync import __version__
from paysync.billing.postgres import PostgresBillingStore
from paysync.billing.store import BillingStore
from paysync.config import Settings, settings as default_settings
from paysync.webhooks.handlers import register_webhook_routes

logger = logging.getLogger(__name__)


def create_app(
    store: BillingStore | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the webhook service.

    Args:
        store: Billing store to reconcile against. Defaults to Postgres at
            ``settings.database_url``.
        settings: Defaults to the environment-driven module settings.
    """
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    if store is None:
        store = PostgresBillingStore(settings.database_url)

    if settings.verify_signatures and not settings.webhook_secret:
        logger.warning("PAYSYNC_WEBHOOK_SECRET not set: all webhooks will be rejected")

    app = FastAPI(title="Paysync", version=__version__)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    register_webhook_routes(app, store, settings)
    logger.info("Paysync app created (store=%s)", type(store).__name__)
    return app
