"""CLI for the webhook reconciliation service.

Usage:
    python -m paysync.cli init-db
    python -m paysync.cli serve --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import argparse
import sys

from paysync.billing.postgres import PostgresBillingStore
from paysync.config import settings
from paysync.exceptions import StoreError


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the billing tables."""
    store = PostgresBillingStore(args.database_url or settings.database_url)
    try:
        store.init_tables()
    except StoreError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    print("Billing tables ready (user_subscriptions, payment_history)")


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the webhook service under uvicorn."""
    import uvicorn

    uvicorn.run(
        "paysync.serve:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_level=settings.log_level.lower(),
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="paysync",
        description="Payment gateway webhook reconciliation",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # init-db
    p_init = sub.add_parser("init-db", help="Create billing tables")
    p_init.add_argument("--database-url", default="", help="Override PAYSYNC_DATABASE_URL")
    p_init.set_defaults(func=cmd_init_db)

    # serve
    p_serve = sub.add_parser("serve", help="Run the webhook HTTP service")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
