"""CLI entrypoint for the marketplace dispute engine.

Usage:
    marketplace-disputes                # Start the HTTP API and deadline scheduler
    marketplace-disputes --sweep-once   # Run one scheduler sweep and exit
"""

from __future__ import annotations

import argparse
import json
import logging

import uvicorn

from marketplace_disputes import __version__
from marketplace_disputes.config import settings


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    parser = argparse.ArgumentParser(description="Marketplace dispute resolution engine")
    parser.add_argument(
        "--sweep-once",
        action="store_true",
        help="Run a single deadline sweep against a freshly configured engine and exit",
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help=f"API listener host (default: {settings.host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help=f"API listener port (default: {settings.port})",
    )
    args = parser.parse_args()

    if args.sweep_once:
        from marketplace_disputes.engine import build_engine
        from marketplace_disputes.scheduler import DeadlineScheduler

        summary = DeadlineScheduler(build_engine(settings)).sweep()
        print(json.dumps(summary, indent=2))
        return

    print(f"Marketplace Disputes v{__version__}")
    print(f"   Gateway:   {settings.gateway_url or '<simulated>'}")
    print(f"   Windows:   respond {settings.response_window_days:g}d, negotiate {settings.negotiation_window_days:g}d")
    print(f"   Scheduler: {'every %gs' % settings.sweep_interval_seconds if settings.scheduler_enabled else 'disabled'}")
    print(f"   Listening: http://{args.host}:{args.port}")
    print()

    uvicorn.run(
        "marketplace_disputes.api:app",
        host=args.host,
        port=args.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
