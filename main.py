#!/usr/bin/env python3
"""
Helfy -- authentication API and CDC log consumer.

Usage:
  python main.py serve                 # auth API on $HOST:$PORT (default 0.0.0.0:3001)
  python main.py serve --port 8080
  python main.py serve --reload
  python main.py cdc                   # Kafka CDC consumer

Configuration comes from the environment (and an optional .env file); see
core/config.py for the full list. The most common ones:
  DATABASE_URL   SQLAlchemy URL, e.g. mysql+pymysql://root:@tidb:4000/helfy
  KAFKA_BROKER   host:port of the Kafka broker (cdc only)
  KAFKA_TOPIC    topic carrying the TiCDC change feed (cdc only)
"""

import argparse
import logging
import sys

from core.config import get_settings


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "asgi:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )
    return 0


def _cdc(args: argparse.Namespace) -> int:
    from cdc.consumer import run_consumer

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return run_consumer(settings)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="helfy",
        description="Helfy authentication API and CDC log consumer.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the auth API server.")
    serve.add_argument("--host", default=None, help="Bind address (default: $HOST or 0.0.0.0).")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: $PORT or 3001).")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only).")
    serve.set_defaults(func=_serve)

    cdc = sub.add_parser("cdc", help="Run the Kafka CDC log consumer.")
    cdc.set_defaults(func=_cdc)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
