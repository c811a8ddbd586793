"""Command line entry point that serves the encounter API with uvicorn."""

from __future__ import annotations

import argparse
import logging

import uvicorn

from .config import configure_logging, load_settings

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="EncounterSync server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level.upper())
    logger.info(f"Serving EncounterSync on http://{args.host}:{args.port}")
    uvicorn.run(
        "encountersync.backend.api:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
        reload=args.reload,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
