"""Command-line entry point that serves the core API with uvicorn."""

from __future__ import annotations

import argparse
import logging

import uvicorn

from .config import load_settings
from .logging_setup import setup_logging

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="FLaMO matching core server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    parser.add_argument("--log-format", choices=["text", "json"], default=settings.log_format)
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(level=args.log_level, fmt=args.log_format)
    logger.info("Serving on %s:%s", args.host, args.port)
    uvicorn.run(
        "flamo.backend.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
