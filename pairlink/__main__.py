"""Run the signaling server with uvicorn."""
from __future__ import annotations

import argparse

import uvicorn

from .core.config import settings
from .core.logging import configure_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="pairlink signaling server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args()

    configure_logging(args.log_level)
    uvicorn.run("pairlink.main:app", host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
