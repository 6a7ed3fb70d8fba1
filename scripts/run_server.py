"""Script to launch the BitBraniac tutor server."""

from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from tutor_server.config import CONFIG_ENV, load_config  # noqa: E402

# uvicorn needs an import string to spawn reload or worker processes
APP_FACTORY = "tutor_server.server:create_app"


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the BitBraniac tutor server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "5000")),
        help="Port to bind the server to (default: 5000)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $TUTOR_SERVER_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (default: off)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=int(os.environ.get("WORKERS", "1")),
        help="Number of worker processes (default: 1)",
    )
    args = parser.parse_args()

    cfg = load_config(args.config)
    level = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # worker processes call create_app() with no arguments and read the path from the env
    if args.config:
        os.environ[CONFIG_ENV] = os.path.abspath(args.config)

    uvicorn.run(
        APP_FACTORY,
        factory=True,
        app_dir=SRC_DIR,
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=args.workers,
        log_level=level.lower(),
    )


if __name__ == "__main__":
    main()
