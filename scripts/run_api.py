#!/usr/bin/env python3
"""Run the Perseus read-only API server.

The API builds a stopped system from the environment; use
``scripts/run_perseus.py --with-api`` to serve the API next to a running system.

Usage:
    python scripts/run_api.py [--host HOST] [--port PORT]

Environment:
    PERSEUS_API_HOST / PERSEUS_API_PORT - Defaults for --host / --port.
    LOG_LEVEL / PERSEUS_LOG_DIR - Logging level and log file directory.

Examples:
    python scripts/run_api.py
    python scripts/run_api.py --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import uvicorn

# Ensure imports work when invoked as a script
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from perseus.config import SystemConfig  # noqa: E402
from perseus.logger import configure_logging  # noqa: E402


def main() -> int:
    """Run the API server."""
    config = SystemConfig.from_env()
    parser = argparse.ArgumentParser(description="Run the Perseus read-only API server.")
    parser.add_argument(
        "--host",
        default=config.api_host,
        help=f"Host to bind to (default: {config.api_host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=config.api_port,
        help=f"Port to bind to (default: {config.api_port})",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument(
        "--log-level",
        default=config.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"Log level (default: {config.log_level})",
    )
    args = parser.parse_args()
    configure_logging(args.log_level, config.log_dir)

    print(f"Starting Perseus API on {args.host}:{args.port}")
    print("Endpoints:")
    print(f"  - GET http://{args.host}:{args.port}/system/health")
    print(f"  - GET http://{args.host}:{args.port}/api/status")
    print()

    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )

    return 0


if __name__ == "__main__":
    sys.exit(main())
