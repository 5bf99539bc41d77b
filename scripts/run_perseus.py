#!/usr/bin/env python3
"""Run the Perseus trading system.

Starts the agents, connects the market data providers and feeds ticks through
the pipeline until interrupted. Dry run (simulated execution) is the default.

Usage:
    python scripts/run_perseus.py [--symbols BTC-USD,ETH-USD] [--poll SECONDS] [--with-api]

Environment:
    PERSEUS_SYMBOLS, PERSEUS_DRY_RUN, DATABASE_URL, LOG_LEVEL,
    BINANCE_API_KEY / BINANCE_API_SECRET / BINANCE_TESTNET,
    COINBASE_API_KEY / COINBASE_API_SECRET / COINBASE_PASSPHRASE

Examples:
    python scripts/run_perseus.py
    python scripts/run_perseus.py --symbols BTC-USD --poll 30 --with-api
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
from pathlib import Path

import uvicorn

# Ensure imports work when invoked as a script
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from perseus.config import SystemConfig  # noqa: E402
from perseus.logger import configure_logging  # noqa: E402
from perseus.system import PerseusSystem  # noqa: E402

logger = logging.getLogger("perseus.runner")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Perseus multi-agent trading system.")
    parser.add_argument(
        "--symbols",
        default=None,
        help="Comma separated symbols (default: PERSEUS_SYMBOLS or BTC-USD,ETH-USD)",
    )
    parser.add_argument(
        "--poll",
        type=float,
        default=0.0,
        help="Poll REST snapshots every N seconds instead of streaming (default: stream)",
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Place real orders (overrides PERSEUS_DRY_RUN)",
    )
    parser.add_argument(
        "--with-api",
        action="store_true",
        help="Serve the HTTP API from the same process",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
    return parser.parse_args()


def build_config(args: argparse.Namespace) -> SystemConfig:
    config = SystemConfig.from_env()
    changes = {}
    if args.symbols:
        changes["symbols"] = tuple(s.strip().upper() for s in args.symbols.split(",") if s.strip())
    if args.live:
        changes["dry_run"] = False
    if args.log_level:
        changes["log_level"] = args.log_level.upper()
    return dataclasses.replace(config, **changes) if changes else config


async def _poll_loop(system: PerseusSystem, interval: float, stop_event: asyncio.Event) -> None:
    while not stop_event.is_set():
        await system.poll_market_data()
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def run(config: SystemConfig, poll: float, with_api: bool) -> int:
    system = PerseusSystem(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await system.start()
    if config.dry_run:
        logger.info("Dry run: orders are simulated")
    else:
        logger.warning("LIVE mode: orders may be sent to an exchange")

    tasks = []
    if poll > 0:
        tasks.append(asyncio.create_task(_poll_loop(system, poll, stop_event)))
    else:
        subscribed = await system.stream_market_data()
        logger.info("Streaming market data: %s", subscribed)

    server = None
    if with_api:
        from api.main import app, set_system

        set_system(system)
        server = uvicorn.Server(uvicorn.Config(app, host=config.api_host, port=config.api_port, log_level="info"))
        tasks.append(asyncio.create_task(server.serve()))

    await stop_event.wait()
    logger.info("Shutting down")

    if server is not None:
        server.should_exit = True
    await asyncio.gather(*tasks, return_exceptions=True)
    await system.stop()
    return 0


def main() -> int:
    args = parse_args()
    config = build_config(args)
    configure_logging(config.log_level, config.log_dir)
    return asyncio.run(run(config, args.poll, args.with_api))


if __name__ == "__main__":
    sys.exit(main())
