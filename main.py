#!/usr/bin/env python3
"""
Execution Core - Service Entry Point
====================================

Runs the execution core as a long-lived service.

This entry point:
1. Loads and validates the YAML configuration
2. Applies the logging configuration
3. Builds the orchestrator (venues, gate, TCA, policy, atomic engine)
4. Starts the gate monitor and logs aggregate stats periodically
5. Shuts down cleanly on SIGINT/SIGTERM
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any

import yaml

from execution_core.config import load_config
from execution_core.logging_config import LoggingConfig
from execution_core.orchestrator import ExecutionOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)


class ExecutionService:
    """Owns the orchestrator lifecycle and the stats loop."""

    def __init__(self, config: dict[str, Any]):
        self._config = config
        self._orchestrator: ExecutionOrchestrator = build_orchestrator(config)
        self._stats_interval = (config.get("service") or {}).get("stats_interval_seconds", 60.0)
        self._shutdown_event = asyncio.Event()
        self._running = False
        self._startup_time: datetime | None = None

    @property
    def orchestrator(self) -> ExecutionOrchestrator:
        return self._orchestrator

    async def start(self) -> None:
        self._running = True
        await self._orchestrator.initialize()
        self._startup_time = datetime.now(timezone.utc)

        logger.info("=" * 60)
        logger.info("EXECUTION CORE STARTED")
        logger.info(f"  Venues: {', '.join(self._orchestrator.gateway.venues)}")
        logger.info(f"  Stats every {self._stats_interval}s")
        logger.info("=" * 60)

        stats_task = asyncio.create_task(self._run_stats_loop())
        try:
            await self._shutdown_event.wait()
        finally:
            stats_task.cancel()
            await asyncio.gather(stats_task, return_exceptions=True)

    async def _run_stats_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._stats_interval)
                stats = self._orchestrator.get_stats()
                logger.info(f"Execution stats: {json.dumps(stats, default=str)}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Stats loop error: {e}")

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await self._orchestrator.shutdown()
        uptime = (datetime.now(timezone.utc) - self._startup_time).total_seconds() if self._startup_time else 0
        logger.info(f"Execution core stopped after {uptime:.0f}s")


def setup_signal_handlers(service: ExecutionService) -> None:
    """Route SIGINT/SIGTERM to a graceful shutdown."""
    def handle_signal(sig, frame):
        logger.info(f"Received signal {sig}")
        service.request_shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the execution core service")
    parser.add_argument("--config", default="config.yaml", help="Path to the YAML config file")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured root log level",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except (OSError, yaml.YAMLError, ValueError) as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Cannot start: {e}")
        return 1

    logging_section = dict(config.get("logging") or {})
    if args.log_level:
        logging_section["level"] = args.log_level
    LoggingConfig.from_dict(logging_section).apply()

    service = ExecutionService(config)
    setup_signal_handlers(service)
    try:
        await service.start()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await service.stop()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
