#!/usr/bin/env python3
"""
tokengate sweep daemon

Runs the periodic compliance check over every chat with a policy and the
join request cleanup, then sleeps for SWEEP_INTERVAL_S.

Usage:
  python -m tokengate.daemon            # loop forever
  python -m tokengate.daemon --once     # one pass, then exit
"""

import argparse
import asyncio
import logging

from .config import Config
from .server import build_engine

log = logging.getLogger(__name__)


class SweepDaemon:
    """Periodic checks + join request expiry on an interval."""

    def __init__(self, config: Config, engine=None):
        self.config = config
        self.engine = engine or build_engine(config)
        self.passes = 0

    async def run_once(self) -> dict:
        """One sweep pass. Errors in one stage do not skip the other."""
        summary = {"chats": 0, "restricted": 0, "kicked": 0, "errors": 0, "expired": 0}
        try:
            for report in await self.engine.run_periodic_checks():
                summary["chats"] += 1
                summary["restricted"] += report.restricted
                summary["kicked"] += report.kicked
                summary["errors"] += report.errors
        except Exception as e:
            summary["errors"] += 1
            log.error(f"Periodic checks failed: {e}")

        try:
            cleanup = await self.engine.expire_join_requests()
            summary["expired"] = cleanup.expired
            summary["errors"] += cleanup.errors
        except Exception as e:
            summary["errors"] += 1
            log.error(f"Join request cleanup failed: {e}")

        self.passes += 1
        log.info(f"Sweep #{self.passes}: {summary}")
        return summary

    async def run(self):
        log.info(f"Sweep daemon started (interval {self.config.sweep_interval_s}s, "
                 f"concurrency {self.config.enforce_concurrency})")
        while True:
            await self.run_once()
            await asyncio.sleep(self.config.sweep_interval_s)


def main():
    parser = argparse.ArgumentParser(description="tokengate sweep daemon")
    parser.add_argument("--interval", type=int, help="Seconds between sweeps (SWEEP_INTERVAL_S)")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    config = Config.from_env()
    if args.interval:
        config.sweep_interval_s = args.interval
    if args.log_level:
        config.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    daemon = SweepDaemon(config)
    try:
        if args.once:
            asyncio.run(daemon.run_once())
        else:
            asyncio.run(daemon.run())
    except KeyboardInterrupt:
        log.info("Sweep daemon stopped")


if __name__ == "__main__":
    main()
