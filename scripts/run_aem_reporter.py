#!/usr/bin/env python3
"""CLI entry point for the AEM reporter.

Usage:
    # Track a deep link
    PYTHONPATH=. python scripts/run_aem_reporter.py --url "fb123://host?al_applink_data=..."

    # Record a purchase and upload resulting conversions
    PYTHONPATH=. python scripts/run_aem_reporter.py --event fb_mobile_purchase --currency USD --value 9.99

    # Refresh configurations, then upload anything pending
    PYTHONPATH=. python scripts/run_aem_reporter.py --refresh --flush
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

import aiohttp

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.aem_core.config import AEMSettings
from src.aem_core.reporter.service import AEMReporter


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="AEM attribution reporter")
    parser.add_argument("--url", type=str, help="Deep link URL to track")
    parser.add_argument("--event", type=str, help="App event name to record")
    parser.add_argument("--currency", type=str, help="Currency of --value (e.g. USD)")
    parser.add_argument("--value", type=float, help="Event value")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Refresh conversion configurations if stale",
    )
    parser.add_argument(
        "--flush",
        action="store_true",
        help="Upload all non-aggregated invocations",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger("run_aem_reporter")

    settings = AEMSettings.from_env()
    if not settings.is_configured:
        logger.error("AEM_APP_ID and AEM_ACCESS_TOKEN must be set")
        return 2

    timeout = aiohttp.ClientTimeout(total=120, connect=30)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        reporter = AEMReporter.from_settings(settings, session)
        await reporter.start()
        reporter.enable()

        if args.url:
            invocation = await reporter.handle(args.url)
            if invocation is None:
                logger.error("URL carries no valid attribution payload")
                return 1
            logger.info("Tracked campaign %s", invocation.campaign_id)

        if args.refresh:
            await reporter.load_configuration()

        if args.event:
            await reporter.record_and_update(args.event, args.currency, args.value)

        if args.flush:
            sent = await reporter.send_aggregation_request()
            logger.info("Flush %s", "succeeded" if sent else "sent nothing")

        logger.info("Reporter state: %s", reporter.state.value)

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
