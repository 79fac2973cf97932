#!/usr/bin/env python3
"""
Rosey Calendar - Google Calendar notifier orchestrator

This file does ONE thing: coordinate startup and shutdown.
All calendar logic lives in plugins/google_calendar.

Usage:
    python rosey.py config.yaml
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import nats
from nats.aio.client import Client as NATS

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from common.config import get_config
from plugins.google_calendar import GoogleCalendarPlugin


logger = logging.getLogger(__name__)


class Rosey:
    """
    Calendar bot orchestrator

    Responsibilities:
    1. Connect to NATS
    2. Start the google_calendar plugin
    3. Coordinate graceful shutdown
    """

    def __init__(self, config_path: str = "config.json"):
        self.config, self.plugin_config = get_config(config_path)
        self.nc: Optional[NATS] = None
        self.plugin: Optional[GoogleCalendarPlugin] = None

    async def start(self):
        """Start all components in correct order"""
        try:
            logger.info(f"Connecting to NATS at {self.config['nats_url']}...")
            self.nc = await nats.connect(
                self.config["nats_url"],
                name="rosey-gcal",
                max_reconnect_attempts=60,
                reconnect_time_wait=2,
            )

            logger.info("Starting google_calendar plugin...")
            self.plugin = GoogleCalendarPlugin(self.nc, self.plugin_config)
            await self.plugin.initialize()

            logger.info("✅ Rosey calendar started")

        except Exception as e:
            logger.error(f"Failed to start Rosey: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self):
        """Stop all components in reverse order"""
        logger.info("Shutting down Rosey...")

        if self.plugin:
            await self.plugin.shutdown()
            self.plugin = None
        if self.nc and not self.nc.is_closed:
            await self.nc.drain()
        self.nc = None

        logger.info("✅ Rosey calendar stopped")


async def main(config_path: str):
    """Entry point"""
    rosey = Rosey(config_path)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    try:
        await rosey.start()
        await stop.wait()
        logger.info("Received shutdown signal")
    finally:
        await rosey.stop()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print('usage: %s <config file>' % sys.argv[0], file=sys.stderr)
        sys.exit(1)
    asyncio.run(main(sys.argv[1]))
