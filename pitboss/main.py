"""
Pitboss — Entry Point

`python -m pitboss.main` runs the monitoring loop until SIGINT/SIGTERM.
The config file defaults to config/default.yaml and can be moved with
PITBOSS_CONFIG.
"""

from __future__ import annotations

import asyncio
import os
import signal
from contextlib import suppress

import structlog

from pitboss.config import load_config
from pitboss.service import PitbossService
from pitboss.telemetry.logging import setup_logging

logger = structlog.get_logger()

_DEFAULT_CONFIG_PATH = "config/default.yaml"


async def run() -> None:
    config = load_config(os.environ.get("PITBOSS_CONFIG", _DEFAULT_CONFIG_PATH))
    setup_logging(config.logging, instance_id=config.instance_id)

    service = PitbossService(config)
    await service.initialize()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform's event loop
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    logger.info("pitboss_running", instance_id=config.instance_id)
    try:
        await stop.wait()
    finally:
        await service.shutdown()


def main() -> None:
    with suppress(KeyboardInterrupt):
        asyncio.run(run())


if __name__ == "__main__":
    main()
