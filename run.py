#!/usr/bin/env python3
"""
Payments Core Entry Point

Starts the recurring-transaction scheduler against the configured storage
backend and runs until interrupted.
"""

import asyncio
import signal
import sys

from payments_core.config import get_config
from payments_core.core import PaymentsCore
from payments_core.logging_config import setup_logging


async def main() -> None:
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format)

    core = PaymentsCore(config)
    await core.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(f"Scheduler polling every {config.scheduler_poll_interval_seconds}s "
                f"using {config.storage_type} storage")
    try:
        await core.scheduler.run_forever(stop_event)
    finally:
        await core.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception as e:
        print(f"❌ Error starting payments core: {e}")
        sys.exit(1)
