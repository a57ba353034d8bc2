#!/usr/bin/env python3
"""
Safe Transit deposit engine - process entry point

Loads .env, configures logging, wires the deposit engine from configuration and
keeps the reconciliation scheduler running until interrupted.
"""

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

_project_root = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(_project_root, '.env'))

from config import Config  # noqa: E402
from services.deposit_engine import DepositEngine  # noqa: E402

# Setup logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('aiohttp').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def main() -> None:
    Config.log_environment_config()
    Config.validate()

    engine = DepositEngine.from_config()
    engine.start()
    logger.info(f"🎉 {Config.PLATFORM_NAME} deposit engine running")

    try:
        await asyncio.Event().wait()
    finally:
        await engine.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("👋 Deposit engine stopped by user")
    except Exception as e:
        logger.error(f"❌ Fatal error: {e}")
        sys.exit(1)
