from __future__ import annotations

import asyncio
import logging

from double_optin.config import get_settings
from double_optin.db.connection import get_sessionmaker
from double_optin.scheduler.main import scheduler_loop

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    logger.info(
        "Starting verification sweeper (every %.2fh, delete unverified after %d days)",
        settings.sweep_interval_hours,
        settings.delete_unverified_after_days,
    )
    asyncio.run(
        scheduler_loop(
            session_factory=get_sessionmaker(),
            interval_hours=settings.sweep_interval_hours,
            settings=settings,
        )
    )


main()
