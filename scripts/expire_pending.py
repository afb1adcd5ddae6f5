"""Sweep abandoned pending subscriptions and lapsed periods.

Lazy transitions already handle rows as they are read; this keeps reporting
queries accurate for users who never come back. Meant for a cron job.
"""

import asyncio
import logging

from app.core.config import settings
from app.core.db import get_sessionmaker
from app.services.subscription_service import SubscriptionService

logger = logging.getLogger("legalhub.maintenance")


async def main() -> None:
    async with get_sessionmaker()() as session:
        cancelled = await SubscriptionService.expire_stale_pending(session)
        expired = await SubscriptionService.expire_lapsed(session)
    logger.info("Maintenance sweep done: %s pending cancelled, %s expired", cancelled, expired)


if __name__ == "__main__":
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    asyncio.run(main())
