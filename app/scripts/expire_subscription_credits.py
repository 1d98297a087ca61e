"""Run the subscription credit expiry sweep once.

Usage (cron):
    python -m app.scripts.expire_subscription_credits
"""

import asyncio
import sys

from app.core.database import AsyncSessionLocal, engine
from app.log.logging import logger
from app.services.credit import CreditService


async def run_expiry_sweep() -> int:
    """Expire lapsed periods; the exit status is non-zero when any user failed."""
    try:
        async with AsyncSessionLocal() as session:
            summary = await CreditService(session).expire_subscription_credits()
    finally:
        await engine.dispose()

    logger.info("Expiry sweep finished",
                event_type="expiry_sweep_script",
                expired_count=summary.expired_count,
                expired_credits=summary.expired_credits,
                affected_users=len(summary.affected_users),
                failed_users=summary.failed_users)
    return 1 if summary.failed_users else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(run_expiry_sweep()))
