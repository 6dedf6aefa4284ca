import asyncio
import datetime as _dt
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


def seconds_until(hour: int, now: Optional[_dt.datetime] = None) -> float:
    """Seconds from `now` (local time) until the next `hour`:00."""
    now = now or _dt.datetime.now()
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += _dt.timedelta(days=1)
    return (target - now).total_seconds()


async def run_daily(hour: int, job: Callable[[], Awaitable[object]], name: str) -> None:
    """Run `job` every day at `hour`:00 until cancelled. Job failures are logged."""
    while True:
        delay = seconds_until(hour)
        logger.info("Next %s run in %.0fs", name, delay)
        await asyncio.sleep(delay)
        logger.info("Running scheduled %s", name)
        try:
            await job()
        except Exception as exc:
            logger.error("Scheduled %s failed: %s", name, exc, exc_info=True)
