"""
Background jobs

The overdue sweep marks every pending/sent invoice whose due date has passed
as "overdue". It is idempotent: a second run right after the first matches
nothing, because overdue invoices are no longer pending or sent.

DailyJob runs a callable once a day at a fixed HH:MM (UTC) inside the
application's event loop.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pymongo.database import Database

from database import utcnow

logger = logging.getLogger(__name__)

SWEEP_STATUSES = ["pending", "sent"]


def sweep_overdue(db: Database, now: Optional[datetime] = None) -> int:
    """Flip past-due invoices to overdue. Returns how many were modified."""
    now = now or utcnow()
    result = db["invoice"].update_many(
        {
            "status": {"$in": SWEEP_STATUSES},
            "due_date": {"$lt": now},
            "removed": {"$ne": True},
        },
        {"$set": {"status": "overdue", "updated_at": now}},
    )
    logger.info("Overdue sweep: %d invoice(s) marked overdue", result.modified_count)
    return result.modified_count


def seconds_until(run_at: str, now: datetime) -> float:
    """Seconds from `now` to the next HH:MM occurrence."""
    hour, minute = map(int, run_at.split(":"))
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class DailyJob:
    def __init__(self, name: str, run_at: str, func: Callable[[], object]):
        self.name = name
        self.run_at = run_at
        self.func = func
        self.run_count = 0
        self._running = False

    async def run(self):
        """Background loop; the job itself runs in the default executor."""
        self._running = True
        loop = asyncio.get_running_loop()
        logger.info("Job '%s' scheduled daily at %s UTC", self.name, self.run_at)
        while self._running:
            await asyncio.sleep(seconds_until(self.run_at, utcnow()))
            if not self._running:
                break
            try:
                await loop.run_in_executor(None, self.func)
                self.run_count += 1
            except Exception as e:
                logger.error("Job '%s' failed: %s", self.name, e)

    def stop(self):
        self._running = False
        logger.info("Job '%s' stopped", self.name)
