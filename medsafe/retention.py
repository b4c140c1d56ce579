# medsafe/retention.py
import logging
from datetime import datetime, timedelta
from typing import Optional

from . import config
from .timing import start_of_day

logger = logging.getLogger("medsafe.retention")


def retention_cutoff(now: datetime, days: Optional[int] = None) -> datetime:
    days = config.RETENTION_DAYS if days is None else int(days)
    return start_of_day(now) - timedelta(days=max(days, 0))


def purge_expired_events(store, now: datetime, days: Optional[int] = None) -> int:
    """Delete dose log events recorded before the retention window."""
    cutoff = retention_cutoff(now, days)
    count = store.delete_events_before(cutoff)
    if count:
        logger.info("purged %d dose events recorded before %s", count, cutoff.date())
    return count
