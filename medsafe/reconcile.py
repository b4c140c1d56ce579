# medsafe/reconcile.py
# Missed-dose reconciliation: one synthesized "missed" event per overdue,
# unlogged dose per day.
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from .errors import StorageError
from .models import DoseLogEvent
from .timing import DoseOccurrence, due_occurrences, start_of_day

logger = logging.getLogger("medsafe.reconcile")


def active_today(medicines: Iterable, now: datetime, user_id: Optional[str] = None) -> list:
    """Drops medicines that went stale after the caller filtered them."""
    out = []
    for med in medicines:
        if user_id is not None and med.user_id not in (None, user_id):
            logger.debug("skip %s: belongs to another user", med.id)
            continue
        if not med.is_active_today(now):
            logger.debug("skip %s: not active today", med.id)
            continue
        out.append(med)
    return out


def find_unlogged(medicines: Iterable, events: Iterable, now: datetime) -> List[DoseOccurrence]:
    """Due occurrences that have no event for today."""
    logged = {e.key for e in events}
    out = []
    for occ in due_occurrences(medicines, now):
        if occ.key in logged:
            continue
        logged.add(occ.key)
        out.append(occ)
    return out


def missed_event(occ: DoseOccurrence, now: datetime, user_id: Optional[str] = None) -> DoseLogEvent:
    return DoseLogEvent(
        medicine_id=occ.medicine.id,
        dose_id=occ.dose.id,
        timestamp=occ.at,
        date_recorded=start_of_day(now),
        taken=False,
        user_id=user_id if user_id is not None else occ.medicine.user_id,
    )


def reconcile(store, user_id: str, medicines: Iterable, now: datetime) -> List[DoseLogEvent]:
    """Persist a missed event for every due dose of today that has none.

    All new events are written in one save. Running it again with no state
    change in between creates nothing. Raises StorageError when the save
    fails; the store has dropped the queued events by then.
    """
    meds = active_today(medicines, now, user_id)
    if not meds:
        return []
    existing = store.query_events_for_day(user_id, now)
    missing = find_unlogged(meds, existing, now)
    if not missing:
        return []

    try:
        for occ in missing:
            store.insert(missed_event(occ, now, user_id))
    except Exception:
        # a half-built batch must not ride along with the next save
        store.discard()
        raise
    try:
        created = store.save()
    except StorageError:
        logger.exception("missed-dose save failed (%d events dropped)", len(missing))
        raise
    for e in created:
        logger.info("missed dose recorded: med_id=%s dose=%s sched=%s",
                    e.medicine_id, e.dose_id, e.timestamp.strftime("%Y-%m-%d %H:%M"))
    return created
