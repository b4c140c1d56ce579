# medsafe/adherence.py
# Daily adherence from a medicine/event snapshot. No state, no I/O.
from collections import namedtuple
from datetime import datetime
from typing import Iterable

from .timing import due_occurrences, same_day

AdherenceSummary = namedtuple("AdherenceSummary", "due taken percentage")


def round_half_up(part: int, whole: int) -> int:
    """round(part / whole * 100) with halves rounded up, in integers."""
    return (200 * part + whole) // (2 * whole)


def summarize(medicines: Iterable, events: Iterable, now: datetime) -> AdherenceSummary:
    taken_keys = {
        (e.medicine_id, e.dose_id)
        for e in events
        if e.taken and same_day(e.date_recorded, now)
    }
    due = due_occurrences(medicines, now)
    taken = sum(1 for occ in due if (occ.medicine.id, occ.dose.id) in taken_keys)
    taken = min(taken, len(due))
    if not due:
        return AdherenceSummary(0, 0, 100)
    return AdherenceSummary(len(due), taken, round_half_up(taken, len(due)))


def compute_adherence(medicines: Iterable, events: Iterable, now: datetime) -> int:
    return summarize(medicines, events, now).percentage
