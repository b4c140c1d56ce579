# medsafe/timing.py
# Projects daily dose times onto a concrete day.
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, List, Optional, Union

from .errors import ResolutionError

logger = logging.getLogger("medsafe.timing")

TIMING_FORMATS = ("%I:%M %p", "%I:%M%p", "%H:%M")

DayLike = Union[date, datetime]


def start_of_day(value: DayLike) -> datetime:
    if isinstance(value, datetime):
        return value.replace(hour=0, minute=0, second=0, microsecond=0)
    return datetime.combine(value, time())


def day_of(value: DayLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def same_day(a: DayLike, b: DayLike) -> bool:
    return day_of(a) == day_of(b)


def day_bounds(value: DayLike):
    """[start of day, start of next day) for the day containing value."""
    start = start_of_day(value)
    return start, start + timedelta(days=1)


def occurrence_today(time_of_day: Any, now: datetime) -> datetime:
    """Today's instant for a dose time; only hour and minute are used."""
    try:
        hm = time(int(time_of_day.hour), int(time_of_day.minute))
    except (AttributeError, TypeError, ValueError) as e:
        raise ResolutionError(f"cannot project dose time {time_of_day!r}: {e}") from e
    return datetime.combine(now.date(), hm, tzinfo=now.tzinfo)


@dataclass(frozen=True)
class DoseOccurrence:
    medicine: Any
    dose: Any
    at: datetime

    def is_due(self, now: datetime) -> bool:
        return self.at <= now

    def is_pending(self, now: datetime) -> bool:
        return self.at > now

    @property
    def key(self):
        return (self.medicine.id, self.dose.id, self.at.date())


def resolve(medicine, dose, now: datetime) -> Optional[DoseOccurrence]:
    try:
        at = occurrence_today(dose.time, now)
    except ResolutionError:
        logger.warning("dose %s of %s skipped: time not resolvable", dose.id, medicine.id, exc_info=True)
        return None
    return DoseOccurrence(medicine=medicine, dose=dose, at=at)


def due_occurrences(medicines: Iterable, now: datetime) -> List[DoseOccurrence]:
    out = []
    for med in medicines:
        for dose in med.doses:
            occ = resolve(med, dose, now)
            if occ is not None and occ.is_due(now):
                out.append(occ)
    return out


def parse_timing(text: str) -> List[time]:
    """'9:00 AM, 9:00 PM' -> [09:00, 21:00]. Unparseable parts are dropped."""
    times = []
    for part in (text or "").split(","):
        part = part.strip()
        if not part:
            continue
        for fmt in TIMING_FORMATS:
            try:
                parsed = datetime.strptime(part.upper(), fmt)
            except ValueError:
                continue
            times.append(time(parsed.hour, parsed.minute))
            break
        else:
            logger.info("timing part ignored: %r", part)
    return sorted(times)


def format_time(t: Any) -> str:
    return f"{int(t.hour):02d}:{int(t.minute):02d}"


def display_timing_frequency(count: int) -> str:
    if count <= 0:
        return "No specific times"
    if count == 1:
        return "Once a day"
    return f"{count} times a day"
