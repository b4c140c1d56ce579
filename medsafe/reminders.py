# medsafe/reminders.py
# Per-user reminders with a completed-times counter that resets each period.
import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Iterable, Optional

from .models import new_id
from .adherence import round_half_up
from .timing import day_of, start_of_day


class ReminderType(str, Enum):
    MEDICINE = "medicine"
    CHECKUP = "checkup"
    APPOINTMENT = "appointment"

    @property
    def display_name(self) -> str:
        return {
            ReminderType.MEDICINE: "Medicine",
            ReminderType.CHECKUP: "Health Checkup",
            ReminderType.APPOINTMENT: "Appointment",
        }[self]


class ReminderFrequency(str, Enum):
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"


@dataclass
class Reminder:
    user_id: str
    title: str
    time: time
    next_due: datetime
    type: ReminderType = ReminderType.MEDICINE
    frequency: ReminderFrequency = ReminderFrequency.DAILY
    active: bool = True
    completed_times: int = 0
    last_reset: Optional[datetime] = None
    id: str = field(default_factory=new_id)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now if now is not None else datetime.now()
        return self.active and self.next_due < now


def period_start(frequency: ReminderFrequency, when) -> date:
    d = day_of(when)
    if frequency == ReminderFrequency.WEEKLY:
        return d - timedelta(days=d.weekday())
    if frequency == ReminderFrequency.MONTHLY:
        return d.replace(day=1)
    return d


def advance(when: datetime, frequency: ReminderFrequency) -> datetime:
    if frequency == ReminderFrequency.WEEKLY:
        return when + timedelta(days=7)
    if frequency == ReminderFrequency.MONTHLY:
        year, month = (when.year + 1, 1) if when.month == 12 else (when.year, when.month + 1)
        last = calendar.monthrange(year, month)[1]
        return when.replace(year=year, month=month, day=min(when.day, last))
    return when + timedelta(days=1)


def needs_reset(reminder: Reminder, now: datetime) -> bool:
    if reminder.last_reset is None:
        return False
    return period_start(reminder.frequency, reminder.last_reset) != period_start(reminder.frequency, now)


def reset_if_due(reminder: Reminder, now: datetime) -> bool:
    """Zero the counter when a new period began and roll next_due forward
    past periods that ended. A reminder with no last_reset only gets
    stamped. Returns True when the reminder changed."""
    if reminder.last_reset is None:
        # never tracked: the current period starts counting now
        reminder.last_reset = now
        return True
    if not needs_reset(reminder, now):
        return False
    reminder.completed_times = 0
    reminder.last_reset = now
    current = start_of_day(period_start(reminder.frequency, now))
    while reminder.next_due < current:
        reminder.next_due = advance(reminder.next_due, reminder.frequency)
    return True


def complete(reminder: Reminder, now: datetime):
    reminder.completed_times += 1
    while reminder.next_due <= now:
        reminder.next_due = advance(reminder.next_due, reminder.frequency)


def on_track_percentage(reminders: Iterable[Reminder], now: datetime) -> int:
    active = [r for r in reminders if r.active]
    if not active:
        return 100
    overdue = sum(1 for r in active if r.is_overdue(now))
    return round_half_up(len(active) - overdue, len(active))


def first_due(time_of_day: time, now: datetime, frequency: ReminderFrequency) -> datetime:
    at = datetime.combine(now.date(), time_of_day)
    return at if at >= now else advance(at, frequency)
