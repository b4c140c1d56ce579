# medsafe/models.py
# Entities persisted by the store. Derived values take an explicit "now".
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import List, Optional

from .timing import (
    DayLike, day_of, display_timing_frequency, occurrence_today, parse_timing, start_of_day,
)
from .errors import ResolutionError


def new_id() -> str:
    return str(uuid.uuid4())


def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else datetime.now()


class DoseState(str, Enum):
    PENDING = "pending"
    TAKEN = "taken"
    MISSED = "missed"


@dataclass
class ScheduledDose:
    time: time
    taken: bool = False
    id: str = field(default_factory=new_id)
    medicine_id: Optional[str] = None

    def is_pending(self, now: Optional[datetime] = None) -> bool:
        now = _now(now)
        try:
            return occurrence_today(self.time, now) > now
        except ResolutionError:
            return False

    def state(self, now: Optional[datetime] = None) -> DoseState:
        if self.taken:
            return DoseState.TAKEN
        if self.is_pending(now):
            return DoseState.PENDING
        return DoseState.MISSED


@dataclass
class Medicine:
    name: str
    start_date: DayLike
    end_date: DayLike
    purpose: str = ""
    dosage: str = ""
    timing: str = ""
    doses: List[ScheduledDose] = field(default_factory=list)
    is_active: bool = True
    inactive_date: Optional[datetime] = None
    last_modified: datetime = field(default_factory=datetime.now)
    user_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        for d in self.doses:
            d.medicine_id = self.id

    @classmethod
    def create(cls, name: str, timing: str, start_date: DayLike, end_date: DayLike,
               now: Optional[datetime] = None, **kwargs) -> "Medicine":
        """New medicine with doses parsed from its timing string.

        A medicine whose date window does not cover today starts inactive,
        unless the caller already supplied an inactive-since date.
        """
        now = _now(now)
        doses = [ScheduledDose(time=t) for t in parse_timing(timing)]
        med = cls(name=name, timing=timing, start_date=start_date, end_date=end_date,
                  doses=doses, last_modified=now, **kwargs)
        if med.is_active and med.inactive_date is None and not med.is_currently_active_based_on_dates(now):
            med.is_active = False
        return med

    def is_currently_active_based_on_dates(self, now: Optional[datetime] = None) -> bool:
        today = day_of(_now(now))
        return day_of(self.start_date) <= today <= day_of(self.end_date)

    def is_future_medicine(self, now: Optional[datetime] = None) -> bool:
        return day_of(self.start_date) > day_of(_now(now))

    def has_period_ended(self, now: Optional[datetime] = None) -> bool:
        return day_of(self.end_date) < day_of(_now(now))

    def is_active_today(self, now: Optional[datetime] = None) -> bool:
        now = _now(now)
        return self.is_active and self.is_currently_active_based_on_dates(now) and not self.has_period_ended(now)

    def has_missed_dose_today(self, now: Optional[datetime] = None) -> bool:
        now = _now(now)
        for dose in self.doses:
            try:
                at = occurrence_today(dose.time, now)
            except ResolutionError:
                continue
            if at < now and not dose.taken:
                return True
        return False

    @property
    def display_timing_frequency(self) -> str:
        return display_timing_frequency(len(self.doses))


@dataclass
class DoseLogEvent:
    medicine_id: str
    dose_id: str
    timestamp: datetime
    date_recorded: datetime
    taken: bool = False
    user_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.date_recorded = start_of_day(self.date_recorded)

    @property
    def key(self):
        return (self.medicine_id, self.dose_id, self.date_recorded.date())


class SugarType(str, Enum):
    FASTING = "fasting"
    RANDOM = "random"
    AFTER_MEAL = "afterMeal"
    BEDTIME = "bedtime"
    POST_PRANDIAL_2H = "postPrandial2h"


@dataclass
class BPReading:
    user_id: str
    systolic: int
    diastolic: int
    checked_at: datetime
    pulse: Optional[int] = None
    notes: str = ""
    id: str = field(default_factory=new_id)


@dataclass
class SugarReading:
    user_id: str
    value: float
    type: SugarType
    checked_at: datetime
    notes: str = ""
    id: str = field(default_factory=new_id)
