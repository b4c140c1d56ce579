# medsafe/coordinator.py
# Runs reconciliation + adherence for the signed-in user whenever something
# that could change the result happens. One pass at a time.
import logging, threading, time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from . import config
from .adherence import summarize
from .errors import StorageError
from .models import DoseLogEvent, Medicine
from .notify import log_missed_dose
from .reconcile import reconcile
from .reminders import reset_if_due
from .store import Change, EncryptedStore
from .session import Session

logger = logging.getLogger("medsafe.coordinator")


class Trigger(str, Enum):
    VIEW_APPEARED = "view_appeared"
    MEDICINES_CHANGED = "medicines_changed"
    REMINDERS_CHANGED = "reminders_changed"
    EVENTS_CHANGED = "events_changed"
    USER_CHANGED = "user_changed"
    STORE_COMMITTED = "store_committed"
    TIMER_TICK = "timer_tick"


CHANGE_TRIGGERS = {
    "medicines": Trigger.MEDICINES_CHANGED,
    "reminders": Trigger.REMINDERS_CHANGED,
    "events": Trigger.EVENTS_CHANGED,
}


@dataclass(frozen=True)
class AdherenceSnapshot:
    user_id: str
    due: int
    taken: int
    percentage: int
    computed_at: datetime
    missed_created: Tuple[DoseLogEvent, ...] = ()
    save_failed: bool = False


class PeriodicTimer:
    """Calls callback every interval seconds on a daemon thread until stopped."""

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "medsafe-timer"):
        self.interval = float(interval)
        self.callback = callback
        self.name = name
        self._stop = threading.Event()
        self.thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self.thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self.thread.start()
        logger.info("timer started: every %.1fs", self.interval)

    def stop(self, timeout: float = 2.0):
        self._stop.set()
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)
        self.thread = None

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("timer tick failed")


class TriggerCoordinator:
    def __init__(self, store: EncryptedStore, session: Session,
                 interval: Optional[float] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 notifiers: Optional[List[Callable]] = None):
        self.store = store
        self.session = session
        self.interval = config.RECALC_INTERVAL if interval is None else float(interval)
        self.clock = clock
        self.notifiers = list(notifiers) if notifiers is not None else [log_missed_dose]
        self._pass_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._local = threading.local()
        self._snapshot: Optional[AdherenceSnapshot] = None
        self._published: Optional[int] = None
        self._listeners: List[Callable[[int], None]] = []
        self._timer: Optional[PeriodicTimer] = None
        self.passes = 0
        store.subscribe(self._on_store_change)
        session.subscribe(self._on_user_change)

    # -------------------------
    # Outward state
    # -------------------------
    @property
    def snapshot(self) -> Optional[AdherenceSnapshot]:
        with self._state_lock:
            return self._snapshot

    @property
    def overall_daily_adherence(self) -> int:
        snap = self.snapshot
        return snap.percentage if snap is not None else 100

    def bind(self, callback: Callable[[int], None]):
        """callback(percentage) runs whenever overall_daily_adherence changes,
        including the drop back to 100 when the user signs out."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def unbind(self, callback: Callable[[int], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    # -------------------------
    # Triggers
    # -------------------------
    def fire(self, trigger: Trigger) -> Optional[AdherenceSnapshot]:
        # commits made by our own pass come back as notifications; the pass
        # already recomputes after writing
        if getattr(self._local, "active", False):
            logger.debug("nested trigger %s ignored", trigger.value)
            return self.snapshot
        with self._pass_lock:
            self._local.active = True
            try:
                return self._recalculate(trigger)
            finally:
                self._local.active = False

    def view_appeared(self) -> Optional[AdherenceSnapshot]:
        return self.fire(Trigger.VIEW_APPEARED)

    def _on_store_change(self, change: Change):
        self.fire(CHANGE_TRIGGERS.get(change.kind, Trigger.STORE_COMMITTED))

    def _on_user_change(self, user_id: Optional[str]):
        self.fire(Trigger.USER_CHANGED)

    def _tick(self):
        self.fire(Trigger.TIMER_TICK)

    def start(self):
        if self._timer is None:
            self._timer = PeriodicTimer(self.interval, self._tick)
        self._timer.start()

    def stop(self):
        if self._timer is not None:
            self._timer.stop()
            self._timer = None
            logger.info("timer stopped")

    def close(self):
        self.stop()
        self.store.unsubscribe(self._on_store_change)
        self.session.unsubscribe(self._on_user_change)

    # -------------------------
    # Pass
    # -------------------------
    def _recalculate(self, trigger: Trigger) -> Optional[AdherenceSnapshot]:
        t0 = time.monotonic()
        user_id = self.session.current_user_id
        prev = self.snapshot
        if trigger == Trigger.USER_CHANGED or (prev is not None and prev.user_id != user_id):
            # switching straight to another user waits for that user's value
            self._publish(None, signal=user_id is None)
            prev = None
        if user_id is None:
            return None

        now = self.clock()
        try:
            meds = self.store.query_active_medicines(user_id, now)
        except StorageError:
            logger.exception("pass %s: medicine query failed", trigger.value)
            return prev

        self._reset_reminders(user_id, now)

        created, save_failed = [], False
        try:
            created = reconcile(self.store, user_id, meds, now)
        except StorageError:
            save_failed = True

        try:
            events = self.store.query_events_for_day(user_id, now)
        except StorageError:
            logger.exception("pass %s: event query failed", trigger.value)
            return prev

        summary = summarize(meds, events, now)
        snap = AdherenceSnapshot(
            user_id=user_id,
            due=summary.due,
            taken=summary.taken,
            percentage=summary.percentage,
            computed_at=now,
            missed_created=tuple(created),
            save_failed=save_failed,
        )
        self.passes += 1
        self._publish(snap)
        if created:
            self._dispatch_missed(created, meds)
        logger.debug("pass %s user=%s due=%d taken=%d pct=%d new_missed=%d %.1fms",
                     trigger.value, user_id, snap.due, snap.taken, snap.percentage,
                     len(created), (time.monotonic() - t0) * 1000)
        return snap

    def _reset_reminders(self, user_id: str, now: datetime):
        try:
            for r in self.store.list_reminders(user_id):
                if reset_if_due(r, now):
                    self.store.save_reminder(r)
        except StorageError:
            logger.exception("reminder reset failed")

    def _publish(self, snap: Optional[AdherenceSnapshot], signal: bool = True):
        """Store snap; listeners get the new overall value when it differs
        from the last one they were sent."""
        with self._state_lock:
            self._snapshot = snap
            value = snap.percentage if snap is not None else 100
            if not signal or value == self._published:
                return
            self._published = value
        for cb in list(self._listeners):
            try:
                cb(value)
            except Exception:
                logger.exception("adherence listener failed")

    def _dispatch_missed(self, created: List[DoseLogEvent], meds: List[Medicine]):
        by_id = {m.id: m for m in meds}
        for event in created:
            for notifier in self.notifiers:
                try:
                    notifier(event, by_id.get(event.medicine_id))
                except Exception:
                    logger.exception("missed-dose notifier failed")
