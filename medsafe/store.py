# medsafe/store.py
# Encrypted SQLite entity store.
#
# The database lives on disk only as AES-GCM ciphertext. Each unit of work
# decrypts it to a private temp file, runs inside one SQLite transaction and,
# for writes, re-encrypts and atomically replaces the ciphertext. A failed unit
# of work never reaches the ciphertext, so readers only see committed state.
import logging, sqlite3, uuid
from collections import namedtuple
from contextlib import contextmanager
from datetime import datetime, time
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, List, Optional, Union

from cryptography.exceptions import InvalidTag

from . import config
from .crypto import aes_decrypt, aes_encrypt, atomic_write_bytes
from .errors import DuplicateEventError, StorageError
from .models import (
    BPReading, DoseLogEvent, Medicine, ScheduledDose, SugarReading, SugarType,
)
from .reminders import Reminder, ReminderFrequency, ReminderType
from .timing import DayLike, day_bounds, day_of, format_time, start_of_day

logger = logging.getLogger("medsafe.store")

# kind is one of "medicines", "events", "reminders", "vitals"
Change = namedtuple("Change", "kind ids")

SCHEMA = """
CREATE TABLE IF NOT EXISTS medicines (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    name TEXT NOT NULL,
    purpose TEXT,
    dosage TEXT,
    timing TEXT,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    inactive_date TEXT,
    last_modified TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_medicines_user ON medicines(user_id);

CREATE TABLE IF NOT EXISTS scheduled_doses (
    id TEXT PRIMARY KEY,
    medicine_id TEXT NOT NULL REFERENCES medicines(id) ON DELETE CASCADE,
    time_of_day TEXT NOT NULL,      -- "HH:MM"
    taken_on TEXT,                  -- day the taken flag applies to
    position INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_doses_medicine ON scheduled_doses(medicine_id);

CREATE TABLE IF NOT EXISTS dose_log_events (
    id TEXT PRIMARY KEY,
    medicine_id TEXT NOT NULL REFERENCES medicines(id) ON DELETE CASCADE,
    dose_id TEXT NOT NULL REFERENCES scheduled_doses(id) ON DELETE CASCADE,
    user_id TEXT,
    timestamp TEXT NOT NULL,
    taken INTEGER NOT NULL DEFAULT 0,
    date_recorded TEXT NOT NULL,
    UNIQUE (medicine_id, dose_id, date_recorded)
);
CREATE INDEX IF NOT EXISTS idx_events_day ON dose_log_events(user_id, date_recorded);

CREATE TABLE IF NOT EXISTS reminders (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    type TEXT NOT NULL,
    time_of_day TEXT NOT NULL,
    frequency TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    next_due TEXT NOT NULL,
    completed_times INTEGER NOT NULL DEFAULT 0,
    last_reset TEXT
);

CREATE TABLE IF NOT EXISTS bp_readings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    systolic INTEGER NOT NULL,
    diastolic INTEGER NOT NULL,
    pulse INTEGER,
    notes TEXT,
    checked_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sugar_readings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    value REAL NOT NULL,
    type TEXT NOT NULL,
    notes TEXT,
    checked_at TEXT NOT NULL
);
"""

MEDICINE_FIELDS = ("name", "purpose", "dosage", "start_date", "end_date")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _hm(value: str) -> Union[time, str]:
    # A corrupt value is kept as-is; resolving it later skips the dose.
    try:
        h, m = map(int, value.split(":"))
        return time(h, m)
    except (AttributeError, ValueError):
        logger.warning("unreadable dose time %r", value)
        return value


class EncryptedStore:
    def __init__(self, key: bytes, db_path: Optional[Path] = None, tmp_dir: Optional[Path] = None):
        self.key = key
        self.db_path = Path(db_path) if db_path else config.DB_PATH
        self.tmp_dir = Path(tmp_dir) if tmp_dir else config.TMP_DIR
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        self._pending: List[DoseLogEvent] = []
        self._listeners: List[Callable[[Change], None]] = []
        self._ensure_db()

    # -------------------------
    # Plumbing
    # -------------------------
    def _tmp_path(self, prefix: str, suffix: str) -> Path:
        return self.tmp_dir / f"{prefix}.{uuid.uuid4().hex}{suffix}"

    def _ensure_db(self):
        with self._lock:
            if self.db_path.exists():
                return
            tmp = self._tmp_path("init", ".db")
            try:
                conn = sqlite3.connect(str(tmp))
                try:
                    conn.executescript(SCHEMA)
                    conn.commit()
                finally:
                    conn.close()
                atomic_write_bytes(self.db_path, aes_encrypt(tmp.read_bytes(), self.key))
                logger.info("encrypted db created: %s", self.db_path)
            except (sqlite3.Error, OSError) as e:
                raise StorageError(f"db init failed: {e}") from e
            finally:
                tmp.unlink(missing_ok=True)

    @contextmanager
    def _get_conn(self, write: bool = False):
        tmp = self._tmp_path("work", ".db")
        try:
            with self._lock:
                try:
                    if not self.db_path.exists():
                        self._ensure_db()
                    atomic_write_bytes(tmp, aes_decrypt(self.db_path.read_bytes(), self.key))
                    conn = sqlite3.connect(str(tmp))
                    conn.row_factory = sqlite3.Row
                    conn.execute("PRAGMA foreign_keys=ON")
                    try:
                        yield conn
                        conn.commit()
                    except BaseException:
                        conn.rollback()
                        raise
                    finally:
                        conn.close()
                    if write:
                        atomic_write_bytes(self.db_path, aes_encrypt(tmp.read_bytes(), self.key))
                except sqlite3.IntegrityError as e:
                    if "dose_log_events" in str(e):
                        raise DuplicateEventError(str(e)) from e
                    raise StorageError(str(e)) from e
                except (sqlite3.Error, InvalidTag, OSError) as e:
                    raise StorageError(f"{type(e).__name__}: {e}") from e
        finally:
            tmp.unlink(missing_ok=True)

    # -------------------------
    # Change notifications
    # -------------------------
    def subscribe(self, callback: Callable[[Change], None]):
        if callback not in self._listeners:
            self._listeners.append(callback)

    def unsubscribe(self, callback: Callable[[Change], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self, kind: str, ids: List[str]):
        change = Change(kind, tuple(ids))
        for cb in list(self._listeners):
            try:
                cb(change)
            except Exception:
                logger.exception("store listener failed for %s", kind)

    # -------------------------
    # Medicines
    # -------------------------
    def add_medicine(self, med: Medicine, user_id: Optional[str] = None) -> str:
        if user_id is not None:
            med.user_id = user_id
        with self._get_conn(write=True) as conn:
            conn.execute("""
                INSERT INTO medicines (id, user_id, name, purpose, dosage, timing, start_date,
                                       end_date, active, inactive_date, last_modified)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (med.id, med.user_id, med.name, med.purpose, med.dosage, med.timing,
                  day_of(med.start_date).isoformat(), day_of(med.end_date).isoformat(),
                  int(med.is_active), _iso(med.inactive_date), _iso(med.last_modified)))
            for pos, dose in enumerate(med.doses):
                dose.medicine_id = med.id
                conn.execute("""
                    INSERT INTO scheduled_doses (id, medicine_id, time_of_day, taken_on, position)
                    VALUES (?, ?, ?, NULL, ?)
                """, (dose.id, med.id, format_time(dose.time), pos))
        logger.info("medicine added: %s (%s) doses=%d", med.name, med.id, len(med.doses))
        self._notify("medicines", [med.id])
        return med.id

    def _load_medicines(self, conn, rows, now: Optional[datetime]) -> List[Medicine]:
        meds = []
        if not rows:
            return meds
        today = day_of(now or datetime.now()).isoformat()
        ids = [r["id"] for r in rows]
        marks = ",".join("?" * len(ids))
        doses: Dict[str, List[ScheduledDose]] = {i: [] for i in ids}
        for d in conn.execute(f"""
            SELECT * FROM scheduled_doses WHERE medicine_id IN ({marks})
            ORDER BY position, time_of_day
        """, ids).fetchall():
            doses[d["medicine_id"]].append(ScheduledDose(
                time=_hm(d["time_of_day"]),
                taken=d["taken_on"] == today,
                id=d["id"],
                medicine_id=d["medicine_id"],
            ))
        for r in rows:
            meds.append(Medicine(
                id=r["id"],
                user_id=r["user_id"],
                name=r["name"],
                purpose=r["purpose"] or "",
                dosage=r["dosage"] or "",
                timing=r["timing"] or "",
                start_date=datetime.fromisoformat(r["start_date"]).date(),
                end_date=datetime.fromisoformat(r["end_date"]).date(),
                is_active=bool(r["active"]),
                inactive_date=_dt(r["inactive_date"]),
                last_modified=_dt(r["last_modified"]),
                doses=doses[r["id"]],
            ))
        return meds

    def get_medicine(self, med_id: str, now: Optional[datetime] = None) -> Optional[Medicine]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM medicines WHERE id=?", (med_id,)).fetchall()
            meds = self._load_medicines(conn, rows, now)
        return meds[0] if meds else None

    def list_medicines(self, user_id: Optional[str] = None, active_only: bool = False,
                       now: Optional[datetime] = None) -> List[Medicine]:
        sql, args = "SELECT * FROM medicines WHERE 1=1", []
        if user_id is not None:
            sql += " AND user_id=?"
            args.append(user_id)
        if active_only:
            sql += " AND active=1"
        sql += " ORDER BY name, last_modified DESC"
        with self._get_conn() as conn:
            return self._load_medicines(conn, conn.execute(sql, args).fetchall(), now)

    def query_active_medicines(self, user_id: str, now: datetime) -> List[Medicine]:
        """Medicines of user_id that are active, started and not yet ended."""
        today = day_of(now).isoformat()
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT * FROM medicines
                WHERE user_id=? AND active=1 AND start_date<=? AND end_date>=?
                ORDER BY name
            """, (user_id, today, today)).fetchall()
            return self._load_medicines(conn, rows, now)

    def update_medicine(self, med_id: str, now: Optional[datetime] = None, **fields):
        unknown = set(fields) - set(MEDICINE_FIELDS)
        if unknown:
            raise ValueError(f"cannot update medicine fields: {sorted(unknown)}")
        sets, vals = [], []
        for k, v in fields.items():
            if k in ("start_date", "end_date"):
                v = day_of(v).isoformat()
            sets.append(f"{k}=?")
            vals.append(v)
        sets.append("last_modified=?")
        vals.append(_iso(now or datetime.now()))
        vals.append(med_id)
        with self._get_conn(write=True) as conn:
            conn.execute(f"UPDATE medicines SET {','.join(sets)} WHERE id=?", vals)
        self._notify("medicines", [med_id])

    def set_medicine_active(self, med_id: str, active: bool, now: Optional[datetime] = None):
        now = now or datetime.now()
        with self._get_conn(write=True) as conn:
            conn.execute("""
                UPDATE medicines SET active=?, inactive_date=?, last_modified=? WHERE id=?
            """, (int(active), None if active else _iso(now), _iso(now), med_id))
        logger.info("medicine %s active=%s", med_id, active)
        self._notify("medicines", [med_id])

    def delete_medicine(self, med_id: str):
        """Removes the medicine, its doses and their log events together."""
        with self._get_conn(write=True) as conn:
            conn.execute("DELETE FROM medicines WHERE id=?", (med_id,))
        logger.info("medicine deleted: %s", med_id)
        self._notify("medicines", [med_id])

    # -------------------------
    # Dose log events
    # -------------------------
    @staticmethod
    def _row_to_event(r) -> DoseLogEvent:
        return DoseLogEvent(
            id=r["id"],
            medicine_id=r["medicine_id"],
            dose_id=r["dose_id"],
            user_id=r["user_id"],
            timestamp=_dt(r["timestamp"]),
            taken=bool(r["taken"]),
            date_recorded=_dt(r["date_recorded"]),
        )

    def query_events_for_day(self, user_id: str, day: DayLike) -> List[DoseLogEvent]:
        start, end = day_bounds(day)
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT * FROM dose_log_events
                WHERE user_id=? AND date_recorded>=? AND date_recorded<?
                ORDER BY timestamp
            """, (user_id, start.isoformat(), end.isoformat())).fetchall()
        return [self._row_to_event(r) for r in rows]

    def list_events(self, user_id: Optional[str] = None, limit: int = 80) -> List[DoseLogEvent]:
        sql, args = "SELECT * FROM dose_log_events", []
        if user_id is not None:
            sql += " WHERE user_id=?"
            args.append(user_id)
        sql += " ORDER BY timestamp DESC LIMIT ?"
        args.append(int(limit))
        with self._get_conn() as conn:
            rows = conn.execute(sql, args).fetchall()
        return [self._row_to_event(r) for r in rows]

    def insert(self, event: DoseLogEvent):
        with self._lock:
            self._pending.append(event)

    def discard(self):
        with self._lock:
            dropped = len(self._pending)
            self._pending = []
        if dropped:
            logger.info("discarded %d pending events", dropped)

    @property
    def pending(self) -> List[DoseLogEvent]:
        with self._lock:
            return list(self._pending)

    def save(self) -> List[DoseLogEvent]:
        """Commit queued events in one transaction.

        On failure nothing is written and the queue is emptied before the
        StorageError propagates.
        """
        with self._lock:
            batch, self._pending = self._pending, []
            if not batch:
                return []
            with self._get_conn(write=True) as conn:
                for e in batch:
                    self._insert_event(conn, e)
        logger.info("saved %d dose events", len(batch))
        self._notify("events", [e.id for e in batch])
        return batch

    @staticmethod
    def _insert_event(conn, e: DoseLogEvent):
        conn.execute("""
            INSERT INTO dose_log_events (id, medicine_id, dose_id, user_id, timestamp, taken, date_recorded)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (e.id, e.medicine_id, e.dose_id, e.user_id, _iso(e.timestamp), int(e.taken),
              _iso(start_of_day(e.date_recorded))))

    def mark_dose(self, medicine_id: str, dose_id: str, taken: bool,
                  now: Optional[datetime] = None) -> DoseLogEvent:
        """User action: record today's dose as taken or missed.

        Any event already logged for the dose today is replaced in the same
        transaction, so the one-event-per-day rule holds.
        """
        now = now or datetime.now()
        day = start_of_day(now)
        with self._get_conn(write=True) as conn:
            row = conn.execute("SELECT user_id FROM medicines WHERE id=?", (medicine_id,)).fetchone()
            if row is None:
                raise StorageError(f"unknown medicine {medicine_id}")
            found = conn.execute("SELECT 1 FROM scheduled_doses WHERE id=? AND medicine_id=?",
                                 (dose_id, medicine_id)).fetchone()
            if found is None:
                raise StorageError(f"dose {dose_id} does not belong to medicine {medicine_id}")
            event = DoseLogEvent(medicine_id=medicine_id, dose_id=dose_id, timestamp=now,
                                 date_recorded=day, taken=taken, user_id=row["user_id"])
            conn.execute("""
                DELETE FROM dose_log_events WHERE medicine_id=? AND dose_id=? AND date_recorded=?
            """, (medicine_id, dose_id, _iso(day)))
            self._insert_event(conn, event)
            conn.execute("UPDATE scheduled_doses SET taken_on=? WHERE id=?",
                         (day.date().isoformat() if taken else None, dose_id))
        logger.info("dose log: med_id=%s dose=%s taken=%s", medicine_id, dose_id, taken)
        self._notify("events", [event.id])
        return event

    def delete_events_before(self, cutoff: datetime) -> int:
        with self._get_conn(write=True) as conn:
            cur = conn.execute("DELETE FROM dose_log_events WHERE date_recorded<?",
                               (_iso(start_of_day(cutoff)),))
            count = cur.rowcount
        if count:
            self._notify("events", [])
        return count

    # -------------------------
    # Reminders
    # -------------------------
    def save_reminder(self, r: Reminder):
        with self._get_conn(write=True) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO reminders (id, user_id, title, type, time_of_day, frequency,
                                                  active, next_due, completed_times, last_reset)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (r.id, r.user_id, r.title, r.type.value, format_time(r.time), r.frequency.value,
                  int(r.active), _iso(r.next_due), int(r.completed_times), _iso(r.last_reset)))
        self._notify("reminders", [r.id])

    def list_reminders(self, user_id: str) -> List[Reminder]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM reminders WHERE user_id=? ORDER BY next_due",
                                (user_id,)).fetchall()
        return [Reminder(
            id=r["id"],
            user_id=r["user_id"],
            title=r["title"],
            type=ReminderType(r["type"]),
            time=_hm(r["time_of_day"]),
            frequency=ReminderFrequency(r["frequency"]),
            active=bool(r["active"]),
            next_due=_dt(r["next_due"]),
            completed_times=r["completed_times"],
            last_reset=_dt(r["last_reset"]),
        ) for r in rows]

    # -------------------------
    # Vitals
    # -------------------------
    def add_bp_reading(self, reading: BPReading) -> str:
        with self._get_conn(write=True) as conn:
            conn.execute("""
                INSERT INTO bp_readings (id, user_id, systolic, diastolic, pulse, notes, checked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (reading.id, reading.user_id, reading.systolic, reading.diastolic, reading.pulse,
                  reading.notes, _iso(reading.checked_at)))
        self._notify("vitals", [reading.id])
        return reading.id

    def list_bp_readings(self, user_id: str, limit: int = 80) -> List[BPReading]:
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT * FROM bp_readings WHERE user_id=? ORDER BY checked_at DESC LIMIT ?
            """, (user_id, int(limit))).fetchall()
        return [BPReading(id=r["id"], user_id=r["user_id"], systolic=r["systolic"],
                          diastolic=r["diastolic"], pulse=r["pulse"], notes=r["notes"] or "",
                          checked_at=_dt(r["checked_at"])) for r in rows]

    def add_sugar_reading(self, reading: SugarReading) -> str:
        with self._get_conn(write=True) as conn:
            conn.execute("""
                INSERT INTO sugar_readings (id, user_id, value, type, notes, checked_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (reading.id, reading.user_id, float(reading.value), SugarType(reading.type).value,
                  reading.notes, _iso(reading.checked_at)))
        self._notify("vitals", [reading.id])
        return reading.id

    def list_sugar_readings(self, user_id: str, limit: int = 80) -> List[SugarReading]:
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT * FROM sugar_readings WHERE user_id=? ORDER BY checked_at DESC LIMIT ?
            """, (user_id, int(limit))).fetchall()
        return [SugarReading(id=r["id"], user_id=r["user_id"], value=r["value"],
                             type=SugarType(r["type"]), notes=r["notes"] or "",
                             checked_at=_dt(r["checked_at"])) for r in rows]
