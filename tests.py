import os
import io
import importlib
import sqlite3
import tempfile
import threading
import time as _time
import unittest
from contextlib import redirect_stdout
from datetime import date, datetime, time, timedelta
from pathlib import Path
from unittest import mock

os.environ.setdefault("MEDSAFE_HOME", tempfile.mkdtemp(prefix="medsafe-tests-"))

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from medsafe import cli
from medsafe.adherence import compute_adherence, round_half_up, summarize
from medsafe.coordinator import PeriodicTimer, Trigger, TriggerCoordinator
from medsafe.crypto import aes_decrypt, aes_encrypt, get_or_create_key
from medsafe.logs import _RingLog
from medsafe.errors import DuplicateEventError, StorageError
from medsafe.models import (
    BPReading, DoseLogEvent, DoseState, Medicine, ScheduledDose, SugarReading, SugarType,
)
from medsafe.reconcile import reconcile
from medsafe.reminders import (
    Reminder, ReminderFrequency, ReminderType, advance, complete, on_track_percentage, reset_if_due,
)
from medsafe.retention import purge_expired_events
from medsafe.service import run_service
from medsafe.session import Session
from medsafe.store import EncryptedStore
from medsafe.timing import due_occurrences, occurrence_today, parse_timing, resolve


TODAY = date(2026, 3, 10)


def at(h, m=0, day=TODAY):
    return datetime.combine(day, time(h, m))


def amlodipine(user_id="u1", start=date(2026, 3, 1), end=date(2026, 3, 31), times=((9, 0), (21, 0))):
    return Medicine(
        name="Amlodipine",
        purpose="Blood Pressure Control",
        dosage="5mg",
        timing="9:00 AM, 9:00 PM",
        start_date=start,
        end_date=end,
        doses=[ScheduledDose(time=time(h, m)) for h, m in times],
        user_id=user_id,
    )


class StoreCase(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)
        self.store = EncryptedStore(
            AESGCM.generate_key(bit_length=256),
            db_path=self.td / "medicines.db.aes",
            tmp_dir=self.td / "tmp",
        )

    def tearDown(self):
        self._td.cleanup()


class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = os.urandom(1024 * 64)
        self.assertEqual(pt, aes_decrypt(aes_encrypt(pt, key), key))

    def test_wrong_key_rejected(self):
        ct = aes_encrypt(b"doses", AESGCM.generate_key(bit_length=256))
        with self.assertRaises(InvalidTag):
            aes_decrypt(ct, AESGCM.generate_key(bit_length=256))

    def test_key_persisted(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / ".enc_key"
            k1 = get_or_create_key(path)
            k2 = get_or_create_key(path)
            self.assertEqual(len(k1), 32)
            self.assertEqual(k1, k2)


class TestTiming(unittest.TestCase):
    def test_pending_before_due_after(self):
        dose = ScheduledDose(time=time(8, 0))
        med = amlodipine()
        self.assertTrue(resolve(med, dose, at(7, 59)).is_pending(at(7, 59)))
        self.assertTrue(resolve(med, dose, at(8, 1)).is_due(at(8, 1)))
        self.assertTrue(resolve(med, dose, at(8, 0)).is_due(at(8, 0)))

    def test_only_hour_and_minute_used(self):
        stored = datetime(2020, 1, 1, 9, 30, 45)
        self.assertEqual(occurrence_today(stored, at(12)), at(9, 30))

    def test_unresolvable_dose_skipped(self):
        med = amlodipine()
        med.doses.append(ScheduledDose(time="25:99"))
        with self.assertLogs("medsafe.timing", level="WARNING"):
            due = due_occurrences([med], at(22))
        self.assertEqual(len(due), 2)

    def test_parse_timing(self):
        self.assertEqual(parse_timing("9:00 PM, 9:00 AM, later"), [time(9, 0), time(21, 0)])
        self.assertEqual(parse_timing("12:00 AM,13:15"), [time(0, 0), time(13, 15)])
        self.assertEqual(parse_timing(""), [])


class TestModels(unittest.TestCase):
    def test_date_window(self):
        now = at(10)
        ended = amlodipine(end=TODAY - timedelta(days=1))
        future = amlodipine(start=TODAY + timedelta(days=1))
        current = amlodipine(start=TODAY, end=TODAY)
        self.assertTrue(ended.has_period_ended(now))
        self.assertFalse(ended.is_currently_active_based_on_dates(now))
        self.assertTrue(future.is_future_medicine(now))
        self.assertTrue(current.is_currently_active_based_on_dates(now))
        self.assertTrue(current.is_active_today(now))

    def test_create_parses_times_and_deactivates_out_of_window(self):
        med = Medicine.create("Metformin", "8:00 PM, 8:00 AM", date(2026, 4, 1), date(2026, 4, 30), now=at(10))
        self.assertEqual([d.time for d in med.doses], [time(8), time(20)])
        self.assertFalse(med.is_active)
        self.assertEqual(med.display_timing_frequency, "2 times a day")

    def test_display_timing_frequency(self):
        self.assertEqual(amlodipine(times=()).display_timing_frequency, "No specific times")
        self.assertEqual(amlodipine(times=((9, 0),)).display_timing_frequency, "Once a day")

    def test_dose_states(self):
        med = amlodipine()
        morning, evening = med.doses
        self.assertEqual(morning.state(at(10)), DoseState.MISSED)
        self.assertEqual(evening.state(at(10)), DoseState.PENDING)
        self.assertTrue(med.has_missed_dose_today(at(10)))
        morning.taken = True
        self.assertEqual(morning.state(at(10)), DoseState.TAKEN)
        self.assertFalse(med.has_missed_dose_today(at(10)))


class TestAdherence(unittest.TestCase):
    @staticmethod
    def taken_event(med, dose, now, taken=True):
        return DoseLogEvent(medicine_id=med.id, dose_id=dose.id, timestamp=now, date_recorded=now, taken=taken)

    def test_mixed_medicines(self):
        now = at(10)
        m1 = amlodipine(times=((8, 0),))
        m2 = amlodipine(times=((8, 0), (9, 0)))
        events = [self.taken_event(m1, m1.doses[0], now)]
        s = summarize([m1, m2], events, now)
        self.assertEqual((s.due, s.taken, s.percentage), (3, 1, 33))

    def test_nothing_due_is_full_adherence(self):
        self.assertEqual(compute_adherence([amlodipine()], [], at(7)), 100)
        self.assertEqual(compute_adherence([], [], at(23)), 100)

    def test_duplicates_and_other_days_do_not_inflate(self):
        now = at(10)
        med = amlodipine()
        dose = med.doses[0]
        events = [self.taken_event(med, dose, now) for _ in range(3)]
        events.append(self.taken_event(med, med.doses[1], now - timedelta(days=1)))
        s = summarize([med], events, now)
        self.assertEqual((s.due, s.taken, s.percentage), (1, 1, 100))
        self.assertEqual(compute_adherence([med], [self.taken_event(med, dose, now - timedelta(days=1))], now), 0)

    def test_missed_events_count_as_not_taken(self):
        now = at(22)
        med = amlodipine()
        events = [self.taken_event(med, med.doses[0], now), self.taken_event(med, med.doses[1], now, taken=False)]
        self.assertEqual(compute_adherence([med], events, now), 50)

    def test_half_rounds_up(self):
        self.assertEqual(round_half_up(1, 8), 13)
        self.assertEqual(round_half_up(1, 3), 33)
        self.assertEqual(round_half_up(2, 3), 67)
        self.assertEqual(round_half_up(5, 5), 100)


class TestReconcile(StoreCase):
    def setUp(self):
        super().setUp()
        self.med = amlodipine()
        self.store.add_medicine(self.med)

    def meds(self, now):
        return self.store.query_active_medicines("u1", now)

    def test_overdue_dose_gets_one_missed_event(self):
        now = at(10)
        created = reconcile(self.store, "u1", self.meds(now), now)
        self.assertEqual(len(created), 1)
        ev = created[0]
        self.assertEqual(ev.dose_id, self.med.doses[0].id)
        self.assertFalse(ev.taken)
        self.assertEqual(ev.timestamp, at(9))
        self.assertEqual(ev.date_recorded, at(0))
        self.assertEqual(compute_adherence(self.meds(now), self.store.query_events_for_day("u1", now), now), 0)

    def test_taken_dose_is_left_alone(self):
        now = at(10)
        self.store.mark_dose(self.med.id, self.med.doses[0].id, taken=True, now=at(9, 5))
        self.assertEqual(reconcile(self.store, "u1", self.meds(now), now), [])
        self.assertEqual(compute_adherence(self.meds(now), self.store.query_events_for_day("u1", now), now), 100)

    def test_repeated_runs_create_nothing_more(self):
        now = at(22)
        self.assertEqual(len(reconcile(self.store, "u1", self.meds(now), now)), 2)
        for _ in range(3):
            self.assertEqual(reconcile(self.store, "u1", self.meds(now), now), [])
        self.assertEqual(len(self.store.list_events("u1")), 2)

    def test_next_day_gets_its_own_events(self):
        reconcile(self.store, "u1", self.meds(at(22)), at(22))
        tomorrow = at(10, day=TODAY + timedelta(days=1))
        self.assertEqual(len(reconcile(self.store, "u1", self.meds(tomorrow), tomorrow)), 1)
        self.assertEqual(len(self.store.list_events("u1")), 3)

    def test_stale_ended_medicine_ignored(self):
        now = at(10)
        ended = amlodipine(end=TODAY - timedelta(days=1))
        self.store.add_medicine(ended)
        self.assertEqual(self.meds(now)[0].id, self.med.id)
        self.assertEqual(len(self.meds(now)), 1)
        created = reconcile(self.store, "u1", [ended], now)
        self.assertEqual(created, [])
        self.assertEqual(summarize([], [], now).due, 0)

    def test_failed_save_leaves_nothing_behind(self):
        now = at(22)
        with mock.patch.object(EncryptedStore, "_insert_event",
                               side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertRaises(StorageError):
                reconcile(self.store, "u1", self.meds(now), now)
        self.assertEqual(self.store.pending, [])
        self.assertEqual(self.store.list_events("u1"), [])
        self.assertEqual(len(reconcile(self.store, "u1", self.meds(now), now)), 2)

    def test_half_built_batch_is_discarded(self):
        now = at(22)
        rmod = importlib.import_module("medsafe.reconcile")
        real = rmod.missed_event
        calls = []

        def flaky(occ, when, user_id=None):
            calls.append(occ)
            if len(calls) > 1:
                raise RuntimeError("clock went away")
            return real(occ, when, user_id)

        with mock.patch.object(rmod, "missed_event", side_effect=flaky):
            with self.assertRaises(RuntimeError):
                reconcile(self.store, "u1", self.meds(now), now)
        self.assertEqual(self.store.pending, [])
        self.assertEqual(self.store.save(), [])
        self.assertEqual(self.store.list_events("u1"), [])

    def test_duplicate_rejected_at_write_time(self):
        now = at(10)
        dose = self.med.doses[0]
        for _ in range(2):
            self.store.insert(DoseLogEvent(medicine_id=self.med.id, dose_id=dose.id, timestamp=now,
                                           date_recorded=now, user_id="u1"))
        with self.assertRaises(DuplicateEventError):
            self.store.save()
        self.assertEqual(self.store.list_events("u1"), [])

    def test_commit_notification(self):
        seen = []
        self.store.subscribe(seen.append)
        reconcile(self.store, "u1", self.meds(at(10)), at(10))
        self.assertEqual([c.kind for c in seen], ["events"])
        self.assertEqual(len(seen[0].ids), 1)


class TestStore(StoreCase):
    def test_active_query_filters(self):
        now = at(10)
        keep = amlodipine()
        self.store.add_medicine(keep)
        self.store.add_medicine(amlodipine(user_id="u2"))
        self.store.add_medicine(amlodipine(start=TODAY + timedelta(days=2)))
        self.store.add_medicine(amlodipine(end=TODAY - timedelta(days=1)))
        paused = amlodipine()
        self.store.add_medicine(paused)
        self.store.set_medicine_active(paused.id, False, now=now)

        got = self.store.query_active_medicines("u1", now)
        self.assertEqual([m.id for m in got], [keep.id])
        self.assertEqual([d.time for d in got[0].doses], [time(9), time(21)])
        self.assertEqual(self.store.get_medicine(paused.id).inactive_date, now)

    def test_mark_dose_replaces_days_event(self):
        med = amlodipine()
        self.store.add_medicine(med)
        dose = med.doses[0]
        reconcile(self.store, "u1", [med], at(10))
        self.store.mark_dose(med.id, dose.id, taken=True, now=at(11))

        events = self.store.query_events_for_day("u1", at(12))
        self.assertEqual(len(events), 1)
        self.assertTrue(events[0].taken)
        self.assertTrue(self.store.get_medicine(med.id, now=at(12)).doses[0].taken)
        tomorrow = at(8, day=TODAY + timedelta(days=1))
        self.assertFalse(self.store.get_medicine(med.id, now=tomorrow).doses[0].taken)

    def test_mark_dose_rejects_foreign_dose(self):
        a, b = amlodipine(), amlodipine()
        self.store.add_medicine(a)
        self.store.add_medicine(b)
        with self.assertRaises(StorageError):
            self.store.mark_dose(a.id, b.doses[0].id, taken=True, now=at(10))

    def test_delete_cascades(self):
        med = amlodipine()
        self.store.add_medicine(med)
        reconcile(self.store, "u1", [med], at(22))
        self.store.delete_medicine(med.id)
        self.assertIsNone(self.store.get_medicine(med.id))
        self.assertEqual(self.store.list_events(), [])

    def test_update_medicine(self):
        med = amlodipine()
        self.store.add_medicine(med)
        self.store.update_medicine(med.id, now=at(10), dosage="10mg", end_date=date(2026, 3, 15))
        got = self.store.get_medicine(med.id)
        self.assertEqual(got.dosage, "10mg")
        self.assertEqual(got.end_date, date(2026, 3, 15))
        self.assertEqual(got.last_modified, at(10))
        with self.assertRaises(ValueError):
            self.store.update_medicine(med.id, user_id="u2")

    def test_discard_drops_queued_events(self):
        med = amlodipine()
        self.store.add_medicine(med)
        self.store.insert(DoseLogEvent(medicine_id=med.id, dose_id=med.doses[0].id, timestamp=at(9),
                                       date_recorded=at(9), user_id="u1"))
        self.assertEqual(len(self.store.pending), 1)
        self.store.discard()
        self.assertEqual(self.store.pending, [])
        self.assertEqual(self.store.save(), [])
        self.assertEqual(self.store.list_events("u1"), [])

    def test_retention_purge(self):
        med = amlodipine(start=date(2026, 1, 1))
        self.store.add_medicine(med)
        old = at(10, day=TODAY - timedelta(days=40))
        reconcile(self.store, "u1", [med], old)
        reconcile(self.store, "u1", [med], at(10))
        self.assertEqual(purge_expired_events(self.store, at(10), days=30), 1)
        self.assertEqual(len(self.store.list_events("u1")), 1)

    def test_vitals(self):
        self.store.add_bp_reading(BPReading(user_id="u1", systolic=128, diastolic=82, checked_at=at(8), pulse=70))
        self.store.add_sugar_reading(SugarReading(user_id="u1", value=5.4, type=SugarType.FASTING, checked_at=at(7)))
        bp = self.store.list_bp_readings("u1")
        sugar = self.store.list_sugar_readings("u1")
        self.assertEqual((bp[0].systolic, bp[0].diastolic, bp[0].pulse), (128, 82, 70))
        self.assertEqual(sugar[0].type, SugarType.FASTING)
        self.assertEqual(self.store.list_bp_readings("u2"), [])

    def test_ciphertext_only_on_disk(self):
        self.store.add_medicine(amlodipine())
        raw = (self.td / "medicines.db.aes").read_bytes()
        self.assertNotIn(b"Amlodipine", raw)
        self.assertNotIn(b"SQLite format", raw)


class TestReminders(unittest.TestCase):
    def reminder(self, **kw):
        base = dict(user_id="u1", title="Evening pill", time=time(21), next_due=at(21))
        base.update(kw)
        return Reminder(**base)

    def test_daily_reset_on_new_day(self):
        r = self.reminder(completed_times=3, last_reset=at(8), next_due=at(21, day=TODAY - timedelta(days=2)))
        self.assertTrue(reset_if_due(r, at(7, day=TODAY + timedelta(days=1))))
        self.assertEqual(r.completed_times, 0)
        self.assertEqual(r.next_due, at(21, day=TODAY + timedelta(days=1)))
        self.assertFalse(reset_if_due(r, at(9, day=TODAY + timedelta(days=1))))

    def test_weekly_same_week_no_reset(self):
        monday = date(2026, 3, 9)
        r = self.reminder(frequency=ReminderFrequency.WEEKLY, completed_times=1, last_reset=at(9, day=monday))
        self.assertFalse(reset_if_due(r, at(9, day=monday + timedelta(days=6))))
        self.assertTrue(reset_if_due(r, at(9, day=monday + timedelta(days=7))))

    def test_untracked_reminder_keeps_count(self):
        r = self.reminder(completed_times=2)
        self.assertTrue(reset_if_due(r, at(10)))
        self.assertEqual(r.completed_times, 2)
        self.assertEqual(r.last_reset, at(10))
        self.assertFalse(reset_if_due(r, at(18)))
        self.assertTrue(reset_if_due(r, at(8, day=TODAY + timedelta(days=1))))
        self.assertEqual(r.completed_times, 0)

    def test_complete_moves_next_due_past_now(self):
        r = self.reminder(next_due=at(8), last_reset=at(0))
        complete(r, at(12))
        self.assertEqual(r.completed_times, 1)
        self.assertEqual(r.next_due, at(8, day=TODAY + timedelta(days=1)))
        self.assertFalse(r.is_overdue(at(12)))
        self.assertEqual(ReminderType.CHECKUP.display_name, "Health Checkup")

    def test_monthly_advance_clamps(self):
        self.assertEqual(advance(datetime(2026, 1, 31, 9), ReminderFrequency.MONTHLY), datetime(2026, 2, 28, 9))
        self.assertEqual(advance(datetime(2026, 12, 15, 9), ReminderFrequency.MONTHLY), datetime(2027, 1, 15, 9))

    def test_on_track(self):
        now = at(12)
        rs = [self.reminder(next_due=at(8)), self.reminder(next_due=at(20)), self.reminder(next_due=at(9), active=False)]
        self.assertEqual(on_track_percentage(rs, now), 50)
        self.assertEqual(on_track_percentage([], now), 100)


class TestRingLog(unittest.TestCase):
    def test_keeps_last_lines(self):
        ring = _RingLog(max_lines=3)
        for i in range(5):
            ring.add(f"line {i}\n")
        ring.add("")
        self.assertEqual(ring.text(), "line 2\nline 3\nline 4")
        ring.clear()
        self.assertEqual(ring.text(), "")


class TestCoordinator(StoreCase):
    def setUp(self):
        super().setUp()
        self.now = at(10)
        self.med = amlodipine()
        self.store.add_medicine(self.med)
        self.session = Session("u1")
        self.missed = []
        self.coord = TriggerCoordinator(self.store, self.session, interval=60, clock=lambda: self.now,
                                        notifiers=[lambda e, m: self.missed.append((e, m))])
        self.published = []
        self.coord.bind(self.published.append)

    def tearDown(self):
        self.coord.close()
        super().tearDown()

    def test_pass_reconciles_then_computes(self):
        snap = self.coord.fire(Trigger.VIEW_APPEARED)
        self.assertEqual((snap.due, snap.taken, snap.percentage), (1, 0, 0))
        self.assertEqual(len(snap.missed_created), 1)
        self.assertEqual(self.missed[0][1].name, "Amlodipine")
        self.assertEqual(self.coord.overall_daily_adherence, 0)

        again = self.coord.fire(Trigger.TIMER_TICK)
        self.assertEqual(again.missed_created, ())
        self.assertEqual(len(self.missed), 1)
        self.assertEqual(self.published, [0])

    def test_store_change_triggers_recompute(self):
        self.coord.view_appeared()
        self.store.mark_dose(self.med.id, self.med.doses[0].id, taken=True, now=at(10, 5))
        self.assertEqual(self.coord.overall_daily_adherence, 100)
        self.assertEqual(self.published, [0, 100])

    def test_user_change_discards_previous_state(self):
        self.coord.view_appeared()
        self.session.login("u2")
        snap = self.coord.snapshot
        self.assertEqual((snap.user_id, snap.due, snap.percentage), ("u2", 0, 100))
        self.session.logout()
        self.assertIsNone(self.coord.snapshot)
        self.assertEqual(self.coord.overall_daily_adherence, 100)
        self.assertEqual(self.published, [0, 100])
        self.assertEqual(self.published[-1], self.coord.overall_daily_adherence)

    def test_logout_sends_cleared_value(self):
        self.coord.view_appeared()
        self.session.logout()
        self.assertEqual(self.published, [0, 100])
        self.assertEqual(self.published[-1], self.coord.overall_daily_adherence)

    def test_unverified_session_runs_no_pass(self):
        self.session.set_verified(False)
        self.assertIsNone(self.session.current_user_id)
        self.assertIsNone(self.coord.fire(Trigger.TIMER_TICK))
        self.assertEqual(self.coord.passes, 0)
        self.assertEqual(self.store.list_events(), [])
        self.session.set_verified(True)
        self.assertEqual(self.coord.passes, 1)
        self.assertEqual(self.coord.snapshot.user_id, "u1")

    def test_new_medicine_triggers_recompute(self):
        self.assertEqual(self.coord.view_appeared().due, 1)
        self.store.add_medicine(amlodipine(times=((8, 0),)))
        snap = self.coord.snapshot
        self.assertEqual((snap.due, snap.taken), (2, 0))
        self.assertEqual(len(snap.missed_created), 1)
        self.assertEqual(self.coord.passes, 2)

    def test_vitals_commit_triggers_pass(self):
        self.coord.view_appeared()
        before = self.coord.passes
        self.store.add_bp_reading(BPReading(user_id="u1", systolic=120, diastolic=80, checked_at=at(10)))
        self.assertEqual(self.coord.passes, before + 1)

    def test_no_user_no_work(self):
        self.session.logout()
        self.assertIsNone(self.coord.fire(Trigger.TIMER_TICK))
        self.assertEqual(self.store.list_events(), [])

    def test_save_failure_keeps_running(self):
        with mock.patch.object(EncryptedStore, "_insert_event",
                               side_effect=sqlite3.OperationalError("disk full")):
            snap = self.coord.fire(Trigger.TIMER_TICK)
        self.assertTrue(snap.save_failed)
        self.assertEqual((snap.due, snap.taken), (1, 0))
        self.assertEqual(self.store.list_events(), [])
        self.assertEqual(self.missed, [])

    def test_concurrent_triggers_serialized(self):
        self.now = at(22)
        threads = [threading.Thread(target=self.coord.fire, args=(Trigger.TIMER_TICK,)) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        events = self.store.list_events("u1")
        self.assertEqual(len(events), 2)
        self.assertEqual(len({e.key for e in events}), 2)

    def test_reminder_reset_each_pass(self):
        r = Reminder(user_id="u1", title="Evening pill", time=time(21), next_due=at(21),
                     completed_times=4, last_reset=at(9, day=TODAY - timedelta(days=1)))
        self.store.save_reminder(r)
        self.coord.view_appeared()
        self.assertEqual(self.store.list_reminders("u1")[0].completed_times, 0)

    def test_timer_runs_and_stops(self):
        self.coord.close()
        coord = TriggerCoordinator(self.store, self.session, interval=0.05, clock=lambda: self.now, notifiers=[])
        coord.start()
        deadline = _time.monotonic() + 10
        while coord.passes < 2 and _time.monotonic() < deadline:
            _time.sleep(0.02)
        coord.close()
        self.assertGreaterEqual(coord.passes, 2)
        done = coord.passes
        _time.sleep(0.2)
        self.assertEqual(coord.passes, done)


class TestPeriodicTimer(unittest.TestCase):
    def test_tick_errors_do_not_stop_timer(self):
        calls = []

        def tick():
            calls.append(1)
            raise RuntimeError("boom")

        timer = PeriodicTimer(0.01, tick)
        timer.start()
        deadline = _time.monotonic() + 5
        while len(calls) < 3 and _time.monotonic() < deadline:
            _time.sleep(0.01)
        timer.stop()
        self.assertGreaterEqual(len(calls), 3)
        self.assertFalse(timer.running)


class TestServiceAndCli(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.home = self._td.name

    def tearDown(self):
        self._td.cleanup()

    def run_cli(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = cli.main(["--home", self.home, *argv], now=at(10))
        return code, out.getvalue()

    def test_add_status_take(self):
        code, out = self.run_cli("add-medicine", "--user", "u1", "--name", "Amlodipine",
                                 "--times", "9:00 AM, 9:00 PM", "--start", "2026-03-01", "--end", "2026-03-31")
        self.assertEqual(code, 0)
        lines = out.splitlines()
        med_id = lines[0]
        morning_dose = lines[1].split()[1]

        code, out = self.run_cli("status", "--user", "u1")
        self.assertEqual(code, 0)
        self.assertIn("Adherence: 0% (0/1 doses)", out)
        self.assertIn("New missed doses: 1", out)

        self.assertEqual(self.run_cli("take", "--medicine", med_id, "--dose", morning_dose)[0], 0)
        _, out = self.run_cli("status", "--user", "u1")
        self.assertIn("Adherence: 100% (1/1 doses)", out)

        _, out = self.run_cli("list", "--user", "u1")
        self.assertIn("Amlodipine • 2 times a day", out)
        self.assertIn("09:00  taken", out)
        self.assertIn("21:00  pending", out)

    def test_reminder_commands(self):
        code, out = self.run_cli("remind", "--user", "u1", "--title", "Evening pill", "--time", "9:00 PM")
        self.assertEqual(code, 0)
        rid = out.strip()

        _, out = self.run_cli("reminders", "--user", "u1")
        self.assertIn("Medicine: Evening pill • Daily next 2026-03-10 21:00 done 0", out)
        self.assertIn("On track: 100%", out)

        code, out = self.run_cli("done", "--user", "u1", "--reminder", rid)
        self.assertEqual(code, 0)
        self.assertIn("Evening pill done 1, next 2026-03-10 21:00", out)

        _, out = self.run_cli("status", "--user", "u1")
        _, out = self.run_cli("reminders", "--user", "u1")
        self.assertIn("done 1", out)
        self.assertEqual(self.run_cli("done", "--user", "u1", "--reminder", "nope")[0], 1)

    def test_unknown_dose_is_an_error(self):
        code, _ = self.run_cli("take", "--medicine", "nope", "--dose", "nope")
        self.assertEqual(code, 1)

    def test_service_runs_one_pass_and_stops(self):
        store = cli.open_store(self.home)
        med = amlodipine()
        store.add_medicine(med)
        stop = threading.Event()
        stop.set()
        coord = run_service(store, "u1", interval=0.05, stop_event=stop, clock=lambda: at(10))
        self.assertGreaterEqual(coord.passes, 1)
        self.assertEqual(coord.overall_daily_adherence, 0)
        self.assertEqual(len(store.list_events("u1")), 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
