# medsafe/cli.py
import argparse, sys
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

from . import config
from .coordinator import TriggerCoordinator
from .crypto import get_or_create_key
from .errors import MedSafeError
from .models import BPReading, Medicine, SugarReading, SugarType
from .reminders import (
    Reminder, ReminderFrequency, ReminderType, complete, first_due, on_track_percentage,
)
from .retention import purge_expired_events
from .service import run_service
from .session import Session
from .store import EncryptedStore
from .timing import format_time, parse_timing


def open_store(home: Optional[str]) -> EncryptedStore:
    if home:
        base = Path(home)
        base.mkdir(parents=True, exist_ok=True)
        key = get_or_create_key(base / ".enc_key")
        return EncryptedStore(key, db_path=base / "medicines.db.aes", tmp_dir=base / "tmp")
    return EncryptedStore(get_or_create_key())


def _day(value: str) -> date:
    return date.fromisoformat(value)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="medsafe", description="Medicine schedule and adherence tracker")
    p.add_argument("--home", default="", help="Data directory (defaults to MEDSAFE_HOME).")
    sub = p.add_subparsers(dest="cmd", required=True)

    a = sub.add_parser("add-medicine", help="Add a medicine with daily dose times.")
    a.add_argument("--user", required=True)
    a.add_argument("--name", required=True)
    a.add_argument("--times", required=True, help='e.g. "9:00 AM, 9:00 PM"')
    a.add_argument("--start", type=_day, default=None)
    a.add_argument("--end", type=_day, required=True)
    a.add_argument("--purpose", default="")
    a.add_argument("--dosage", default="")

    ls = sub.add_parser("list", help="List medicines and today's dose states.")
    ls.add_argument("--user", required=True)

    for name, help_text in (("take", "Mark today's dose taken."), ("skip", "Mark today's dose missed.")):
        t = sub.add_parser(name, help=help_text)
        t.add_argument("--medicine", required=True)
        t.add_argument("--dose", required=True)

    st = sub.add_parser("status", help="Reconcile missed doses and print today's adherence.")
    st.add_argument("--user", required=True)

    w = sub.add_parser("watch", help="Keep reconciling until interrupted.")
    w.add_argument("--user", required=True)
    w.add_argument("--interval", type=float, default=config.RECALC_INTERVAL)

    pg = sub.add_parser("purge", help="Delete dose history outside the retention window.")
    pg.add_argument("--days", type=int, default=config.RETENTION_DAYS)

    bp = sub.add_parser("bp", help="Log a blood-pressure reading.")
    bp.add_argument("--user", required=True)
    bp.add_argument("--systolic", type=int, required=True)
    bp.add_argument("--diastolic", type=int, required=True)
    bp.add_argument("--pulse", type=int, default=None)
    bp.add_argument("--notes", default="")

    sg = sub.add_parser("sugar", help="Log a blood-sugar reading.")
    sg.add_argument("--user", required=True)
    sg.add_argument("--value", type=float, required=True)
    sg.add_argument("--type", choices=[t.value for t in SugarType], default=SugarType.RANDOM.value)
    sg.add_argument("--notes", default="")

    rm = sub.add_parser("remind", help="Add a reminder.")
    rm.add_argument("--user", required=True)
    rm.add_argument("--title", required=True)
    rm.add_argument("--time", required=True, help='e.g. "9:00 PM"')
    rm.add_argument("--type", choices=[t.value for t in ReminderType], default=ReminderType.MEDICINE.value)
    rm.add_argument("--frequency", choices=[f.value for f in ReminderFrequency],
                    default=ReminderFrequency.DAILY.value)

    rl = sub.add_parser("reminders", help="List reminders and how many are on track.")
    rl.add_argument("--user", required=True)

    dn = sub.add_parser("done", help="Mark a reminder completed for now.")
    dn.add_argument("--user", required=True)
    dn.add_argument("--reminder", required=True)
    return p


def main(argv: Optional[List[str]] = None, now: Optional[datetime] = None) -> int:
    args = build_parser().parse_args(argv)
    clock = (lambda: now) if now is not None else datetime.now
    try:
        store = open_store(args.home)
        return _dispatch(args, store, clock)
    except MedSafeError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


def _dispatch(args, store: EncryptedStore, clock) -> int:
    if args.cmd == "add-medicine":
        current = clock()
        med = Medicine.create(args.name, args.times, args.start or current.date(), args.end,
                              now=current, purpose=args.purpose, dosage=args.dosage,
                              user_id=args.user)
        if not med.doses:
            print(f"warning: no dose times understood in {args.times!r}", file=sys.stderr)
        store.add_medicine(med)
        print(med.id)
        for d in med.doses:
            print(f"  dose {d.id} @ {format_time(d.time)}")
        return 0

    if args.cmd == "list":
        current = clock()
        for med in store.list_medicines(args.user, now=current):
            flag = "" if med.is_active else " [inactive]"
            label = " ".join(p for p in (med.name, med.dosage) if p)
            print(f"{label} • {med.display_timing_frequency}{flag}")
            for d in med.doses:
                print(f"  {format_time(d.time)}  {d.state(current).value}  {d.id}")
        return 0

    if args.cmd in ("take", "skip"):
        ev = store.mark_dose(args.medicine, args.dose, taken=args.cmd == "take", now=clock())
        print(f"{'taken' if ev.taken else 'missed'} {ev.timestamp:%Y-%m-%d %H:%M}")
        return 0

    if args.cmd == "status":
        coord = TriggerCoordinator(store, Session(args.user), clock=clock)
        try:
            snap = coord.view_appeared()
        finally:
            coord.close()
        if snap is None:
            print("Adherence: unavailable")
            return 1
        print(f"Adherence: {snap.percentage}% ({snap.taken}/{snap.due} doses)")
        if snap.missed_created:
            print(f"New missed doses: {len(snap.missed_created)}")
        return 0

    if args.cmd == "watch":
        run_service(store, args.user, interval=args.interval, clock=clock,
                    on_pass=lambda pct: print(f"Adherence: {pct}%", flush=True))
        return 0

    if args.cmd == "purge":
        print(purge_expired_events(store, clock(), args.days))
        return 0

    if args.cmd == "bp":
        store.add_bp_reading(BPReading(user_id=args.user, systolic=args.systolic, diastolic=args.diastolic,
                                       checked_at=clock(), pulse=args.pulse, notes=args.notes))
        print(f"BP {args.systolic}/{args.diastolic} logged")
        return 0

    if args.cmd == "sugar":
        store.add_sugar_reading(SugarReading(user_id=args.user, value=args.value,
                                             type=SugarType(args.type), checked_at=clock(),
                                             notes=args.notes))
        print(f"Sugar {args.value:g} ({args.type}) logged")
        return 0

    if args.cmd == "remind":
        times = parse_timing(args.time)
        if not times:
            print(f"error: time not understood: {args.time!r}", file=sys.stderr)
            return 1
        current = clock()
        freq = ReminderFrequency(args.frequency)
        r = Reminder(user_id=args.user, title=args.title, time=times[0],
                     next_due=first_due(times[0], current, freq), type=ReminderType(args.type),
                     frequency=freq, last_reset=current)
        store.save_reminder(r)
        print(r.id)
        return 0

    if args.cmd == "reminders":
        current = clock()
        rs = store.list_reminders(args.user)
        for r in rs:
            flag = " [overdue]" if r.is_overdue(current) else ""
            print(f"{r.type.display_name}: {r.title} • {r.frequency.value} "
                  f"next {r.next_due:%Y-%m-%d %H:%M} done {r.completed_times}{flag}  {r.id}")
        print(f"On track: {on_track_percentage(rs, current)}%")
        return 0

    if args.cmd == "done":
        r = next((r for r in store.list_reminders(args.user) if r.id == args.reminder), None)
        if r is None:
            print(f"error: no reminder {args.reminder}", file=sys.stderr)
            return 1
        current = clock()
        complete(r, current)
        store.save_reminder(r)
        print(f"{r.title} done {r.completed_times}, next {r.next_due:%Y-%m-%d %H:%M}")
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
