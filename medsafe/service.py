# medsafe/service.py
# Headless background loop: keeps today's missed doses reconciled for one
# user and purges expired dose history once a day.
import logging, threading
from datetime import datetime
from typing import Callable, Optional

from . import config
from .coordinator import TriggerCoordinator
from .retention import purge_expired_events
from .session import Session
from .store import EncryptedStore

logger = logging.getLogger("medsafe.service")


def run_service(store: EncryptedStore, user_id: str,
                interval: Optional[float] = None,
                stop_event: Optional[threading.Event] = None,
                clock: Callable[[], datetime] = datetime.now,
                on_pass: Optional[Callable[[int], None]] = None) -> TriggerCoordinator:
    """Blocks until stop_event is set (or KeyboardInterrupt)."""
    stop_event = stop_event or threading.Event()
    session = Session(user_id)
    coord = TriggerCoordinator(store, session, interval=interval, clock=clock)
    if on_pass is not None:
        coord.bind(on_pass)

    last_purge = None
    coord.view_appeared()
    coord.start()
    logger.info("service started user=%s interval=%.1fs", user_id, coord.interval)
    try:
        while True:
            today = clock().date()
            if last_purge != today:
                try:
                    purge_expired_events(store, clock(), config.RETENTION_DAYS)
                except Exception:
                    logger.exception("retention purge failed")
                last_purge = today
            if stop_event.wait(coord.interval):
                break
    except KeyboardInterrupt:
        logger.info("service interrupted")
    finally:
        coord.close()
        logger.info("service stopped after %d passes", coord.passes)
    return coord
