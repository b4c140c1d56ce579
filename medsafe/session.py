# medsafe/session.py
# Current-user holder. Authentication itself happens elsewhere; this only
# tracks who is signed in and tells subscribers when that changes.
import logging
from threading import RLock
from typing import Callable, List, Optional

logger = logging.getLogger("medsafe.session")


class Session:
    def __init__(self, user_id: Optional[str] = None, verified: bool = True):
        self._user_id = user_id
        self._verified = verified
        self._lock = RLock()
        self._listeners: List[Callable[[Optional[str]], None]] = []

    @property
    def current_user_id(self) -> Optional[str]:
        """None unless a verified user is signed in."""
        with self._lock:
            return self._user_id if self._verified else None

    def subscribe(self, callback: Callable[[Optional[str]], None]):
        if callback not in self._listeners:
            self._listeners.append(callback)

    def unsubscribe(self, callback: Callable[[Optional[str]], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def login(self, user_id: str, verified: bool = True):
        self._set(user_id, verified)

    def logout(self):
        self._set(None, False)

    def set_verified(self, verified: bool):
        self._set(self._user_id, verified)

    def _set(self, user_id: Optional[str], verified: bool):
        with self._lock:
            before = self.current_user_id
            self._user_id, self._verified = user_id, verified
            after = self.current_user_id
        if before == after:
            return
        logger.info("session user changed: %s -> %s", before, after)
        for cb in list(self._listeners):
            try:
                cb(after)
            except Exception:
                logger.exception("session listener failed")
