# medsafe/logs.py
# Logging: file + in-memory ring buffer behind one handler on the "medsafe" logger.
import logging
from collections import deque
from pathlib import Path
from threading import RLock
from typing import Optional

from . import config

_LOG_LOCK = RLock()


class _RingLog:
    """Last max_lines formatted records, for the debug screen."""

    def __init__(self, max_lines: int = config.LOG_RING_LINES):
        self._lines = deque(maxlen=max(1, int(max_lines)))
        self._lock = RLock()

    def add(self, line: str):
        line = (line or "").rstrip("\n")
        if line:
            with self._lock:
                self._lines.append(line)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def clear(self):
        with self._lock:
            self._lines.clear()


RING = _RingLog()


class FileAndRingHandler(logging.Handler):
    def __init__(self, log_path: Optional[Path] = None):
        super().__init__()
        self.log_path = log_path
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            msg = str(record.getMessage())
        RING.add(msg)
        path = self.log_path if self.log_path is not None else config.LOG_PATH
        try:
            with _LOG_LOCK:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as f:
                    f.write(msg + "\n")
        except OSError:
            self.handleError(record)


logger = logging.getLogger("medsafe")
logger.setLevel(logging.INFO)
if not any(isinstance(h, FileAndRingHandler) for h in logger.handlers):
    logger.addHandler(FileAndRingHandler())


def log_text() -> str:
    return RING.text()


def clear_log():
    RING.clear()
    try:
        config.LOG_PATH.unlink(missing_ok=True)
    except OSError:
        logger.exception("log file removal failed")
    logger.info("log cleared")
