# medsafe/config.py
# Paths and tunables. Environment overrides are read once at import.
import os, uuid
from pathlib import Path


def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def app_base_dir() -> Path:
    home = os.environ.get("MEDSAFE_HOME")
    if home:
        d = Path(home)
        if _is_writable_dir(d):
            return d

    p = os.environ.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / "medsafe_data"
        if _is_writable_dir(d):
            return d

    d = Path(__file__).resolve().parent.parent / "medsafe_data"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


BASE_DIR = app_base_dir()
DB_PATH = BASE_DIR / "medicines.db.aes"
KEY_PATH = BASE_DIR / ".enc_key"
LOG_PATH = BASE_DIR / "app.log"
TMP_DIR = BASE_DIR / "tmp"

# seconds between timer-driven reconciliation passes
RECALC_INTERVAL = _env_float("MEDSAFE_RECALC_INTERVAL", 10.0)

# dose log events older than this many days are purged
RETENTION_DAYS = int(_env_float("MEDSAFE_RETENTION_DAYS", 90))

# lines kept in memory for the in-app debug log
LOG_RING_LINES = int(_env_float("MEDSAFE_LOG_LINES", 800))
