# medsafe: medicine schedules, missed-dose reconciliation and daily adherence.
from . import logs  # installs the file + ring handler on the "medsafe" logger
from .adherence import compute_adherence, summarize
from .coordinator import AdherenceSnapshot, Trigger, TriggerCoordinator
from .errors import DuplicateEventError, MedSafeError, ResolutionError, StorageError
from .models import DoseLogEvent, DoseState, Medicine, ScheduledDose
from .reconcile import reconcile
from .session import Session
from .store import EncryptedStore

__version__ = "0.3.0"
