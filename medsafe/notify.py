# medsafe/notify.py
# Missed-dose notifiers. Delivery to the OS is the host's job; the default
# notifier writes to the log.
import logging
from typing import Optional

from .models import DoseLogEvent, Medicine

logger = logging.getLogger("medsafe.notify")


def missed_dose_text(event: DoseLogEvent, medicine: Optional[Medicine]) -> str:
    name = medicine.name if medicine else "Unknown medicine"
    dosage = f" • {medicine.dosage}" if medicine and medicine.dosage else ""
    return f"{name}{dosage} @ {event.timestamp.strftime('%H:%M')}"


def log_missed_dose(event: DoseLogEvent, medicine: Optional[Medicine]):
    logger.info("[missed dose] %s", missed_dose_text(event, medicine))
