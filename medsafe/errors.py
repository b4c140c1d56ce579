# medsafe/errors.py


class MedSafeError(Exception):
    """Base class for errors raised by medsafe."""


class StorageError(MedSafeError):
    """A store unit of work could not be committed."""


class DuplicateEventError(StorageError):
    """A second dose log event for the same medicine, dose and day."""


class ResolutionError(MedSafeError):
    """A dose time-of-day could not be projected onto a date."""
