"""Error kinds raised by the storage layer and the reconciliation engine."""


class ReconciliationError(Exception):
    """Base class for every failure surfaced by an identify request."""


class StorageError(ReconciliationError):
    """The storage collaborator could not complete a call."""


class StorageUnavailable(StorageError):
    """Connectivity failure, lock timeout or other driver-level error."""


class ConstraintViolation(StorageError):
    """Storage rejected a write (CHECK, NOT NULL, FOREIGN KEY, UNIQUE)."""


class InvariantViolation(ReconciliationError):
    """Linked contact state is corrupted, e.g. a secondary whose linkedId
    does not resolve to a live primary."""

    def __init__(self, message: str, contact_id: int = None):
        super().__init__(message)
        self.contact_id = contact_id
