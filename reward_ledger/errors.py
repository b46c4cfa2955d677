class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class ReferrerNotFoundError(NotFoundError):
    pass


class InvalidStateError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class ConcurrencyConflict(LedgerServiceError):
    """Raised when a compare-and-swap or row version check loses a race.

    Callers on money paths treat this as "someone else already did it" and
    re-read state instead of retrying the write.
    """


class StorageError(LedgerServiceError):
    pass
