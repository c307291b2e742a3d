class LedgerServiceError(Exception):
    pass


class InvalidSplit(LedgerServiceError):
    """Posted figures are negative or do not add up."""


class InvalidAmount(LedgerServiceError):
    """Settlement figures are negative."""


class InsufficientBalance(LedgerServiceError):
    """Settlement asks for more than the rider holds or is owed."""


class RiderBlocked(LedgerServiceError):
    """The rider is blocked and may not take new deliveries."""


class RiderNotFound(LedgerServiceError):
    pass


class DuplicateEvent(LedgerServiceError):
    """Raised only in strict mode; replays are otherwise absorbed."""


class ConcurrentMutationConflict(LedgerServiceError):
    """The account version moved between read and commit."""
