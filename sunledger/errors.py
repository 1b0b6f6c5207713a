class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class InvalidTransitionError(LedgerServiceError):
    pass


class IdempotencyViolation(LedgerServiceError):
    pass
