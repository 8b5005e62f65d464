from typing import Optional


class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class InvalidRequestError(LedgerServiceError):
    pass


class InsufficientFundsError(LedgerServiceError):
    def __init__(self, required: int, available: int, message: Optional[str] = None):
        self.required = required
        self.available = available
        super().__init__(message or f"Insufficient points. Required: {required}, Available: {available}")


class BelowMinimumError(LedgerServiceError):
    def __init__(self, amount, minimum, message: Optional[str] = None):
        self.amount = amount
        self.minimum = minimum
        super().__init__(message or f"Top-up of {amount} is below the required minimum of {minimum}")
