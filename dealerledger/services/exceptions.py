"""
Domain exceptions for the booking ledger.

Each error carries the HTTP status it is surfaced with; the exception handlers
in ``main.py`` turn them into ``{"detail": message}`` responses.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors."""
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(LedgerError):
    """Missing or malformed input, detected before any write."""
    status_code = 400


class NotFoundError(LedgerError):
    """A referenced document does not exist."""
    status_code = 404

    def __init__(self, entity: str, entity_id: str = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class InvalidStateError(LedgerError):
    """The operation is not allowed in the document's current status."""
    status_code = 400


class BalanceExceededError(LedgerError):
    """A direct payment would exceed the booking's outstanding balance."""
    status_code = 400

    def __init__(self, amount: float, balance: float):
        self.amount = amount
        self.balance = balance
        super().__init__(f"Amount exceeds balance. Maximum allowed: {balance}")


class InsufficientBalanceError(LedgerError):
    """An allocation asks for more than is left on an on-account receipt."""
    status_code = 400

    def __init__(self, requested: float, available: float):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Allocation of {requested} exceeds available balance of receipt ({available})"
        )


class DuplicateError(LedgerError):
    """Unique-constraint conflict."""
    status_code = 409


class ConcurrencyError(LedgerError):
    """The document changed between read and write (version mismatch)."""
    status_code = 409

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} was modified concurrently, please retry")


class InternalError(LedgerError):
    """Unexpected failure; the message shown to clients stays generic."""
    status_code = 500
