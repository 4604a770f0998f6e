"""
Typed Exception Hierarchy

Every engine error carries a machine-readable ``code`` and the structured
data needed to report it, so callers catch by type instead of parsing
messages.

    LoanEngineError
    +-- InvalidTransaction
    +-- NotFound
    +-- Conflict
    +-- InsufficientFunds
    +-- AlreadyProcessed   (no-op signal from payout idempotency)
"""

from datetime import date
from decimal import Decimal
from typing import Optional


class LoanEngineError(Exception):
    """Base exception for all loan engine errors."""

    code: str = "LOAN_ENGINE_ERROR"


class InvalidTransaction(LoanEngineError, ValueError):
    """Malformed input: bad amount, unknown type, or an out-of-order date."""

    code: str = "INVALID_TRANSACTION"

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        self.transaction_id = transaction_id
        super().__init__(message)


class NotFound(LoanEngineError):
    """Unknown account, deposit or user."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class Conflict(LoanEngineError):
    """A replay is already running for the same account."""

    code: str = "CONFLICT"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Replay already in progress for account {account_id}")


class InsufficientFunds(LoanEngineError):
    """Requested amount exceeds what can be debited or allocated."""

    code: str = "INSUFFICIENT_FUNDS"

    def __init__(self, requested: Decimal, available: Decimal, message: Optional[str] = None):
        self.requested = requested
        self.available = available
        super().__init__(
            message or f"Insufficient funds: requested {requested}, available {available}"
        )


class AlreadyProcessed(LoanEngineError):
    """
    A payout already exists for (deposit, date, kind).

    Not a failure: batch runs count it and move on.
    """

    code: str = "ALREADY_PROCESSED"

    def __init__(self, deposit_id: str, payout_date: date, kind: str):
        self.deposit_id = deposit_id
        self.payout_date = payout_date
        self.kind = kind
        super().__init__(
            f"{kind} payout already processed for deposit {deposit_id} on {payout_date.isoformat()}"
        )
