"""
Error taxonomy for the credit ledger.

Insufficient funds is not in here: it is an ordinary DebitResult.
"""

from typing import Optional


class CreditError(Exception):
    """Base class for ledger errors, each with a stable code."""
    code = "CREDIT_ERROR"
    
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidFeature(CreditError):
    """Raised when a feature key has no configured cost."""
    code = "INVALID_MODE"
    
    def __init__(self, feature_key: str):
        super().__init__(f"Unknown feature key: {feature_key!r}")
        self.feature_key = feature_key


class InvalidAdjustment(CreditError):
    """Raised when an admin adjustment payload is malformed."""
    code = "INVALID_PAYLOAD"


class StorageUnavailable(CreditError):
    """Raised by a balance port when its storage cannot be reached."""
    code = "STORAGE_UNAVAILABLE"


class LedgerUnavailable(CreditError):
    """Raised when a write cannot be applied through any permitted path.
    
    Callers must not proceed to the paid action after this error.
    """
    code = "LEDGER_UNAVAILABLE"


class InsufficientCredits(CreditError):
    """Raised by application wrappers that turn a denial into an error."""
    code = "INSUFFICIENT_CREDITS"
    
    def __init__(self, balance: int, required: int):
        super().__init__(f"insufficient credits: have {balance}, need {required}")
        self.balance = balance
        self.required = required


class ReadingGenerationFailed(CreditError):
    """Raised when the text generation step fails after a granted debit."""
    code = "GENERATION_FAILED"
    
    def __init__(self, message: str, refunded: bool):
        super().__init__(message)
        self.refunded = refunded
