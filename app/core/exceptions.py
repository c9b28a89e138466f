"""
Exception classes for the risk & verification core.

Verification failures (OTP mismatch, biometric no-match) are NOT exceptions:
they are normal terminal outcomes of the workflow.
"""

from typing import Any, Dict, Optional


class RiskEngineError(Exception):
    """Base exception for every error raised by the core"""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ValidationError(RiskEngineError):
    """Malformed submission (non-positive amount, empty recipient...)"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="VALIDATION_ERROR", **kwargs)


class AccountBlockedError(ValidationError):
    """Submission from an account whose status is BLOCKED"""

    def __init__(self, account_id: str):
        super().__init__(
            f"Account {account_id} is blocked; new transactions are not allowed.",
            details={"account_id": account_id},
        )
        self.error_code = "ACCOUNT_BLOCKED"


class PolicyViolation(RiskEngineError):
    """Velocity limit would be exceeded; raised before any scoring"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="VELOCITY_LIMIT", **kwargs)


class CollaboratorError(RiskEngineError):
    """Ledger / identity store / notifier unavailable"""

    def __init__(self, message: str, transaction_id: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="COLLABORATOR_ERROR", **kwargs)
        self.transaction_id = transaction_id


class InvalidTransitionError(RiskEngineError):
    """Requested operation is not legal from the workflow's current state"""

    def __init__(self, transaction_id: str, state: str, action: str):
        super().__init__(
            f"Cannot {action} transaction {transaction_id} in state {state}.",
            error_code="INVALID_TRANSITION",
            details={"transaction_id": transaction_id, "state": state, "action": action},
        )


class UnknownTransactionError(RiskEngineError):
    """No active workflow for the given transaction id"""

    def __init__(self, transaction_id: str):
        super().__init__(
            f"No active workflow for transaction {transaction_id}.",
            error_code="UNKNOWN_TRANSACTION",
            details={"transaction_id": transaction_id},
        )
