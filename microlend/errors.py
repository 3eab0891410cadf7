"""
Error Taxonomy Module

Domain errors raised by the lending managers and the settlement engine.
Each error carries the HTTP status the API layer maps it to.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base class for all lending domain errors"""
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.details}


class ValidationError(LendingError):
    """Missing or malformed input"""
    status_code = 400


class AccountMissingError(ValidationError):
    """A party has no usable payment account for the requested rail"""

    def __init__(self, role: str, account_type: str):
        self.role = role
        self.account_type = account_type
        super().__init__(
            f"{role} needs to add a {account_type} account first",
            details={"requiresAccount": role}
        )


class NotFoundError(LendingError):
    """Loan, payment, account or other record does not exist"""
    status_code = 404


class AuthorizationError(LendingError):
    """Caller does not own the record it is acting on"""
    status_code = 403


class ExternalRailError(LendingError):
    """Remote payment service reported a failure"""
    status_code = 400

    def __init__(self, message: str, rail: Optional[str] = None, payment_id: Optional[str] = None):
        details = {}
        if payment_id:
            details["paymentId"] = payment_id
        super().__init__(message, details=details)
        self.rail = rail
        self.payment_id = payment_id


class ConflictError(LendingError):
    """A guarded write lost against a concurrent update"""
    status_code = 409


class IllegalTransitionError(ConflictError):
    """Requested loan state change is not in the transition table"""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal loan transition {current} -> {target}")


class ReconciliationAnomaly(LendingError):
    """
    Describes an inconsistency between payment history and loan state.

    Anomalies are logged and audited, never raised to the end user: by the
    time one is detected the funds have already moved.
    """
    status_code = 500

    def __init__(self, loan_id: str, kind: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.loan_id = loan_id
        self.kind = kind
