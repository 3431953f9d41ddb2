"""
Error Taxonomy Module

Every failure the engine reports to its callers is one of these kinds.
Callers map them to their own presentation; no user-facing text is
formatted here.
"""

from typing import Optional


class ProgramPaymentsError(Exception):
    """Base class for all engine errors"""

    code = "program_payments_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(ProgramPaymentsError, ValueError):
    """Malformed or missing input (non-positive cost, unknown schedule, ...)"""

    code = "validation_error"


class NotFoundError(ProgramPaymentsError):
    """Referenced program or payment does not exist"""

    code = "not_found"


class ConflictError(ProgramPaymentsError):
    """Illegal state transition, e.g. approving a non-pending program"""

    code = "conflict"


class InvalidStateError(ProgramPaymentsError):
    """Payment attempted against a pending, revoked or completed program"""

    code = "invalid_state"


class DuplicateReferenceError(ProgramPaymentsError):
    """External payment reference has already been applied"""

    code = "duplicate_reference"

    def __init__(self, reference: str):
        super().__init__(f"Payment reference {reference} has already been processed")
        self.reference = reference


class UpstreamError(ProgramPaymentsError):
    """Payment gateway call failed or returned a non-success result"""

    code = "upstream_error"

    def __init__(self, message: str, *, operation: str = "verification",
                 status_code: Optional[int] = None):
        super().__init__(message, code=f"{operation}_failed")
        self.operation = operation
        self.status_code = status_code


class AuthorizationError(ProgramPaymentsError):
    """Identity is not allowed to perform an administrative operation"""

    code = "unauthorized"
