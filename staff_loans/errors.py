"""
Error Taxonomy Module

Business-rule and validation failures raised by the loan engine, and the
structured result the service facade returns instead of raising them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar


class ErrorCode(Enum):
    """Stable error codes surfaced to callers"""
    VALIDATION_ERROR = "ValidationError"
    INELIGIBLE_EMPLOYEE_STATUS = "IneligibleEmployeeStatus"
    INSUFFICIENT_SERVICE = "InsufficientService"
    GRADE_NOT_ELIGIBLE = "GradeNotEligible"
    AMOUNT_OR_TENURE_OUT_OF_RANGE = "AmountOrTenureOutOfRange"
    EMI_UNAFFORDABLE = "EmiUnaffordable"
    INVALID_STATE_TRANSITION = "InvalidStateTransition"
    NOT_AUTHORIZED = "NotAuthorized"
    TENANT_MISMATCH = "TenantMismatch"
    NOT_FOUND = "NotFound"


@dataclass(frozen=True)
class RuleViolation:
    """A single field-level failure"""
    code: ErrorCode
    message: str
    field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "field": self.field,
            "message": self.message,
        }


class LoanError(Exception):
    """Base class for all expected loan engine failures"""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, violations: Optional[List[RuleViolation]] = None,
                 field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if violations is None:
            violations = [RuleViolation(self.code, message, field)]
        self.violations = violations
        # Extra data for the caller, e.g. the EMI preview of a failed application
        self.context: Dict[str, Any] = {}

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code.value,
            "message": self.message,
            "details": [v.to_dict() for v in self.violations],
        }
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(LoanError):
    """Malformed or out-of-range input"""
    code = ErrorCode.VALIDATION_ERROR


class EligibilityError(LoanError):
    """Loan application rejected by an eligibility rule"""

    def __init__(self, violations: List[RuleViolation]):
        self.code = violations[0].code
        message = "; ".join(v.message for v in violations)
        super().__init__(message, violations)


class InvalidStateTransition(LoanError):
    """Action is incompatible with the loan's current status"""
    code = ErrorCode.INVALID_STATE_TRANSITION


class NotAuthorized(LoanError):
    """Actor's role does not allow the action"""
    code = ErrorCode.NOT_AUTHORIZED


class TenantMismatch(LoanError):
    """A record was addressed under a tenant that does not own it"""
    code = ErrorCode.TENANT_MISMATCH


class NotFound(LoanError):
    """Referenced record does not exist"""
    code = ErrorCode.NOT_FOUND


T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a service operation: either a value or a structured error"""
    ok: bool
    value: Optional[T] = None
    error: Optional[LoanError] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, value: T, warnings: Optional[List[str]] = None) -> 'OperationResult[T]':
        return cls(ok=True, value=value, warnings=warnings or [])

    @classmethod
    def failure(cls, error: LoanError, value: Optional[T] = None,
                warnings: Optional[List[str]] = None) -> 'OperationResult[T]':
        return cls(ok=False, value=value, error=error, warnings=warnings or [])

    @property
    def error_code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error else None

    @property
    def errors(self) -> List[RuleViolation]:
        return list(self.error.violations) if self.error else []
