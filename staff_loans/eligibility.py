"""
Loan Eligibility Module

Pure checks deciding whether an employee may apply for a product with a given
principal and tenure. Rules run in a fixed order and stop at the first
structural failure; affordability is checked only once the structure passes.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .amortization import EmiPreview, preview_emi
from .employees import EmployeeRecord, EmployeeStatus
from .errors import (
    EligibilityError, ErrorCode, LoanError, RuleViolation, ValidationError
)
from .money import DEFAULT_MINOR_UNITS, ZERO, Number, format_amount, to_decimal, truncate
from .products import LoanProduct


DAYS_PER_YEAR = Decimal('365.25')
DEFAULT_AFFORDABILITY_RATIO = Decimal('0.5')


@dataclass
class EligibilityResult:
    """Outcome of an eligibility check"""
    valid: bool
    errors: List[RuleViolation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    emi_preview: Optional[EmiPreview] = None
    service_years: Optional[Decimal] = None

    def to_error(self) -> Optional[LoanError]:
        """The exception equivalent of a failed result"""
        if self.valid:
            return None
        if self.errors[0].code == ErrorCode.VALIDATION_ERROR:
            return ValidationError(self.errors[0].message, violations=list(self.errors))
        return EligibilityError(list(self.errors))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'errors': [e.to_dict() for e in self.errors],
            'warnings': list(self.warnings),
            'emi_preview': self.emi_preview.to_dict() if self.emi_preview else None,
            'service_years': str(self.service_years) if self.service_years is not None else None,
        }


def _anniversary(join_date: date, years: int) -> date:
    try:
        return join_date.replace(year=join_date.year + years)
    except ValueError:
        # 29 February joiners celebrate on 28 February in common years
        return join_date.replace(year=join_date.year + years, day=28)


def completed_service_years(join_date: date, as_of: date) -> Decimal:
    """
    Service years truncated to one decimal

    Whole anniversaries since the join date plus the days since the last
    anniversary over a 365.25-day year. Exactly N years after joining gives
    N.0; a day earlier gives less.
    """
    if as_of <= join_date:
        return Decimal('0.0')
    years = as_of.year - join_date.year
    last_anniversary = _anniversary(join_date, years)
    if last_anniversary > as_of:
        years -= 1
        last_anniversary = _anniversary(join_date, years)
    days = (as_of - last_anniversary).days
    return truncate(Decimal(years) + Decimal(days) / DAYS_PER_YEAR, 1)


def _usable_principal(principal: Number) -> Optional[Decimal]:
    try:
        value = to_decimal(principal)
    except ValueError:
        return None
    if not value.is_finite() or value <= ZERO:
        return None
    return value


def _usable_tenure(tenure_months: Any) -> Optional[int]:
    if isinstance(tenure_months, bool) or not isinstance(tenure_months, int) or tenure_months < 1:
        return None
    return tenure_months


def validate_application(
    employee: EmployeeRecord,
    product: LoanProduct,
    principal: Number,
    tenure_months: int,
    take_home: Optional[Decimal],
    existing_emi_total: Decimal = ZERO,
    as_of: Optional[date] = None,
    affordability_ratio: Decimal = DEFAULT_AFFORDABILITY_RATIO,
    places: int = DEFAULT_MINOR_UNITS
) -> EligibilityResult:
    """
    Evaluate a loan request against the product rules

    Args:
        employee: Applicant's employee record
        product: Requested loan product
        principal: Requested principal
        tenure_months: Requested number of monthly installments
        take_home: Monthly take-home salary, None when unknown
        existing_emi_total: Summed EMI of the applicant's repaying loans
        as_of: Evaluation date (today when omitted)
        affordability_ratio: Maximum share of take-home one EMI may take
        places: Currency minor-unit places

    Returns:
        EligibilityResult; errors are ordered as the rules ran
    """
    as_of = as_of or date.today()
    result = EligibilityResult(valid=True)

    usable_principal = _usable_principal(principal)
    usable_tenure = _usable_tenure(tenure_months)
    if usable_principal is not None and usable_tenure is not None:
        result.emi_preview = preview_emi(usable_principal, product.interest_rate_percent,
                                         usable_tenure, places)

    def fail(code: ErrorCode, message: str, field_name: Optional[str] = None) -> EligibilityResult:
        result.valid = False
        result.errors.append(RuleViolation(code, message, field_name))
        return result

    if not product.is_active:
        return fail(ErrorCode.VALIDATION_ERROR,
                    f"Loan product {product.code} is not active", "product_id")

    if employee.status != EmployeeStatus.ACTIVE:
        return fail(ErrorCode.INELIGIBLE_EMPLOYEE_STATUS,
                    f"Employee status {employee.status.value} is not eligible for loans",
                    "employee_id")

    result.service_years = completed_service_years(employee.join_date, as_of)
    if result.service_years < product.min_service_years:
        return fail(ErrorCode.INSUFFICIENT_SERVICE,
                    f"Minimum {product.min_service_years} years of service required, "
                    f"employee has {result.service_years}", "employee_id")

    if product.restricts_grades and employee.grade not in product.eligible_grades:
        return fail(ErrorCode.GRADE_NOT_ELIGIBLE,
                    f"Grade {employee.grade or 'unknown'} is not eligible for {product.code}",
                    "grade")

    if usable_principal is None or usable_principal > product.max_principal:
        fail(ErrorCode.AMOUNT_OR_TENURE_OUT_OF_RANGE,
             f"Principal must be greater than zero and at most "
             f"{format_amount(product.max_principal, places)}", "principal")
    if usable_tenure is None or usable_tenure > product.max_tenure_months:
        fail(ErrorCode.AMOUNT_OR_TENURE_OUT_OF_RANGE,
             f"Tenure must be between 1 and {product.max_tenure_months} months", "tenure_months")
    if not result.valid:
        return result

    emi = result.emi_preview.emi_amount
    if take_home is None or take_home <= ZERO:
        result.warnings.append("Take-home salary unknown; EMI affordability was not checked")
        return result

    limit = take_home * affordability_ratio
    if emi > limit:
        return fail(ErrorCode.EMI_UNAFFORDABLE,
                    f"EMI {format_amount(emi, places)} exceeds "
                    f"{format_amount(affordability_ratio * 100, 0)}% of take-home salary "
                    f"({format_amount(limit, places)})", "principal")

    if existing_emi_total + emi > limit:
        result.warnings.append(
            f"Combined EMI {format_amount(existing_emi_total + emi, places)} exceeds "
            f"{format_amount(affordability_ratio * 100, 0)}% of take-home salary"
        )

    return result
