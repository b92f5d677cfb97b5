"""
Amortization Module

Pure EMI and reducing-balance schedule computation. No I/O: the same functions
back the eligibility preview and the schedule persisted at disbursal.

EMI = P * r * (1 + r)^n / ((1 + r)^n - 1), with r the monthly rate
(annual percent / 12 / 100). A zero rate degenerates to P / n.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Tuple
import calendar

from .errors import ValidationError
from .money import DEFAULT_MINOR_UNITS, ZERO, Number, round_money, sum_money, to_decimal


MAX_ANNUAL_RATE_PERCENT = Decimal('100')
MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class ScheduledInstallment:
    """One computed installment; ``amount`` is principal plus interest"""
    sequence: int
    due_date: date
    principal: Decimal
    interest: Decimal
    amount: Decimal
    outstanding_after: Decimal


@dataclass(frozen=True)
class EmiPreview:
    """EMI figures shown to an applicant before any schedule exists"""
    emi_amount: Decimal
    total_interest: Decimal
    total_amount: Decimal
    tenure_months: int

    def to_dict(self):
        return {
            'emi_amount': str(self.emi_amount),
            'total_interest': str(self.total_interest),
            'total_amount': str(self.total_amount),
            'tenure_months': self.tenure_months,
        }


@dataclass(frozen=True)
class AmortizationSchedule:
    """Complete repayment schedule for a principal, rate and tenure"""
    principal: Decimal
    annual_rate_percent: Decimal
    tenure_months: int
    emi_amount: Decimal
    installments: Tuple[ScheduledInstallment, ...]

    @property
    def total_amount(self) -> Decimal:
        return sum_money(i.amount for i in self.installments)

    @property
    def total_interest(self) -> Decimal:
        return sum_money(i.interest for i in self.installments)

    @property
    def total_principal(self) -> Decimal:
        return sum_money(i.principal for i in self.installments)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _validate(principal: Number, annual_rate_percent: Number,
              tenure_months: int) -> Tuple[Decimal, Decimal]:
    try:
        principal = to_decimal(principal)
    except ValueError:
        raise ValidationError("Principal must be a decimal amount", field="principal")
    if not principal.is_finite() or principal <= ZERO:
        raise ValidationError("Principal must be greater than zero", field="principal")

    try:
        rate = to_decimal(annual_rate_percent)
    except ValueError:
        raise ValidationError("Interest rate must be a decimal percentage",
                              field="annual_rate_percent")
    if not rate.is_finite() or rate < ZERO or rate > MAX_ANNUAL_RATE_PERCENT:
        raise ValidationError("Interest rate must be between 0 and 100 percent",
                              field="annual_rate_percent")

    if isinstance(tenure_months, bool) or not isinstance(tenure_months, int) or tenure_months < 1:
        raise ValidationError("Tenure must be a positive whole number of months",
                              field="tenure_months")
    return principal, rate


def _monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    return annual_rate_percent / MONTHS_PER_YEAR / HUNDRED


def _emi(principal: Decimal, monthly_rate: Decimal, tenure_months: int, places: int) -> Decimal:
    if monthly_rate == ZERO:
        return round_money(principal / tenure_months, places)
    factor = (Decimal('1') + monthly_rate) ** tenure_months
    return round_money(principal * monthly_rate * factor / (factor - Decimal('1')), places)


def _split(principal: Decimal, monthly_rate: Decimal, tenure_months: int, emi: Decimal,
           places: int) -> List[Tuple[Decimal, Decimal, Decimal]]:
    """(principal, interest, outstanding after) per installment"""
    rows = []
    balance = principal
    for sequence in range(1, tenure_months + 1):
        interest = round_money(balance * monthly_rate, places)
        if sequence == tenure_months:
            # Final installment takes whatever principal remains
            principal_part = balance
        else:
            principal_part = min(max(emi - interest, ZERO), balance)
        balance -= principal_part
        rows.append((principal_part, interest, balance))
    return rows


def calculate_emi(principal: Number, annual_rate_percent: Number, tenure_months: int,
                  places: int = DEFAULT_MINOR_UNITS) -> Decimal:
    """
    Calculate the equated monthly installment

    Args:
        principal: Loan principal, greater than zero
        annual_rate_percent: Annual interest rate in percent, 0 to 100
        tenure_months: Number of monthly installments
        places: Currency minor-unit places for rounding

    Returns:
        EMI rounded half-up to the minor unit

    Raises:
        ValidationError: If an input is out of range
    """
    principal, rate = _validate(principal, annual_rate_percent, tenure_months)
    return _emi(principal, _monthly_rate(rate), tenure_months, places)


def preview_emi(principal: Number, annual_rate_percent: Number, tenure_months: int,
                places: int = DEFAULT_MINOR_UNITS) -> EmiPreview:
    """EMI with schedule totals, without due dates"""
    principal, rate = _validate(principal, annual_rate_percent, tenure_months)
    monthly_rate = _monthly_rate(rate)
    emi = _emi(principal, monthly_rate, tenure_months, places)
    rows = _split(principal, monthly_rate, tenure_months, emi, places)
    total_interest = sum_money(interest for _, interest, _ in rows)
    return EmiPreview(
        emi_amount=emi,
        total_interest=total_interest,
        total_amount=principal + total_interest,
        tenure_months=tenure_months,
    )


def build_schedule(principal: Number, annual_rate_percent: Number, tenure_months: int,
                   disbursal_date: date, places: int = DEFAULT_MINOR_UNITS) -> AmortizationSchedule:
    """
    Build the full reducing-balance schedule

    Installment k falls due ``k - 1`` months after the disbursal date, so the
    first deduction happens in the payroll cycle of the disbursal month.
    Principal components always sum exactly to ``principal``.

    Raises:
        ValidationError: If an input is out of range
    """
    principal, rate = _validate(principal, annual_rate_percent, tenure_months)
    monthly_rate = _monthly_rate(rate)
    emi = _emi(principal, monthly_rate, tenure_months, places)

    installments = []
    for index, (principal_part, interest, outstanding) in enumerate(
            _split(principal, monthly_rate, tenure_months, emi, places)):
        installments.append(ScheduledInstallment(
            sequence=index + 1,
            due_date=add_months(disbursal_date, index),
            principal=principal_part,
            interest=interest,
            amount=principal_part + interest,
            outstanding_after=outstanding,
        ))

    return AmortizationSchedule(
        principal=principal,
        annual_rate_percent=rate,
        tenure_months=tenure_months,
        emi_amount=emi,
        installments=tuple(installments),
    )
