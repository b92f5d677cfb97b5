"""
Obligation Aggregation Module

Read-only views over an employee's repaying loans: the monthly EMI burden used
by eligibility, the recovery owed at separation, and the tenant portfolio.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List

from .employees import EmployeeDirectory
from .loans import (
    InstallmentStatus, LoanApplication, LoanStatus, PENDING_APPROVAL_STATUSES, REPAYING_STATUSES
)
from .money import ZERO, sum_money
from .repositories import LoanRepository, ScheduleRepository


@dataclass
class ObligationLine:
    """One repaying loan's contribution to an employee's obligations"""
    loan_id: str
    product_code: str
    status: LoanStatus
    emi_amount: Decimal
    outstanding_balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'product_code': self.product_code,
            'status': self.status.value,
            'emi_amount': str(self.emi_amount),
            'outstanding_balance': str(self.outstanding_balance),
        }


@dataclass
class ObligationSummary:
    """Summed monthly obligation across an employee's repaying loans"""
    employee_id: str
    total_emi: Decimal = ZERO
    loan_count: int = 0
    total_outstanding: Decimal = ZERO
    loans: List[ObligationLine] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'employee_id': self.employee_id,
            'total_emi': str(self.total_emi),
            'loan_count': self.loan_count,
            'total_outstanding': str(self.total_outstanding),
            'loans': [line.to_dict() for line in self.loans],
        }


@dataclass
class SettlementRecovery:
    """Loan recovery owed by a separating employee"""
    employee_id: str
    outstanding_principal: Decimal
    loan_count: int
    pending_installments: int
    overdue_installments: int
    loans: List[ObligationLine] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'employee_id': self.employee_id,
            'outstanding_principal': str(self.outstanding_principal),
            'loan_count': self.loan_count,
            'pending_installments': self.pending_installments,
            'overdue_installments': self.overdue_installments,
            'loans': [line.to_dict() for line in self.loans],
        }


@dataclass
class PortfolioSummary:
    """Tenant-wide loan book figures for reporting"""
    total_loans: int
    active_loans: int
    pending_approvals: int
    total_outstanding: Decimal
    total_disbursed: Decimal
    by_status: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_loans': self.total_loans,
            'active_loans': self.active_loans,
            'pending_approvals': self.pending_approvals,
            'total_outstanding': str(self.total_outstanding),
            'total_disbursed': str(self.total_disbursed),
            'by_status': dict(self.by_status),
        }


def _line(loan: LoanApplication) -> ObligationLine:
    return ObligationLine(
        loan_id=loan.id,
        product_code=loan.product_code,
        status=loan.status,
        emi_amount=loan.emi_amount,
        outstanding_balance=loan.outstanding_balance,
    )


class ObligationAggregator:
    """Read-only obligation queries"""

    def __init__(self, loans: LoanRepository, schedules: ScheduleRepository,
                 employees: EmployeeDirectory):
        self.loans = loans
        self.schedules = schedules
        self.employees = employees

    def get_obligations(self, tenant_id: str, employee_id: str) -> ObligationSummary:
        """
        Sum EMI and outstanding balance over the employee's Active and Disbursed loans

        Raises:
            NotFound: If the employee is unknown
            TenantMismatch: If the employee belongs to another tenant
        """
        self.employees.get_employee(tenant_id, employee_id)
        repaying = self.loans.list_in_statuses(tenant_id, REPAYING_STATUSES, employee_id)
        lines = [_line(loan) for loan in repaying]
        return ObligationSummary(
            employee_id=employee_id,
            total_emi=sum_money(line.emi_amount for line in lines),
            loan_count=len(lines),
            total_outstanding=sum_money(line.outstanding_balance for line in lines),
            loans=lines,
        )

    def get_settlement_recovery(self, tenant_id: str, employee_id: str) -> SettlementRecovery:
        """Outstanding principal to deduct from a full-and-final settlement"""
        summary = self.get_obligations(tenant_id, employee_id)
        pending = overdue = 0
        for line in summary.loans:
            for entry in self.schedules.list_for_loan(tenant_id, line.loan_id):
                if entry.status == InstallmentStatus.PENDING:
                    pending += 1
                elif entry.status == InstallmentStatus.OVERDUE:
                    overdue += 1
        return SettlementRecovery(
            employee_id=employee_id,
            outstanding_principal=summary.total_outstanding,
            loan_count=summary.loan_count,
            pending_installments=pending,
            overdue_installments=overdue,
            loans=summary.loans,
        )

    def get_portfolio_summary(self, tenant_id: str) -> PortfolioSummary:
        loans = self.loans.list(tenant_id)
        by_status = {status.value: 0 for status in LoanStatus}
        for loan in loans:
            by_status[loan.status.value] += 1

        disbursed = [loan for loan in loans if loan.disbursal_date is not None]
        return PortfolioSummary(
            total_loans=len(loans),
            active_loans=sum(1 for loan in loans if loan.status in REPAYING_STATUSES),
            pending_approvals=sum(1 for loan in loans if loan.status in PENDING_APPROVAL_STATUSES),
            total_outstanding=sum_money(
                loan.outstanding_balance for loan in loans if loan.status in REPAYING_STATUSES
            ),
            total_disbursed=sum_money(loan.sanctioned_principal for loan in disbursed),
            by_status=by_status,
        )
