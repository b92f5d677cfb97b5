"""
Loan Aggregate Module

Records making up a staff loan (the application, its installment schedule and
its approval history), the loan and installment status enums, and the
explicit transition tables the workflow and repayment processor enforce.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Optional

from .money import ZERO
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    APPLIED = "applied"                        # Awaiting the direct manager
    MANAGER_APPROVED = "manager_approved"      # Awaiting HR verification
    HR_VERIFIED = "hr_verified"                # Awaiting Finance sanction
    FINANCE_SANCTIONED = "finance_sanctioned"  # Awaiting disbursal
    DISBURSED = "disbursed"                    # Paid out, no installment recovered yet
    ACTIVE = "active"                          # Repaying through payroll
    CLOSED = "closed"                          # Fully repaid
    REJECTED = "rejected"                      # Declined during approval


TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.APPLIED: frozenset({LoanStatus.MANAGER_APPROVED, LoanStatus.REJECTED}),
    LoanStatus.MANAGER_APPROVED: frozenset({LoanStatus.HR_VERIFIED, LoanStatus.REJECTED}),
    LoanStatus.HR_VERIFIED: frozenset({LoanStatus.FINANCE_SANCTIONED, LoanStatus.REJECTED}),
    LoanStatus.FINANCE_SANCTIONED: frozenset({LoanStatus.DISBURSED}),
    # A loan whose only installment is recovered (or waived) closes straight from Disbursed
    LoanStatus.DISBURSED: frozenset({LoanStatus.ACTIVE, LoanStatus.CLOSED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.CLOSED}),
    LoanStatus.CLOSED: frozenset(),
    LoanStatus.REJECTED: frozenset(),
}

REPAYING_STATUSES = frozenset({LoanStatus.DISBURSED, LoanStatus.ACTIVE})
PENDING_APPROVAL_STATUSES = frozenset({
    LoanStatus.APPLIED, LoanStatus.MANAGER_APPROVED, LoanStatus.HR_VERIFIED,
})


def can_transition(from_status: LoanStatus, to_status: LoanStatus) -> bool:
    """Whether the loan state machine allows moving between two statuses"""
    return to_status in TRANSITIONS[from_status]


class ActorRole(Enum):
    """Roles that act on loans"""
    EMPLOYEE = "employee"
    MANAGER = "manager"
    HR = "hr"
    FINANCE = "finance"


class ApprovalLevel(IntEnum):
    """Approval chain levels"""
    MANAGER = 1
    HR = 2
    FINANCE = 3


class Decision(Enum):
    """Approver decision"""
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ApprovalStage:
    """What one level of the approval chain expects and produces"""
    level: ApprovalLevel
    role: ActorRole
    from_status: LoanStatus
    approved_status: LoanStatus


APPROVAL_STAGES: Dict[ApprovalLevel, ApprovalStage] = {
    ApprovalLevel.MANAGER: ApprovalStage(ApprovalLevel.MANAGER, ActorRole.MANAGER,
                                         LoanStatus.APPLIED, LoanStatus.MANAGER_APPROVED),
    ApprovalLevel.HR: ApprovalStage(ApprovalLevel.HR, ActorRole.HR,
                                    LoanStatus.MANAGER_APPROVED, LoanStatus.HR_VERIFIED),
    ApprovalLevel.FINANCE: ApprovalStage(ApprovalLevel.FINANCE, ActorRole.FINANCE,
                                         LoanStatus.HR_VERIFIED, LoanStatus.FINANCE_SANCTIONED),
}


@dataclass(frozen=True)
class Actor:
    """Authenticated user performing an action"""
    actor_id: str
    role: ActorRole
    name: Optional[str] = None


class InstallmentStatus(Enum):
    """Installment repayment states"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    WAIVED = "waived"


INSTALLMENT_TRANSITIONS: Dict[InstallmentStatus, FrozenSet[InstallmentStatus]] = {
    InstallmentStatus.PENDING: frozenset({
        InstallmentStatus.PAID, InstallmentStatus.OVERDUE, InstallmentStatus.WAIVED,
    }),
    InstallmentStatus.OVERDUE: frozenset({InstallmentStatus.WAIVED}),
    InstallmentStatus.PAID: frozenset(),
    InstallmentStatus.WAIVED: frozenset(),
}

SETTLED_INSTALLMENT_STATUSES = frozenset({InstallmentStatus.PAID, InstallmentStatus.WAIVED})


@dataclass
class LoanApplication(StorageRecord):
    """Staff loan aggregate root"""
    tenant_id: str
    employee_id: str
    product_id: str
    product_code: str
    product_name: str
    applied_principal: Decimal
    sanctioned_principal: Decimal             # Equals applied until Finance sanctions
    interest_rate_percent: Decimal            # Copied from the product when applying
    tenure_months: int
    emi_amount: Decimal
    outstanding_balance: Decimal = ZERO       # Authoritative from Disbursed onward
    status: LoanStatus = LoanStatus.APPLIED
    disbursal_date: Optional[date] = None
    closure_date: Optional[date] = None
    remarks: str = ""
    applied_by: Optional[str] = None
    version: int = 1

    @property
    def is_repaying(self) -> bool:
        return self.status in REPAYING_STATUSES

    def concurrency_token(self) -> Dict[str, object]:
        """Stored fields a conditional write must still find unchanged"""
        return {'version': self.version, 'status': self.status.value}


@dataclass
class InstallmentScheduleEntry(StorageRecord):
    """One scheduled installment; ``id`` is ``<loan_id>_<sequence>``"""
    tenant_id: str
    loan_id: str
    sequence: int
    due_date: date
    principal_component: Decimal
    interest_component: Decimal
    installment_amount: Decimal
    outstanding_after: Decimal
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    paid_amount: Optional[Decimal] = None
    payroll_cycle_id: Optional[str] = None
    remarks: str = ""

    @staticmethod
    def make_id(loan_id: str, sequence: int) -> str:
        return f"{loan_id}_{sequence}"

    def is_due_in(self, cycle_date: date) -> bool:
        """Whether the installment falls in the payroll cycle's month"""
        return (self.due_date.year, self.due_date.month) == (cycle_date.year, cycle_date.month)

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_INSTALLMENT_STATUSES


@dataclass
class ApprovalRecord(StorageRecord):
    """Append-only record of one approval decision; ``created_at`` is the decision time"""
    tenant_id: str
    loan_id: str
    approver_id: str
    approver_role: ActorRole
    level: ApprovalLevel
    decision: Decision
    remarks: str = ""
    approver_name: Optional[str] = None
    sanctioned_principal: Optional[Decimal] = None  # Level 3 approvals only
