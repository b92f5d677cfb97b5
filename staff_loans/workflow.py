"""
Loan Workflow Module

State machine for the staff loan aggregate: application, the three-level
approval chain (direct manager, HR, Finance) and disbursal.

Every transition is a compare-and-swap on the loan's version and status, so a
double-submitted decision can only succeed once. Audit events and
notifications are sent after the transition commits and never undo it.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import uuid

from .amortization import build_schedule, calculate_emi
from .audit import AuditEventType, AuditSink, record_best_effort
from .config import StaffLoansConfig, get_config
from .eligibility import EligibilityResult, validate_application
from .employees import EmployeeDirectory, EmployeeRecord
from .errors import InvalidStateTransition, LoanError, NotAuthorized, ValidationError
from .loans import (
    APPROVAL_STAGES, Actor, ActorRole, ApprovalLevel, ApprovalRecord, Decision,
    InstallmentScheduleEntry, InstallmentStatus, LoanApplication, LoanStatus, can_transition
)
from .logging_config import get_logger, log_action
from .money import ZERO, Number, sum_money, to_decimal
from .notifications import NotificationDispatcher, NotificationType
from .obligations import ObligationAggregator
from .products import LoanProduct, ProductCatalog
from .repositories import ApprovalRecordRepository, LoanRepository, ScheduleRepository
from .storage import StorageInterface


logger = get_logger("workflow")


def _today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class ScheduleSummary:
    """A loan's schedule with repayment progress"""
    loan: LoanApplication
    installments: List[InstallmentScheduleEntry]
    paid_count: int = 0
    pending_count: int = 0
    overdue_count: int = 0
    waived_count: int = 0
    total_paid: Decimal = ZERO
    total_pending: Decimal = ZERO
    next_due_date: Optional[date] = None

    @classmethod
    def build(cls, loan: LoanApplication,
              installments: List[InstallmentScheduleEntry]) -> 'ScheduleSummary':
        by_status = {status: [] for status in InstallmentStatus}
        for entry in installments:
            by_status[entry.status].append(entry)
        unpaid = by_status[InstallmentStatus.PENDING] + by_status[InstallmentStatus.OVERDUE]
        return cls(
            loan=loan,
            installments=installments,
            paid_count=len(by_status[InstallmentStatus.PAID]),
            pending_count=len(by_status[InstallmentStatus.PENDING]),
            overdue_count=len(by_status[InstallmentStatus.OVERDUE]),
            waived_count=len(by_status[InstallmentStatus.WAIVED]),
            total_paid=sum_money(e.paid_amount or ZERO for e in by_status[InstallmentStatus.PAID]),
            total_pending=sum_money(e.installment_amount for e in unpaid),
            next_due_date=min((e.due_date for e in unpaid), default=None),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan.id,
            'status': self.loan.status.value,
            'emi_amount': str(self.loan.emi_amount),
            'outstanding_balance': str(self.loan.outstanding_balance),
            'paid_count': self.paid_count,
            'pending_count': self.pending_count,
            'overdue_count': self.overdue_count,
            'waived_count': self.waived_count,
            'total_paid': str(self.total_paid),
            'total_pending': str(self.total_pending),
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'installments': [entry.to_dict() for entry in self.installments],
        }


class LoanWorkflow:
    """
    Drives loans from application to disbursal
    """

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanRepository,
        schedules: ScheduleRepository,
        approvals: ApprovalRecordRepository,
        products: ProductCatalog,
        employees: EmployeeDirectory,
        obligations: ObligationAggregator,
        audit_trail: Optional[AuditSink] = None,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[StaffLoansConfig] = None,
        clock: Callable[[], date] = _today
    ):
        self.storage = storage
        self.loans = loans
        self.schedules = schedules
        self.approvals = approvals
        self.products = products
        self.employees = employees
        self.obligations = obligations
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.config = config or get_config()
        self.clock = clock

    @property
    def places(self) -> int:
        return self.config.currency_minor_units

    # Eligibility and application

    def check_eligibility(
        self,
        tenant_id: str,
        employee_id: str,
        product_id: str,
        principal: Number,
        tenure_months: int,
        as_of: Optional[date] = None
    ) -> Tuple[EligibilityResult, EmployeeRecord, LoanProduct]:
        """Run the eligibility rules for a prospective application"""
        employee = self.employees.get_employee(tenant_id, employee_id)
        product = self.products.get_product(tenant_id, product_id)
        existing = self.obligations.get_obligations(tenant_id, employee_id)

        result = validate_application(
            employee,
            product,
            principal,
            tenure_months,
            take_home=employee.take_home(to_decimal(self.config.take_home_estimate_ratio)),
            existing_emi_total=existing.total_emi,
            as_of=as_of or self.clock(),
            affordability_ratio=to_decimal(self.config.max_emi_to_take_home_ratio),
            places=self.places
        )
        return result, employee, product

    def apply(
        self,
        tenant_id: str,
        employee_id: str,
        product_id: str,
        principal: Number,
        tenure_months: int,
        actor: Actor,
        remarks: str = ""
    ) -> Tuple[LoanApplication, EligibilityResult]:
        """
        Create a loan application in Applied status

        Employees apply for themselves; HR may apply on an employee's behalf.

        Returns:
            The new loan and the eligibility result carrying any warnings

        Raises:
            NotAuthorized: If the actor may not apply for this employee
            EligibilityError / ValidationError: If an eligibility rule fails
        """
        if not (actor.role == ActorRole.HR or
                (actor.role == ActorRole.EMPLOYEE and actor.actor_id == employee_id)):
            raise NotAuthorized("Employees may only apply for their own loans", field="employee_id")

        result, employee, product = self.check_eligibility(
            tenant_id, employee_id, product_id, principal, tenure_months
        )
        if not result.valid:
            log_action(logger, "info", "Loan application rejected by eligibility rules",
                       tenant_id=tenant_id, actor=actor.actor_id, action="apply",
                       resource=f"employee:{employee_id}",
                       extra={'errors': [e.to_dict() for e in result.errors]})
            error = result.to_error()
            if result.emi_preview:
                error.context['emi_preview'] = result.emi_preview.to_dict()
            if result.warnings:
                error.context['warnings'] = list(result.warnings)
            raise error

        principal = to_decimal(principal)
        now = datetime.now(timezone.utc)
        loan = LoanApplication(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            employee_id=employee_id,
            product_id=product.id,
            product_code=product.code,
            product_name=product.name,
            applied_principal=principal,
            sanctioned_principal=principal,
            interest_rate_percent=product.interest_rate_percent,
            tenure_months=tenure_months,
            emi_amount=result.emi_preview.emi_amount,
            outstanding_balance=ZERO,
            status=LoanStatus.APPLIED,
            remarks=remarks or "",
            applied_by=actor.actor_id
        )
        self.loans.add(loan)

        log_action(logger, "info", f"Loan {loan.id} applied for {principal} over {tenure_months} months",
                   tenant_id=tenant_id, actor=actor.actor_id, action="apply",
                   resource=f"loan:{loan.id}")
        record_best_effort(
            self.audit_trail, tenant_id, actor.actor_id, AuditEventType.LOAN_APPLIED, "loan", loan.id,
            f"Employee {employee_id} applied for {product.code} loan of {principal}",
            metadata={'principal': principal, 'tenure_months': tenure_months,
                      'emi_amount': loan.emi_amount, 'warnings': result.warnings}
        )
        if employee.manager_id:
            self._notify(self._email_of(tenant_id, employee.manager_id),
                         NotificationType.APPROVAL_REQUIRED, loan, stage="manager approval")
        return loan, result

    # Approval chain

    def decide(
        self,
        tenant_id: str,
        loan_id: str,
        level: Union[ApprovalLevel, int],
        decision: Union[Decision, str],
        actor: Actor,
        remarks: str = "",
        sanctioned_principal: Optional[Number] = None
    ) -> LoanApplication:
        """
        Record one approval-chain decision

        Raises:
            InvalidStateTransition: If the loan is not at ``level``'s stage, or
                changed concurrently
            NotAuthorized: If the actor's role (or reporting line) does not
                match the level
            ValidationError: For a rejection without remarks or an invalid
                sanctioned principal
        """
        level = self._level(level)
        decision = self._decision(decision)
        stage = APPROVAL_STAGES[level]

        loan = self.loans.get(tenant_id, loan_id)
        if loan.status != stage.from_status:
            raise InvalidStateTransition(
                f"Loan {loan_id} is {loan.status.value}; a level {int(level)} decision "
                f"requires {stage.from_status.value}",
                field="level"
            )
        if actor.role != stage.role:
            raise NotAuthorized(
                f"Level {int(level)} decisions require the {stage.role.value} role",
                field="level"
            )
        if actor.actor_id == loan.employee_id:
            raise NotAuthorized("Approvers cannot decide on their own loan", field="actor")
        if level == ApprovalLevel.MANAGER:
            employee = self.employees.get_employee(tenant_id, loan.employee_id)
            if employee.manager_id and employee.manager_id != actor.actor_id:
                raise NotAuthorized("Only the employee's direct manager can decide at level 1",
                                    field="actor")

        remarks = (remarks or "").strip()
        if decision == Decision.REJECTED and not remarks:
            raise ValidationError("Remarks are required when rejecting a loan", field="remarks")

        expected = loan.concurrency_token()
        sanctioned = None
        if sanctioned_principal is not None:
            if level != ApprovalLevel.FINANCE or decision != Decision.APPROVED:
                raise ValidationError("A sanctioned principal can only be set by a Finance approval",
                                      field="sanctioned_principal")
            sanctioned = self._sanctioned_principal(tenant_id, loan, sanctioned_principal)
            loan.sanctioned_principal = sanctioned
            loan.emi_amount = calculate_emi(sanctioned, loan.interest_rate_percent,
                                            loan.tenure_months, self.places)

        new_status = stage.approved_status if decision == Decision.APPROVED else LoanStatus.REJECTED
        if not can_transition(loan.status, new_status):
            raise InvalidStateTransition(
                f"Loan {loan_id} cannot move from {loan.status.value} to {new_status.value}"
            )
        loan.status = new_status
        if remarks:
            loan.remarks = remarks

        now = datetime.now(timezone.utc)
        record = ApprovalRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            loan_id=loan.id,
            approver_id=actor.actor_id,
            approver_role=actor.role,
            level=level,
            decision=decision,
            remarks=remarks,
            approver_name=actor.name,
            sanctioned_principal=loan.sanctioned_principal if level == ApprovalLevel.FINANCE
            and decision == Decision.APPROVED else None
        )

        with self.storage.atomic():
            if not self.loans.compare_and_swap(loan, expected):
                raise InvalidStateTransition(
                    f"Loan {loan_id} was modified concurrently; refresh and retry"
                )
            self.approvals.append(record)

        log_action(logger, "info", f"Loan {loan.id} {decision.value} at level {int(level)}",
                   tenant_id=tenant_id, actor=actor.actor_id, action="decide",
                   resource=f"loan:{loan.id}", extra={'status': loan.status.value})
        self._after_decision(tenant_id, loan, level, decision, actor, remarks)
        return loan

    def _after_decision(self, tenant_id: str, loan: LoanApplication, level: ApprovalLevel,
                        decision: Decision, actor: Actor, remarks: str) -> None:
        if decision == Decision.REJECTED:
            event, notification = AuditEventType.LOAN_REJECTED, NotificationType.LOAN_REJECTED
        elif level == ApprovalLevel.FINANCE:
            event, notification = AuditEventType.LOAN_SANCTIONED, NotificationType.LOAN_SANCTIONED
        else:
            event, notification = AuditEventType.LOAN_APPROVED, NotificationType.LOAN_APPROVED

        record_best_effort(
            self.audit_trail, tenant_id, actor.actor_id, event, "loan", loan.id,
            f"Level {int(level)} {decision.value} by {actor.role.value} {actor.actor_id}",
            metadata={'level': int(level), 'status': loan.status, 'remarks': remarks,
                      'sanctioned_principal': loan.sanctioned_principal,
                      'emi_amount': loan.emi_amount}
        )
        self._notify(self._email_of(tenant_id, loan.employee_id), notification, loan,
                     level=int(level), remarks=remarks or "-")

    def disburse(self, tenant_id: str, loan_id: str, actor: Actor,
                 disbursal_date: Optional[date] = None) -> LoanApplication:
        """
        Disburse a sanctioned loan and persist its full schedule

        The status change and the schedule are written in one storage
        transaction; if either fails neither is kept.

        Raises:
            InvalidStateTransition: If the loan is not FinanceSanctioned
            NotAuthorized: If the actor is not Finance
        """
        loan = self.loans.get(tenant_id, loan_id)
        if not can_transition(loan.status, LoanStatus.DISBURSED):
            raise InvalidStateTransition(
                f"Loan {loan_id} is {loan.status.value}; only finance_sanctioned loans can be disbursed"
            )
        if actor.role != ActorRole.FINANCE:
            raise NotAuthorized("Only Finance can disburse loans", field="actor")

        disbursal_date = disbursal_date or self.clock()
        schedule = build_schedule(loan.sanctioned_principal, loan.interest_rate_percent,
                                  loan.tenure_months, disbursal_date, self.places)

        expected = loan.concurrency_token()
        loan.status = LoanStatus.DISBURSED
        loan.disbursal_date = disbursal_date
        loan.outstanding_balance = loan.sanctioned_principal
        loan.emi_amount = schedule.emi_amount

        now = datetime.now(timezone.utc)
        entries = [
            InstallmentScheduleEntry(
                id=InstallmentScheduleEntry.make_id(loan.id, item.sequence),
                created_at=now,
                updated_at=now,
                tenant_id=tenant_id,
                loan_id=loan.id,
                sequence=item.sequence,
                due_date=item.due_date,
                principal_component=item.principal,
                interest_component=item.interest,
                installment_amount=item.amount,
                outstanding_after=item.outstanding_after
            )
            for item in schedule.installments
        ]

        with self.storage.atomic():
            if not self.loans.compare_and_swap(loan, expected):
                raise InvalidStateTransition(
                    f"Loan {loan_id} was modified concurrently; refresh and retry"
                )
            self.schedules.add_all(entries)

        log_action(logger, "info",
                   f"Loan {loan.id} disbursed: {loan.sanctioned_principal} in {len(entries)} installments",
                   tenant_id=tenant_id, actor=actor.actor_id, action="disburse",
                   resource=f"loan:{loan.id}")
        record_best_effort(
            self.audit_trail, tenant_id, actor.actor_id, AuditEventType.LOAN_DISBURSED, "loan", loan.id,
            f"Disbursed {loan.sanctioned_principal} on {disbursal_date.isoformat()}",
            metadata={'principal': loan.sanctioned_principal, 'emi_amount': loan.emi_amount,
                      'total_interest': schedule.total_interest,
                      'installments': len(entries)}
        )
        self._notify(self._email_of(tenant_id, loan.employee_id), NotificationType.LOAN_DISBURSED, loan)
        return loan

    def update_remarks(self, tenant_id: str, loan_id: str, remarks: str,
                       actor: Actor) -> LoanApplication:
        """Replace a loan's remarks; allowed in every status, terminal ones included"""
        loan = self.loans.get(tenant_id, loan_id)
        if actor.role == ActorRole.EMPLOYEE and actor.actor_id != loan.employee_id:
            raise NotAuthorized("Employees may only annotate their own loans", field="actor")

        expected = loan.concurrency_token()
        loan.remarks = remarks or ""
        if not self.loans.compare_and_swap(loan, expected):
            raise InvalidStateTransition(f"Loan {loan_id} was modified concurrently; refresh and retry")

        record_best_effort(
            self.audit_trail, tenant_id, actor.actor_id, AuditEventType.LOAN_REMARKS_UPDATED,
            "loan", loan.id, "Remarks updated", metadata={'remarks': loan.remarks}
        )
        return loan

    # Queries

    def get_loan(self, tenant_id: str, loan_id: str) -> LoanApplication:
        return self.loans.get(tenant_id, loan_id)

    def list_loans(self, tenant_id: str, status: Optional[LoanStatus] = None,
                   employee_id: Optional[str] = None,
                   product_id: Optional[str] = None) -> List[LoanApplication]:
        return self.loans.list(tenant_id, status=status, employee_id=employee_id,
                               product_id=product_id)

    def get_approval_history(self, tenant_id: str, loan_id: str) -> List[ApprovalRecord]:
        self.loans.get(tenant_id, loan_id)
        return self.approvals.list_for_loan(tenant_id, loan_id)

    def get_approval_queue(self, tenant_id: str, role: ActorRole,
                           actor_id: Optional[str] = None) -> List[LoanApplication]:
        """
        Loans waiting for a decision by ``role``

        For managers with ``actor_id`` given, only loans of their direct
        reports (or of employees without a recorded manager) are returned.
        """
        stage = next((s for s in APPROVAL_STAGES.values() if s.role == role), None)
        if stage is None:
            return []
        waiting = self.loans.list(tenant_id, status=stage.from_status)
        if role != ActorRole.MANAGER or not actor_id:
            return waiting

        queue = []
        for loan in waiting:
            try:
                employee = self.employees.get_employee(tenant_id, loan.employee_id)
            except LoanError:
                continue
            if not employee.manager_id or employee.manager_id == actor_id:
                queue.append(loan)
        return queue

    def get_schedule(self, tenant_id: str, loan_id: str) -> List[InstallmentScheduleEntry]:
        self.loans.get(tenant_id, loan_id)
        return self.schedules.list_for_loan(tenant_id, loan_id)

    def get_schedule_summary(self, tenant_id: str, loan_id: str) -> ScheduleSummary:
        loan = self.loans.get(tenant_id, loan_id)
        return ScheduleSummary.build(loan, self.schedules.list_for_loan(tenant_id, loan_id))

    # Helpers

    @staticmethod
    def _level(level: Union[ApprovalLevel, int]) -> ApprovalLevel:
        try:
            return ApprovalLevel(level)
        except ValueError:
            raise ValidationError(f"Approval level must be 1, 2 or 3, got {level!r}", field="level")

    @staticmethod
    def _decision(decision: Union[Decision, str]) -> Decision:
        if isinstance(decision, Decision):
            return decision
        try:
            return Decision(str(decision).lower())
        except ValueError:
            raise ValidationError(f"Decision must be approved or rejected, got {decision!r}",
                                  field="decision")

    def _sanctioned_principal(self, tenant_id: str, loan: LoanApplication,
                              value: Number) -> Decimal:
        try:
            sanctioned = to_decimal(value)
        except ValueError:
            raise ValidationError("Sanctioned principal must be a decimal amount",
                                  field="sanctioned_principal")
        if not sanctioned.is_finite() or sanctioned <= ZERO:
            raise ValidationError("Sanctioned principal must be greater than zero",
                                  field="sanctioned_principal")
        product = self.products.get_product(tenant_id, loan.product_id)
        if sanctioned > product.max_principal:
            raise ValidationError(
                f"Sanctioned principal cannot exceed the product maximum {product.max_principal}",
                field="sanctioned_principal"
            )
        return sanctioned

    def _email_of(self, tenant_id: str, employee_id: str) -> Optional[str]:
        try:
            return self.employees.get_employee(tenant_id, employee_id).email
        except Exception:
            logger.warning(f"No notification address for employee {employee_id}", exc_info=True)
            return None

    def _notify(self, recipient: Optional[str], notification_type: NotificationType,
                loan: LoanApplication, **context: Any) -> None:
        if self.notifier is None:
            return
        values: Dict[str, Any] = {
            'loan_id': loan.id,
            'employee_id': loan.employee_id,
            'product_name': loan.product_name,
            'principal': loan.sanctioned_principal,
            'interest_rate': loan.interest_rate_percent,
            'tenure_months': loan.tenure_months,
            'emi_amount': loan.emi_amount,
            'status': loan.status.value,
            'disbursal_date': loan.disbursal_date.isoformat() if loan.disbursal_date else "-",
        }
        values.update(context)
        self.notifier.dispatch(recipient, notification_type, values)
