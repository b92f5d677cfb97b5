"""
Repayment Processing Module

Applies payroll-cycle EMI deductions to an employee's repaying loans, marks
missed installments overdue and handles Finance waivers.

An installment is claimed with a compare-and-set on its Pending status, and
the claim commits together with the loan's balance update. A payroll cycle
replayed for the same employee therefore finds nothing left to claim and
deducts nothing.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .audit import AuditEventType, AuditSink, record_best_effort
from .config import StaffLoansConfig, get_config
from .employees import EmployeeDirectory
from .errors import InvalidStateTransition, LoanError, NotAuthorized, ValidationError
from .loans import (
    Actor, ActorRole, InstallmentScheduleEntry, InstallmentStatus, LoanApplication, LoanStatus,
    INSTALLMENT_TRANSITIONS, REPAYING_STATUSES, can_transition
)
from .logging_config import get_logger, log_action
from .money import ZERO, sum_money
from .notifications import NotificationDispatcher, NotificationType
from .repositories import LoanRepository, ScheduleRepository
from .storage import StorageInterface


logger = get_logger("repayment")


def _today() -> date:
    return datetime.now(timezone.utc).date()


class _LoanVersionConflict(Exception):
    """Loan changed between read and write; the transaction is rolled back and retried"""


@dataclass
class RepaidInstallment:
    """One installment recovered in a payroll cycle"""
    loan_id: str
    sequence: int
    amount: Decimal
    principal: Decimal
    interest: Decimal
    outstanding_after: Decimal
    loan_status: LoanStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'amount': str(self.amount),
            'principal': str(self.principal),
            'interest': str(self.interest),
            'outstanding_after': str(self.outstanding_after),
            'loan_status': self.loan_status.value,
        }


@dataclass
class RepaymentResult:
    """Outcome of one employee's payroll cycle"""
    employee_id: str
    cycle_date: date
    payroll_cycle_id: str
    processed: List[RepaidInstallment] = field(default_factory=list)
    skipped_loan_ids: List[str] = field(default_factory=list)

    @property
    def total_deduction(self) -> Decimal:
        return sum_money(item.amount for item in self.processed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'employee_id': self.employee_id,
            'cycle_date': self.cycle_date.isoformat(),
            'payroll_cycle_id': self.payroll_cycle_id,
            'processed': [item.to_dict() for item in self.processed],
            'skipped_loan_ids': list(self.skipped_loan_ids),
            'total_deduction': str(self.total_deduction),
        }


@dataclass
class DeductionLine:
    """Installment a payroll cycle would recover"""
    loan_id: str
    product_code: str
    sequence: int
    due_date: date
    amount: Decimal
    principal: Decimal
    interest: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'product_code': self.product_code,
            'sequence': self.sequence,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount),
            'principal': str(self.principal),
            'interest': str(self.interest),
        }


@dataclass
class DeductionPreview:
    """Read-only payroll preview of an employee's loan deductions"""
    employee_id: str
    cycle_date: date
    lines: List[DeductionLine] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum_money(line.amount for line in self.lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'employee_id': self.employee_id,
            'cycle_date': self.cycle_date.isoformat(),
            'lines': [line.to_dict() for line in self.lines],
            'total': str(self.total),
        }


@dataclass
class CycleResult:
    """Outcome of a payroll cycle over many employees"""
    cycle_date: date
    payroll_cycle_id: str
    results: Dict[str, RepaymentResult] = field(default_factory=dict)
    failures: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def total_deduction(self) -> Decimal:
        return sum_money(r.total_deduction for r in self.results.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cycle_date': self.cycle_date.isoformat(),
            'payroll_cycle_id': self.payroll_cycle_id,
            'results': {k: v.to_dict() for k, v in self.results.items()},
            'failures': dict(self.failures),
            'total_deduction': str(self.total_deduction),
        }


def default_cycle_id(cycle_date: date) -> str:
    """Payroll cycle reference used when the orchestrator supplies none"""
    return cycle_date.strftime("%Y-%m")


def _ready_to_close(loan: LoanApplication, schedule: Iterable[InstallmentScheduleEntry]) -> bool:
    return loan.outstanding_balance <= ZERO and all(e.is_settled for e in schedule)


# Picks the installment to settle from a loan's schedule, None to skip the loan
Picker = Callable[[LoanApplication, List[InstallmentScheduleEntry]],
                  Optional[InstallmentScheduleEntry]]


class RepaymentProcessor:
    """
    Applies payroll deductions to loan schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanRepository,
        schedules: ScheduleRepository,
        employees: EmployeeDirectory,
        audit_trail: Optional[AuditSink] = None,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[StaffLoansConfig] = None,
        clock: Callable[[], date] = _today
    ):
        self.storage = storage
        self.loans = loans
        self.schedules = schedules
        self.employees = employees
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.config = config or get_config()
        self.clock = clock

    def process_repayment(self, tenant_id: str, employee_id: str, cycle_date: date,
                          payroll_cycle_id: Optional[str] = None) -> RepaymentResult:
        """
        Recover this cycle's installment of each of the employee's repaying loans

        Loans with no Pending installment due in the cycle's month are skipped.
        Calling again for the same employee and cycle changes nothing.

        Raises:
            NotFound: If the employee is unknown
            TenantMismatch: If the employee belongs to another tenant
        """
        self.employees.get_employee(tenant_id, employee_id)
        cycle_id = payroll_cycle_id or default_cycle_id(cycle_date)
        result = RepaymentResult(employee_id=employee_id, cycle_date=cycle_date,
                                 payroll_cycle_id=cycle_id)

        def pick_due(loan: LoanApplication,
                     schedule: List[InstallmentScheduleEntry]) -> Optional[InstallmentScheduleEntry]:
            return next((e for e in schedule
                         if e.status == InstallmentStatus.PENDING and e.is_due_in(cycle_date)), None)

        def mark_paid(entry: InstallmentScheduleEntry) -> InstallmentScheduleEntry:
            return replace(entry, status=InstallmentStatus.PAID, paid_date=cycle_date,
                           paid_amount=entry.installment_amount, payroll_cycle_id=cycle_id)

        for loan in self.loans.list_in_statuses(tenant_id, REPAYING_STATUSES, employee_id):
            settled = self._settle(tenant_id, loan.id, pick_due, mark_paid,
                                   closure_date=cycle_date, activate=True)
            if settled is None:
                result.skipped_loan_ids.append(loan.id)
                continue

            updated, entry, previous_status = settled
            result.processed.append(RepaidInstallment(
                loan_id=updated.id,
                sequence=entry.sequence,
                amount=entry.installment_amount,
                principal=entry.principal_component,
                interest=entry.interest_component,
                outstanding_after=updated.outstanding_balance,
                loan_status=updated.status
            ))
            self._after_payment(tenant_id, updated, entry, previous_status, cycle_id)

        log_action(logger, "info",
                   f"Payroll cycle {cycle_id}: {len(result.processed)} installments recovered, "
                   f"{len(result.skipped_loan_ids)} loans skipped",
                   tenant_id=tenant_id, action="process_repayment",
                   resource=f"employee:{employee_id}",
                   extra={'total_deduction': str(result.total_deduction)})
        return result

    def preview_deductions(self, tenant_id: str, employee_id: str,
                           cycle_date: date) -> DeductionPreview:
        """What ``process_repayment`` would deduct for the cycle, without changing anything"""
        self.employees.get_employee(tenant_id, employee_id)
        preview = DeductionPreview(employee_id=employee_id, cycle_date=cycle_date)
        for loan in self.loans.list_in_statuses(tenant_id, REPAYING_STATUSES, employee_id):
            for entry in self.schedules.list_for_loan(tenant_id, loan.id):
                if entry.status == InstallmentStatus.PENDING and entry.is_due_in(cycle_date):
                    preview.lines.append(DeductionLine(
                        loan_id=loan.id,
                        product_code=loan.product_code,
                        sequence=entry.sequence,
                        due_date=entry.due_date,
                        amount=entry.installment_amount,
                        principal=entry.principal_component,
                        interest=entry.interest_component
                    ))
                    break
        return preview

    def process_cycle(self, tenant_id: str, employee_ids: Iterable[str], cycle_date: date,
                      payroll_cycle_id: Optional[str] = None,
                      max_workers: Optional[int] = None) -> CycleResult:
        """
        Run ``process_repayment`` for many employees in parallel

        Employees share no loan state, so each runs on its own worker. A
        failing employee is reported in ``failures`` and the rest continue.
        """
        cycle_id = payroll_cycle_id or default_cycle_id(cycle_date)
        employee_ids = list(dict.fromkeys(employee_ids))
        cycle = CycleResult(cycle_date=cycle_date, payroll_cycle_id=cycle_id)
        if not employee_ids:
            return cycle

        workers = max_workers or self.config.batch_max_workers
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="loan-repay") as executor:
            futures = {
                employee_id: executor.submit(self.process_repayment, tenant_id, employee_id,
                                             cycle_date, cycle_id)
                for employee_id in employee_ids
            }
            for employee_id, future in futures.items():
                try:
                    cycle.results[employee_id] = future.result()
                except LoanError as e:
                    cycle.failures[employee_id] = e.to_dict()
                    logger.warning(f"Repayment for employee {employee_id} failed: {e.message}",
                                   extra={'tenant_id': tenant_id, 'action': 'process_cycle'})
                except Exception as e:
                    cycle.failures[employee_id] = {'code': 'InternalError', 'message': str(e),
                                                   'details': []}
                    logger.error(f"Repayment for employee {employee_id} raised unexpectedly",
                                 exc_info=True,
                                 extra={'tenant_id': tenant_id, 'action': 'process_cycle'})

        log_action(logger, "info",
                   f"Payroll cycle {cycle_id} processed for {len(employee_ids)} employees, "
                   f"{len(cycle.failures)} failed",
                   tenant_id=tenant_id, action="process_cycle",
                   extra={'total_deduction': str(cycle.total_deduction)})
        return cycle

    def mark_overdue(self, tenant_id: str, as_of: date) -> List[InstallmentScheduleEntry]:
        """
        Mark Pending installments due before ``as_of``'s month as Overdue

        Balances are not touched; the status only feeds collections and
        settlement reporting.
        """
        marked = []
        for entry in self.schedules.list_by_status(tenant_id, InstallmentStatus.PENDING):
            if (entry.due_date.year, entry.due_date.month) >= (as_of.year, as_of.month):
                continue
            overdue = replace(entry, status=InstallmentStatus.OVERDUE)
            if self.schedules.claim(overdue, InstallmentStatus.PENDING):
                marked.append(overdue)
                record_best_effort(
                    self.audit_trail, tenant_id, None, AuditEventType.INSTALLMENT_OVERDUE,
                    "installment", overdue.id,
                    f"Installment {overdue.sequence} due {overdue.due_date.isoformat()} is overdue",
                    metadata={'loan_id': overdue.loan_id, 'amount': overdue.installment_amount}
                )

        log_action(logger, "info", f"Overdue sweep as of {as_of.isoformat()} marked {len(marked)} installments",
                   tenant_id=tenant_id, action="mark_overdue")
        return marked

    def waive_installment(self, tenant_id: str, loan_id: str, sequence: int, actor: Actor,
                          remarks: str = "", as_of: Optional[date] = None) -> Tuple[LoanApplication, InstallmentScheduleEntry]:
        """
        Waive a Pending or Overdue installment

        The waived principal is written off the outstanding balance and the
        loan closes if nothing else is owed.

        Raises:
            NotAuthorized: If the actor is not Finance
            InvalidStateTransition: If the loan is not repaying or the
                installment is already Paid or Waived
        """
        if actor.role != ActorRole.FINANCE:
            raise NotAuthorized("Only Finance can waive installments", field="actor")
        remarks = (remarks or "").strip()
        if not remarks:
            raise ValidationError("Remarks are required when waiving an installment", field="remarks")

        # Surface NotFound / TenantMismatch before entering the retry loop
        self.schedules.get(tenant_id, loan_id, sequence)

        def pick(loan: LoanApplication,
                 schedule: List[InstallmentScheduleEntry]) -> Optional[InstallmentScheduleEntry]:
            entry = next(e for e in schedule if e.sequence == sequence)
            if InstallmentStatus.WAIVED not in INSTALLMENT_TRANSITIONS[entry.status]:
                raise InvalidStateTransition(
                    f"Installment {sequence} of loan {loan_id} is {entry.status.value} and cannot be waived",
                    field="sequence"
                )
            return entry

        def waive(entry: InstallmentScheduleEntry) -> InstallmentScheduleEntry:
            return replace(entry, status=InstallmentStatus.WAIVED, remarks=remarks)

        settled = self._settle(tenant_id, loan_id, pick, waive,
                               closure_date=as_of or self.clock(),
                               activate=False, require_repaying=True)
        loan, entry, previous_status = settled

        log_action(logger, "info", f"Installment {sequence} of loan {loan_id} waived",
                   tenant_id=tenant_id, actor=actor.actor_id, action="waive_installment",
                   resource=f"loan:{loan_id}")
        record_best_effort(
            self.audit_trail, tenant_id, actor.actor_id, AuditEventType.INSTALLMENT_WAIVED,
            "installment", entry.id, f"Installment {sequence} waived: {remarks}",
            metadata={'loan_id': loan_id, 'principal': entry.principal_component,
                      'outstanding_after': loan.outstanding_balance}
        )
        self._notify(tenant_id, loan, NotificationType.INSTALLMENT_WAIVED,
                     sequence=sequence, outstanding=loan.outstanding_balance, remarks=remarks)
        if loan.status == LoanStatus.CLOSED and previous_status != LoanStatus.CLOSED:
            self._after_close(tenant_id, loan, actor.actor_id)
        return loan, entry

    def _settle(self, tenant_id: str, loan_id: str, pick: Picker,
                settle: Callable[[InstallmentScheduleEntry], InstallmentScheduleEntry],
                closure_date: date, activate: bool, require_repaying: bool = False
                ) -> Optional[Tuple[LoanApplication, InstallmentScheduleEntry, LoanStatus]]:
        """
        Settle one installment and update its loan in a single transaction

        Returns (loan, settled entry, loan status before), or None when the
        loan is no longer repaying, ``pick`` finds nothing, or another writer
        settled the installment first.
        """
        for _ in range(self.config.repayment_max_retries + 1):
            loan = self.loans.get(tenant_id, loan_id)
            if not loan.is_repaying:
                if require_repaying:
                    raise InvalidStateTransition(
                        f"Loan {loan_id} is {loan.status.value}; only repaying loans accept this action"
                    )
                return None

            schedule = self.schedules.list_for_loan(tenant_id, loan_id)
            entry = pick(loan, schedule)
            if entry is None:
                return None

            previous_status = loan.status
            expected_status = entry.status
            expected = loan.concurrency_token()
            settled = settle(entry)

            loan.outstanding_balance -= entry.principal_component
            if activate and can_transition(loan.status, LoanStatus.ACTIVE):
                loan.status = LoanStatus.ACTIVE
            remaining = [settled if e.id == settled.id else e for e in schedule]
            if _ready_to_close(loan, remaining):
                loan.status = LoanStatus.CLOSED
                loan.closure_date = closure_date
                loan.outstanding_balance = ZERO

            try:
                with self.storage.atomic():
                    if not self.schedules.claim(settled, expected_status):
                        # Already settled by a concurrent or earlier run
                        return None
                    if not self.loans.compare_and_swap(loan, expected):
                        raise _LoanVersionConflict()
            except _LoanVersionConflict:
                logger.info(f"Loan {loan_id} changed during settlement, retrying",
                            extra={'tenant_id': tenant_id, 'action': 'settle'})
                continue

            return loan, settled, previous_status

        raise InvalidStateTransition(
            f"Loan {loan_id} kept changing during settlement; retry the operation"
        )

    def _after_payment(self, tenant_id: str, loan: LoanApplication,
                       entry: InstallmentScheduleEntry, previous_status: LoanStatus,
                       cycle_id: str) -> None:
        record_best_effort(
            self.audit_trail, tenant_id, None, AuditEventType.INSTALLMENT_PAID, "installment", entry.id,
            f"Installment {entry.sequence} of loan {loan.id} recovered in payroll cycle {cycle_id}",
            metadata={'loan_id': loan.id, 'amount': entry.installment_amount,
                      'principal': entry.principal_component,
                      'outstanding_after': loan.outstanding_balance}
        )
        if previous_status == LoanStatus.DISBURSED:
            record_best_effort(
                self.audit_trail, tenant_id, None, AuditEventType.LOAN_ACTIVATED, "loan", loan.id,
                "First installment recovered; loan active"
            )
        self._notify(tenant_id, loan, NotificationType.EMI_DEDUCTED, sequence=entry.sequence,
                     amount=entry.installment_amount, cycle=cycle_id,
                     outstanding=loan.outstanding_balance)
        if loan.status == LoanStatus.CLOSED:
            self._after_close(tenant_id, loan, None)

    def _after_close(self, tenant_id: str, loan: LoanApplication, actor_id: Optional[str]) -> None:
        log_action(logger, "info", f"Loan {loan.id} closed", tenant_id=tenant_id,
                   actor=actor_id, action="close", resource=f"loan:{loan.id}")
        record_best_effort(
            self.audit_trail, tenant_id, actor_id, AuditEventType.LOAN_CLOSED, "loan", loan.id,
            f"Loan closed on {loan.closure_date.isoformat()}"
        )
        self._notify(tenant_id, loan, NotificationType.LOAN_CLOSED,
                     closure_date=loan.closure_date.isoformat())

    def _notify(self, tenant_id: str, loan: LoanApplication,
                notification_type: NotificationType, **context: Any) -> None:
        if self.notifier is None:
            return
        try:
            recipient = self.employees.get_employee(tenant_id, loan.employee_id).email
        except Exception:
            logger.warning(f"No notification address for employee {loan.employee_id}", exc_info=True)
            return
        values = {'loan_id': loan.id, 'employee_id': loan.employee_id}
        values.update(context)
        self.notifier.dispatch(recipient, notification_type, values)
