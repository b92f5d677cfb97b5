"""
Loan Service Module

Tenant-scoped facade over the loan engine. Business-rule and validation
failures come back as ``OperationResult`` failures with field-level detail;
only infrastructure errors (storage unavailable and the like) propagate.
"""

from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from .audit import AuditEvent, AuditSink, AuditTrail
from .config import StaffLoansConfig, get_config
from .eligibility import EligibilityResult
from .employees import (
    EmployeeDirectory, EmployeeRecord, EmployeeStatus, InMemoryEmployeeDirectory,
    StorageEmployeeDirectory
)
from .errors import ErrorCode, LoanError, OperationResult, ValidationError
from .loans import Actor, LoanStatus
from .logging_config import get_logger, log_action
from .money import Number, to_decimal
from .notifications import LogNotifier, NotificationDispatcher, WebhookNotifier
from .obligations import ObligationAggregator
from .products import ProductCatalog
from .repayment import RepaymentProcessor
from .repositories import ApprovalRecordRepository, LoanRepository, ScheduleRepository
from .storage import StorageInterface, create_storage
from .tenancy import resolve_tenant
from .workflow import LoanWorkflow


logger = get_logger("service")

T = TypeVar("T")


class LoanService:
    """
    Entry point used by the HTTP layer and the payroll orchestrator
    """

    def __init__(
        self,
        storage: StorageInterface,
        employees: EmployeeDirectory,
        audit_trail: Optional[AuditSink] = None,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[StaffLoansConfig] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.storage = storage
        self.employees = employees
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.config = config or get_config()

        self.loan_repository = LoanRepository(storage)
        self.schedule_repository = ScheduleRepository(storage)
        self.approval_repository = ApprovalRecordRepository(storage)
        self.products = ProductCatalog(storage, audit_trail)
        self.obligations = ObligationAggregator(self.loan_repository, self.schedule_repository,
                                                employees)

        clock_kwargs = {'clock': clock} if clock else {}
        self.workflow = LoanWorkflow(
            storage,
            self.loan_repository,
            self.schedule_repository,
            self.approval_repository,
            self.products,
            employees,
            self.obligations,
            audit_trail=audit_trail,
            notifier=notifier,
            config=self.config,
            **clock_kwargs
        )
        self.repayments = RepaymentProcessor(
            storage,
            self.loan_repository,
            self.schedule_repository,
            employees=employees,
            audit_trail=audit_trail,
            notifier=notifier,
            config=self.config,
            **clock_kwargs
        )

    @classmethod
    def from_config(cls, config: Optional[StaffLoansConfig] = None,
                    employees: Optional[EmployeeDirectory] = None) -> 'LoanService':
        """Wire storage, audit trail and notifications from configuration"""
        config = config or get_config()
        storage = create_storage(config.database_url)
        audit_trail = AuditTrail(storage) if config.enable_audit_logging else None

        if config.notification_webhook_url:
            sink = WebhookNotifier(config.notification_webhook_url, config.notification_timeout)
        else:
            sink = LogNotifier()
        notifier = NotificationDispatcher(
            sink,
            max_workers=2 if config.notifications_async else None,
            enabled=config.enable_notifications
        )

        return cls(
            storage,
            employees or StorageEmployeeDirectory(storage),
            audit_trail=audit_trail,
            notifier=notifier,
            config=config
        )

    def close(self) -> None:
        """Flush notifications and release storage"""
        if self.notifier:
            self.notifier.shutdown(wait=True)
        self.storage.close()

    def _run(self, operation: str, tenant_id: Optional[str],
             fn: Callable[[str], T], warnings: Optional[Callable[[T], List[str]]] = None
             ) -> OperationResult:
        """Resolve the tenant, run ``fn`` and convert loan errors into a failed result"""
        try:
            tenant = resolve_tenant(tenant_id)
            value = fn(tenant)
        except LoanError as e:
            self._log_failure(operation, tenant_id, e)
            return OperationResult.failure(e, warnings=list(e.context.get('warnings', [])))
        return OperationResult.success(value, warnings(value) if warnings else None)

    @staticmethod
    def _log_failure(operation: str, tenant_id: Optional[str], error: LoanError) -> None:
        if error.code == ErrorCode.TENANT_MISMATCH:
            level = "error"
        elif error.code == ErrorCode.NOT_AUTHORIZED:
            level = "warning"
        else:
            level = "info"
        log_action(logger, level, f"{operation} failed: {error.message}",
                   tenant_id=tenant_id, action=operation,
                   extra={'code': error.code.value})

    # Product catalog

    def create_product(self, tenant_id: Optional[str], code: str, name: str,
                       interest_rate_percent: Number, max_principal: Number,
                       max_tenure_months: int, min_service_years: Number = 0,
                       eligible_grades: Optional[List[str]] = None, description: str = "",
                       actor: Optional[Actor] = None) -> OperationResult:
        return self._run("create_product", tenant_id, lambda t: self.products.create_product(
            t, code, name, interest_rate_percent, max_principal, max_tenure_months,
            min_service_years=min_service_years, eligible_grades=eligible_grades,
            description=description, actor_id=actor.actor_id if actor else None
        ))

    def get_product(self, tenant_id: Optional[str], product_id: str) -> OperationResult:
        return self._run("get_product", tenant_id,
                         lambda t: self.products.get_product(t, product_id))

    def list_products(self, tenant_id: Optional[str], active_only: bool = False) -> OperationResult:
        return self._run("list_products", tenant_id,
                         lambda t: self.products.list_products(t, active_only=active_only))

    def set_product_active(self, tenant_id: Optional[str], product_id: str, is_active: bool,
                           actor: Optional[Actor] = None) -> OperationResult:
        return self._run("set_product_active", tenant_id, lambda t: self.products.set_active(
            t, product_id, is_active, actor_id=actor.actor_id if actor else None
        ))

    def update_product_description(self, tenant_id: Optional[str], product_id: str,
                                   description: str, actor: Optional[Actor] = None) -> OperationResult:
        return self._run("update_product_description", tenant_id, lambda t: self.products.update_description(
            t, product_id, description, actor_id=actor.actor_id if actor else None
        ))

    # Loan lifecycle

    def check_eligibility(self, tenant_id: Optional[str], employee_id: str, product_id: str,
                          principal: Number, tenure_months: int,
                          as_of: Optional[date] = None) -> OperationResult:
        """Dry-run the eligibility rules; the value is the full EligibilityResult"""
        def run(t: str) -> EligibilityResult:
            result, _, _ = self.workflow.check_eligibility(t, employee_id, product_id,
                                                           principal, tenure_months, as_of)
            return result
        return self._run("check_eligibility", tenant_id, run, warnings=lambda r: list(r.warnings))

    def apply(self, tenant_id: Optional[str], employee_id: str, product_id: str,
              principal: Number, tenure_months: int, actor: Actor,
              remarks: str = "") -> OperationResult:
        def run(t: str) -> Dict[str, Any]:
            loan, result = self.workflow.apply(t, employee_id, product_id, principal,
                                               tenure_months, actor, remarks)
            return {'loan': loan, 'eligibility': result}

        outcome = self._run("apply", tenant_id, run,
                            warnings=lambda v: list(v['eligibility'].warnings))
        if outcome.ok:
            outcome.value = outcome.value['loan']
        return outcome

    def decide(self, tenant_id: Optional[str], loan_id: str, level: int, decision: str,
               actor: Actor, remarks: str = "",
               sanctioned_principal: Optional[Number] = None) -> OperationResult:
        return self._run("decide", tenant_id, lambda t: self.workflow.decide(
            t, loan_id, level, decision, actor, remarks, sanctioned_principal
        ))

    def disburse(self, tenant_id: Optional[str], loan_id: str, actor: Actor,
                 disbursal_date: Optional[date] = None) -> OperationResult:
        return self._run("disburse", tenant_id,
                         lambda t: self.workflow.disburse(t, loan_id, actor, disbursal_date))

    def update_remarks(self, tenant_id: Optional[str], loan_id: str, remarks: str,
                       actor: Actor) -> OperationResult:
        return self._run("update_remarks", tenant_id,
                         lambda t: self.workflow.update_remarks(t, loan_id, remarks, actor))

    def get_loan(self, tenant_id: Optional[str], loan_id: str) -> OperationResult:
        return self._run("get_loan", tenant_id, lambda t: self.workflow.get_loan(t, loan_id))

    def list_loans(self, tenant_id: Optional[str], status: Optional[LoanStatus] = None,
                   employee_id: Optional[str] = None,
                   product_id: Optional[str] = None) -> OperationResult:
        return self._run("list_loans", tenant_id, lambda t: self.workflow.list_loans(
            t, status=status, employee_id=employee_id, product_id=product_id
        ))

    def get_approval_history(self, tenant_id: Optional[str], loan_id: str) -> OperationResult:
        return self._run("get_approval_history", tenant_id,
                         lambda t: self.workflow.get_approval_history(t, loan_id))

    def get_approval_queue(self, tenant_id: Optional[str], actor: Actor) -> OperationResult:
        return self._run("get_approval_queue", tenant_id, lambda t: self.workflow.get_approval_queue(
            t, actor.role, actor.actor_id
        ))

    def get_schedule(self, tenant_id: Optional[str], loan_id: str) -> OperationResult:
        """The loan's installments with paid / pending / overdue totals"""
        return self._run("get_schedule", tenant_id,
                         lambda t: self.workflow.get_schedule_summary(t, loan_id))

    # Obligations

    def get_obligations(self, tenant_id: Optional[str], employee_id: str) -> OperationResult:
        return self._run("get_obligations", tenant_id,
                         lambda t: self.obligations.get_obligations(t, employee_id))

    def get_settlement_recovery(self, tenant_id: Optional[str], employee_id: str) -> OperationResult:
        return self._run("get_settlement_recovery", tenant_id,
                         lambda t: self.obligations.get_settlement_recovery(t, employee_id))

    def get_portfolio_summary(self, tenant_id: Optional[str]) -> OperationResult:
        return self._run("get_portfolio_summary", tenant_id,
                         lambda t: self.obligations.get_portfolio_summary(t))

    # Payroll integration

    def process_repayment(self, tenant_id: Optional[str], employee_id: str, cycle_date: date,
                          payroll_cycle_id: Optional[str] = None) -> OperationResult:
        return self._run("process_repayment", tenant_id, lambda t: self.repayments.process_repayment(
            t, employee_id, cycle_date, payroll_cycle_id
        ))

    def preview_deductions(self, tenant_id: Optional[str], employee_id: str,
                           cycle_date: date) -> OperationResult:
        return self._run("preview_deductions", tenant_id, lambda t: self.repayments.preview_deductions(
            t, employee_id, cycle_date
        ))

    def process_cycle(self, tenant_id: Optional[str], employee_ids: Iterable[str], cycle_date: date,
                      payroll_cycle_id: Optional[str] = None,
                      max_workers: Optional[int] = None) -> OperationResult:
        return self._run("process_cycle", tenant_id, lambda t: self.repayments.process_cycle(
            t, employee_ids, cycle_date, payroll_cycle_id, max_workers
        ))

    def mark_overdue(self, tenant_id: Optional[str], as_of: date) -> OperationResult:
        return self._run("mark_overdue", tenant_id, lambda t: self.repayments.mark_overdue(t, as_of))

    def waive_installment(self, tenant_id: Optional[str], loan_id: str, sequence: int,
                          actor: Actor, remarks: str = "") -> OperationResult:
        return self._run("waive_installment", tenant_id, lambda t: self.repayments.waive_installment(
            t, loan_id, sequence, actor, remarks
        ))

    # Employee master data

    def get_employee(self, tenant_id: Optional[str], employee_id: str) -> OperationResult:
        return self._run("get_employee", tenant_id,
                         lambda t: self.employees.get_employee(t, employee_id))

    def sync_employee(self, tenant_id: Optional[str], employee_id: str, join_date: date,
                      status: str = EmployeeStatus.ACTIVE.value, grade: Optional[str] = None,
                      estimated_take_home: Optional[Number] = None,
                      monthly_salary: Optional[Number] = None, email: Optional[str] = None,
                      manager_id: Optional[str] = None, name: Optional[str] = None) -> OperationResult:
        """Insert or replace the employee record pushed by the HR platform"""
        def run(t: str) -> EmployeeRecord:
            if not isinstance(self.employees, (InMemoryEmployeeDirectory, StorageEmployeeDirectory)):
                raise ValidationError("Employee directory is read-only", field="employee_id")
            try:
                employee_status = EmployeeStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown employee status: {status}", field="status")
            record = EmployeeRecord.create(
                t, employee_id, join_date,
                status=employee_status,
                grade=grade,
                estimated_take_home=_optional_money(estimated_take_home, "estimated_take_home"),
                monthly_salary=_optional_money(monthly_salary, "monthly_salary"),
                email=email,
                manager_id=manager_id,
                name=name
            )
            return self.employees.upsert_employee(record)
        return self._run("sync_employee", tenant_id, run)

    # Audit trail

    def get_audit_events(self, tenant_id: Optional[str], entity_type: str,
                         entity_id: str) -> OperationResult:
        """The tenant's audit events for one entity, oldest first"""
        def run(t: str) -> List[AuditEvent]:
            if not isinstance(self.audit_trail, AuditTrail):
                return []
            events = self.audit_trail.get_events_for_entity(entity_type, entity_id)
            return [e for e in events if e.tenant_id == t]
        return self._run("get_audit_events", tenant_id, run)

    def verify_audit_integrity(self) -> Dict[str, Any]:
        """Check the audit hash chain; an absent trail is reported as disabled"""
        if not isinstance(self.audit_trail, AuditTrail):
            return {'valid': True, 'enabled': False, 'total_events': 0}
        result = self.audit_trail.verify_integrity()
        result['enabled'] = True
        return result


def _optional_money(value: Optional[Number], field_name: str):
    if value is None:
        return None
    try:
        amount = to_decimal(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(str(e), field=field_name)
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative", field=field_name)
    return amount
