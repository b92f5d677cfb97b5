"""
Loan Repositories Module

Persistence for the loan aggregate, injected into the workflow, repayment
processor and obligation queries. Every read is tenant-scoped: a record owned
by another tenant raises TenantMismatch rather than disappearing.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .errors import NotFound, ValidationError
from .loans import (
    ApprovalRecord, InstallmentScheduleEntry, InstallmentStatus, LoanApplication, LoanStatus
)
from .storage import StorageInterface
from .tenancy import ensure_same_tenant


class LoanRepository:
    """Stores loan applications with optimistic concurrency"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "loan_applications"

    def add(self, loan: LoanApplication) -> LoanApplication:
        self.storage.save(self.table_name, loan.id, loan.to_dict())
        return loan

    def get(self, tenant_id: str, loan_id: str) -> LoanApplication:
        """
        Load a loan owned by the tenant

        Raises:
            NotFound: If the loan does not exist
            TenantMismatch: If another tenant owns the loan
        """
        data = self.storage.load(self.table_name, loan_id)
        if not data:
            raise NotFound(f"Loan {loan_id} not found", field="loan_id")
        ensure_same_tenant(data, tenant_id, "loan", loan_id)
        return LoanApplication.from_dict(data)

    def compare_and_swap(self, loan: LoanApplication, expected: Dict[str, object]) -> bool:
        """
        Write ``loan`` only if the stored version and status still equal ``expected``

        On success the loan's version is one past the expected version.
        """
        loan.version = int(expected['version']) + 1
        loan.updated_at = datetime.now(timezone.utc)
        if self.storage.compare_and_set(self.table_name, loan.id, expected, loan.to_dict()):
            return True
        loan.version = int(expected['version'])
        return False

    def list(self, tenant_id: str, status: Optional[LoanStatus] = None,
             employee_id: Optional[str] = None,
             product_id: Optional[str] = None) -> List[LoanApplication]:
        """Tenant's loans, newest first"""
        filters = {'tenant_id': tenant_id}
        if status:
            filters['status'] = status.value
        if employee_id:
            filters['employee_id'] = employee_id
        if product_id:
            filters['product_id'] = product_id
        loans = [LoanApplication.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def list_in_statuses(self, tenant_id: str, statuses: Iterable[LoanStatus],
                         employee_id: Optional[str] = None) -> List[LoanApplication]:
        """Tenant's loans in any of the given statuses, oldest first"""
        wanted = {s.value for s in statuses}
        filters = {'tenant_id': tenant_id}
        if employee_id:
            filters['employee_id'] = employee_id
        loans = [
            LoanApplication.from_dict(d)
            for d in self.storage.find(self.table_name, filters)
            if d.get('status') in wanted
        ]
        loans.sort(key=lambda loan: loan.created_at)
        return loans


class ScheduleRepository:
    """Stores installment schedule entries"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "loan_installments"

    def add_all(self, entries: Iterable[InstallmentScheduleEntry]) -> None:
        for entry in entries:
            if self.storage.exists(self.table_name, entry.id):
                raise ValidationError(f"Installment {entry.id} already scheduled", field="loan_id")
            self.storage.save(self.table_name, entry.id, entry.to_dict())

    def list_for_loan(self, tenant_id: str, loan_id: str) -> List[InstallmentScheduleEntry]:
        """A loan's installments ordered by sequence"""
        entries = []
        for data in self.storage.find(self.table_name, {'loan_id': loan_id}):
            ensure_same_tenant(data, tenant_id, "installment", data['id'])
            entries.append(InstallmentScheduleEntry.from_dict(data))
        entries.sort(key=lambda e: e.sequence)
        return entries

    def get(self, tenant_id: str, loan_id: str, sequence: int) -> InstallmentScheduleEntry:
        """
        Raises:
            NotFound: If the loan has no such installment
            TenantMismatch: If another tenant owns the installment
        """
        entry_id = InstallmentScheduleEntry.make_id(loan_id, sequence)
        data = self.storage.load(self.table_name, entry_id)
        if not data:
            raise NotFound(f"Installment {sequence} of loan {loan_id} not found", field="sequence")
        ensure_same_tenant(data, tenant_id, "installment", entry_id)
        return InstallmentScheduleEntry.from_dict(data)

    def claim(self, entry: InstallmentScheduleEntry, expected_status: InstallmentStatus) -> bool:
        """Write ``entry`` only if the stored installment is still in ``expected_status``"""
        entry.updated_at = datetime.now(timezone.utc)
        return self.storage.compare_and_set(
            self.table_name, entry.id, {'status': expected_status.value}, entry.to_dict()
        )

    def list_by_status(self, tenant_id: str,
                       status: InstallmentStatus) -> List[InstallmentScheduleEntry]:
        entries = [
            InstallmentScheduleEntry.from_dict(d)
            for d in self.storage.find(self.table_name,
                                       {'tenant_id': tenant_id, 'status': status.value})
        ]
        entries.sort(key=lambda e: (e.due_date, e.loan_id, e.sequence))
        return entries


class ApprovalRecordRepository:
    """Append-only store of approval decisions"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "loan_approvals"

    def append(self, record: ApprovalRecord) -> ApprovalRecord:
        if self.storage.exists(self.table_name, record.id):
            raise ValidationError(f"Approval record {record.id} already exists", field="id")
        self.storage.save(self.table_name, record.id, record.to_dict())
        return record

    def list_for_loan(self, tenant_id: str, loan_id: str) -> List[ApprovalRecord]:
        """A loan's decisions in the order they were made"""
        records = []
        for data in self.storage.find(self.table_name, {'loan_id': loan_id}):
            ensure_same_tenant(data, tenant_id, "approval", data['id'])
            records.append(ApprovalRecord.from_dict(data))
        records.sort(key=lambda r: (r.created_at, int(r.level)))
        return records
