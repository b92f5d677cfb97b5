"""
Employee Directory Module

Read model of the employee master data the loan engine needs: join date,
employment status, grade, take-home salary, email and reporting manager.
The HR platform owns the master records; the loan engine only looks them up.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Tuple
import threading

from .errors import NotFound
from .money import round_money, to_decimal
from .storage import StorageInterface, StorageRecord
from .tenancy import ensure_same_tenant


class EmployeeStatus(Enum):
    """Employment status as reported by the HR platform"""
    ACTIVE = "active"
    ON_LEAVE = "on_leave"
    ON_NOTICE = "on_notice"
    SEPARATED = "separated"
    RETIRED = "retired"
    INACTIVE = "inactive"


@dataclass
class EmployeeRecord(StorageRecord):
    """Employee as seen by the loan engine; ``id`` is the employee id"""
    tenant_id: str
    join_date: date
    status: EmployeeStatus = EmployeeStatus.ACTIVE
    grade: Optional[str] = None
    estimated_take_home: Optional[Decimal] = None  # Net monthly salary
    monthly_salary: Optional[Decimal] = None       # Gross, used when no take-home estimate
    email: Optional[str] = None
    manager_id: Optional[str] = None
    name: Optional[str] = None

    @property
    def employee_id(self) -> str:
        return self.id

    def take_home(self, estimate_ratio: Decimal) -> Optional[Decimal]:
        """
        Take-home salary for affordability checks

        Falls back to gross salary times ``estimate_ratio`` when payroll has not
        supplied a take-home figure; None when neither is known.
        """
        if self.estimated_take_home is not None:
            return self.estimated_take_home
        if self.monthly_salary is not None:
            return round_money(self.monthly_salary * to_decimal(estimate_ratio))
        return None

    @classmethod
    def create(cls, tenant_id: str, employee_id: str, join_date: date,
               **kwargs) -> 'EmployeeRecord':
        """Build a record stamped with the current time"""
        now = datetime.now(timezone.utc)
        return cls(id=employee_id, created_at=now, updated_at=now,
                   tenant_id=tenant_id, join_date=join_date, **kwargs)


class EmployeeDirectory(ABC):
    """Employee lookup collaborator"""

    @abstractmethod
    def get_employee(self, tenant_id: str, employee_id: str) -> EmployeeRecord:
        """
        Look up an employee of the tenant

        Raises:
            NotFound: If the employee is unknown
            TenantMismatch: If the employee belongs to another tenant
        """
        pass


class InMemoryEmployeeDirectory(EmployeeDirectory):
    """Dictionary-backed directory for tests and embedding"""

    def __init__(self):
        self._employees: Dict[Tuple[str, str], EmployeeRecord] = {}
        self._owners: Dict[str, str] = {}
        self._lock = threading.Lock()

    def upsert_employee(self, employee: EmployeeRecord) -> EmployeeRecord:
        with self._lock:
            owner = self._owners.get(employee.id)
            if owner is not None:
                ensure_same_tenant({'tenant_id': owner}, employee.tenant_id, "employee", employee.id)
            self._employees[(employee.tenant_id, employee.id)] = employee
            self._owners[employee.id] = employee.tenant_id
        return employee

    def get_employee(self, tenant_id: str, employee_id: str) -> EmployeeRecord:
        with self._lock:
            owner = self._owners.get(employee_id)
            if owner is None:
                raise NotFound(f"Employee {employee_id} not found", field="employee_id")
            ensure_same_tenant({'tenant_id': owner}, tenant_id, "employee", employee_id)
            return self._employees[(tenant_id, employee_id)]


class StorageEmployeeDirectory(EmployeeDirectory):
    """Directory persisted through the storage backend, synced from HR"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "employees"

    def upsert_employee(self, employee: EmployeeRecord) -> EmployeeRecord:
        """Insert or replace an employee record"""
        existing = self.storage.load(self.table_name, employee.id)
        if existing:
            ensure_same_tenant(existing, employee.tenant_id, "employee", employee.id)
            employee.created_at = datetime.fromisoformat(existing['created_at'])
        employee.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, employee.id, employee.to_dict())
        return employee

    def get_employee(self, tenant_id: str, employee_id: str) -> EmployeeRecord:
        data = self.storage.load(self.table_name, employee_id)
        if not data:
            raise NotFound(f"Employee {employee_id} not found", field="employee_id")
        ensure_same_tenant(data, tenant_id, "employee", employee_id)
        return EmployeeRecord.from_dict(data)
