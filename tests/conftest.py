"""
Shared fixtures for the staff loans test suite
"""

from datetime import date
from decimal import Decimal

import pytest

from staff_loans.audit import AuditTrail
from staff_loans.config import StaffLoansConfig
from staff_loans.employees import EmployeeRecord, EmployeeStatus, InMemoryEmployeeDirectory
from staff_loans.loans import Actor, ActorRole
from staff_loans.notifications import NotificationDispatcher, NotificationSink
from staff_loans.service import LoanService
from staff_loans.storage import InMemoryStorage


TENANT = "acme"
OTHER_TENANT = "globex"
TODAY = date(2025, 1, 15)


class RecordingSink(NotificationSink):
    """Notification sink that keeps every message for assertions"""

    def __init__(self):
        self.sent = []

    def notify(self, recipient_email, subject, body):
        self.sent.append((recipient_email, subject, body))
        return True


@pytest.fixture
def config():
    return StaffLoansConfig(
        database_url="memory://",
        notifications_async=False,
        batch_max_workers=2,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    return NotificationDispatcher(sink)


@pytest.fixture
def directory():
    directory = InMemoryEmployeeDirectory()
    directory.upsert_employee(EmployeeRecord.create(
        TENANT, "E100", date(2020, 1, 15),
        grade="G3", estimated_take_home=Decimal("50000.00"),
        email="e100@acme.test", manager_id="M1", name="Asha Rao"
    ))
    directory.upsert_employee(EmployeeRecord.create(
        TENANT, "E200", date(2024, 6, 1),
        grade="G1", estimated_take_home=Decimal("40000.00"),
        email="e200@acme.test", manager_id="M1"
    ))
    directory.upsert_employee(EmployeeRecord.create(
        TENANT, "E300", date(2018, 3, 1),
        status=EmployeeStatus.ON_NOTICE, grade="G3",
        estimated_take_home=Decimal("60000.00"), manager_id="M2"
    ))
    directory.upsert_employee(EmployeeRecord.create(
        TENANT, "M1", date(2015, 1, 1), grade="G5",
        estimated_take_home=Decimal("120000.00"), email="m1@acme.test"
    ))
    directory.upsert_employee(EmployeeRecord.create(
        OTHER_TENANT, "X900", date(2019, 1, 1), estimated_take_home=Decimal("30000.00")
    ))
    return directory


@pytest.fixture
def service(storage, directory, audit_trail, notifier, config):
    return LoanService(storage, directory, audit_trail=audit_trail, notifier=notifier,
                       config=config, clock=lambda: TODAY)


@pytest.fixture
def product(service):
    result = service.create_product(
        TENANT, code="pers", name="Personal Loan", interest_rate_percent="12",
        max_principal="500000", max_tenure_months=36, min_service_years="1"
    )
    assert result.ok
    return result.value


@pytest.fixture
def employee():
    return Actor("E100", ActorRole.EMPLOYEE, name="Asha Rao")


@pytest.fixture
def manager():
    return Actor("M1", ActorRole.MANAGER, name="Manager One")


@pytest.fixture
def hr():
    return Actor("H1", ActorRole.HR, name="HR Partner")


@pytest.fixture
def finance():
    return Actor("F1", ActorRole.FINANCE, name="Finance Lead")


@pytest.fixture
def sanctioned_loan(service, product, employee, manager, hr, finance):
    """120,000 at 12% over 12 months, approved by all three levels"""
    loan = service.apply(TENANT, "E100", product.id, "120000", 12, employee).value
    for level, actor in ((1, manager), (2, hr), (3, finance)):
        result = service.decide(TENANT, loan.id, level, "approved", actor)
        assert result.ok, result.error
    return result.value


@pytest.fixture
def disbursed_loan(service, sanctioned_loan, finance):
    result = service.disburse(TENANT, sanctioned_loan.id, finance, disbursal_date=date(2025, 1, 10))
    assert result.ok, result.error
    return result.value
