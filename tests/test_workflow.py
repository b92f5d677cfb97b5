"""
Test suite for the loan workflow

Tests application, the three-level approval chain, disbursal and the
optimistic concurrency guarding every transition.
"""

import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from staff_loans.audit import AuditEventType
from staff_loans.errors import ErrorCode
from staff_loans.loans import (
    Actor, ActorRole, ApprovalLevel, Decision, InstallmentStatus, LoanStatus, can_transition
)


TENANT = "acme"
OTHER_TENANT = "globex"


class TestApply:
    """Test loan applications"""

    def test_apply_creates_applied_loan(self, service, product, employee):
        result = service.apply(TENANT, "E100", product.id, "120000", 12, employee,
                               remarks="Home repairs")

        assert result.ok
        loan = result.value
        assert loan.status == LoanStatus.APPLIED
        assert loan.applied_principal == Decimal("120000")
        assert loan.sanctioned_principal == Decimal("120000")
        assert loan.emi_amount == Decimal("10661.85")
        assert loan.interest_rate_percent == Decimal("12")
        assert loan.product_code == "PERS"
        assert loan.outstanding_balance == Decimal("0")
        assert loan.version == 1
        assert loan.remarks == "Home repairs"

    def test_apply_persists_loan(self, service, product, employee):
        loan = service.apply(TENANT, "E100", product.id, "50000", 6, employee).value
        stored = service.get_loan(TENANT, loan.id).value
        assert stored.id == loan.id
        assert stored.emi_amount == loan.emi_amount

    def test_employee_cannot_apply_for_someone_else(self, service, product, employee):
        result = service.apply(TENANT, "E200", product.id, "1000", 6, employee)
        assert not result.ok
        assert result.error_code == ErrorCode.NOT_AUTHORIZED

    def test_hr_can_apply_on_behalf(self, service, product, hr):
        result = service.apply(TENANT, "E100", product.id, "1000", 6, hr)
        assert result.ok
        assert result.value.applied_by == "H1"

    def test_ineligible_application_is_not_persisted(self, service, product):
        notice = Actor("E300", ActorRole.EMPLOYEE)
        result = service.apply(TENANT, "E300", product.id, "1000", 6, notice)

        assert not result.ok
        assert result.error_code == ErrorCode.INELIGIBLE_EMPLOYEE_STATUS
        assert service.list_loans(TENANT).value == []

    def test_unaffordable_application_returns_emi_preview(self, service, product):
        applicant = Actor("E200", ActorRole.EMPLOYEE)
        # E200 has under one year of service; use a product without a service minimum
        open_product = service.create_product(TENANT, "OPEN", "Open Loan", "12", "500000", 24).value

        result = service.apply(TENANT, "E200", open_product.id, "240000", 12, applicant)

        assert not result.ok
        assert result.error_code == ErrorCode.EMI_UNAFFORDABLE
        assert result.errors[0].field == "principal"
        assert "emi_preview" in result.error.to_dict()["context"]

    def test_warnings_are_returned(self, service, product, employee, directory):
        employee_record = directory.get_employee(TENANT, "E100")
        employee_record.estimated_take_home = None
        employee_record.monthly_salary = None
        directory.upsert_employee(employee_record)

        result = service.apply(TENANT, "E100", product.id, "1000", 6, employee)
        assert result.ok
        assert result.warnings

    def test_unknown_product(self, service, employee):
        result = service.apply(TENANT, "E100", "missing", "1000", 6, employee)
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_product_of_other_tenant(self, service, employee):
        foreign = service.create_product(OTHER_TENANT, "PERS", "Personal", "10", "1000", 6).value
        result = service.apply(TENANT, "E100", foreign.id, "1000", 6, employee)
        assert result.error_code == ErrorCode.TENANT_MISMATCH

    def test_manager_is_notified(self, service, product, employee, sink):
        service.apply(TENANT, "E100", product.id, "1000", 6, employee)
        assert any(recipient == "m1@acme.test" for recipient, _, _ in sink.sent)

    def test_application_is_audited(self, service, product, employee, audit_trail):
        loan = service.apply(TENANT, "E100", product.id, "1000", 6, employee).value
        events = audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [AuditEventType.LOAN_APPLIED]
        assert events[0].tenant_id == TENANT


class TestApprovalChain:
    """Test the manager, HR and Finance decisions"""

    @pytest.fixture
    def loan(self, service, product, employee):
        return service.apply(TENANT, "E100", product.id, "120000", 12, employee).value

    def test_full_chain(self, service, loan, manager, hr, finance):
        assert service.decide(TENANT, loan.id, 1, "approved", manager).value.status == \
            LoanStatus.MANAGER_APPROVED
        assert service.decide(TENANT, loan.id, 2, "approved", hr).value.status == \
            LoanStatus.HR_VERIFIED
        sanctioned = service.decide(TENANT, loan.id, 3, "approved", finance).value
        assert sanctioned.status == LoanStatus.FINANCE_SANCTIONED
        assert sanctioned.version == 4

    def test_approval_history_in_order(self, service, loan, manager, hr, finance):
        service.decide(TENANT, loan.id, 1, "approved", manager, remarks="ok")
        service.decide(TENANT, loan.id, 2, "approved", hr)
        service.decide(TENANT, loan.id, 3, "approved", finance)

        history = service.get_approval_history(TENANT, loan.id).value
        assert [r.level for r in history] == [ApprovalLevel.MANAGER, ApprovalLevel.HR,
                                              ApprovalLevel.FINANCE]
        assert [r.approver_id for r in history] == ["M1", "H1", "F1"]
        assert history[0].remarks == "ok"
        assert history[2].sanctioned_principal == Decimal("120000")

    def test_out_of_order_decision(self, service, loan, hr):
        result = service.decide(TENANT, loan.id, 2, "approved", hr)
        assert result.error_code == ErrorCode.INVALID_STATE_TRANSITION

    def test_wrong_role_for_level(self, service, loan, hr):
        result = service.decide(TENANT, loan.id, 1, "approved", hr)
        assert result.error_code == ErrorCode.NOT_AUTHORIZED

    def test_only_direct_manager_decides(self, service, loan):
        other_manager = Actor("M2", ActorRole.MANAGER)
        result = service.decide(TENANT, loan.id, 1, "approved", other_manager)
        assert result.error_code == ErrorCode.NOT_AUTHORIZED

    def test_cannot_decide_own_loan(self, service, product):
        applicant = Actor("M1", ActorRole.EMPLOYEE)
        loan = service.apply(TENANT, "M1", product.id, "1000", 6, applicant).value
        self_manager = Actor("M1", ActorRole.MANAGER)

        result = service.decide(TENANT, loan.id, 1, "approved", self_manager)
        assert result.error_code == ErrorCode.NOT_AUTHORIZED

    def test_rejection_requires_remarks(self, service, loan, manager):
        result = service.decide(TENANT, loan.id, 1, "rejected", manager)
        assert result.error_code == ErrorCode.VALIDATION_ERROR
        assert result.errors[0].field == "remarks"

    def test_rejection_is_terminal(self, service, loan, manager, hr):
        rejected = service.decide(TENANT, loan.id, 1, Decision.REJECTED, manager,
                                  remarks="Budget freeze").value
        assert rejected.status == LoanStatus.REJECTED
        assert rejected.remarks == "Budget freeze"

        result = service.decide(TENANT, loan.id, 2, "approved", hr)
        assert result.error_code == ErrorCode.INVALID_STATE_TRANSITION

    def test_rejection_notifies_employee(self, service, loan, manager, sink):
        service.decide(TENANT, loan.id, 1, "rejected", manager, remarks="No")
        subjects = [subject for recipient, subject, _ in sink.sent if recipient == "e100@acme.test"]
        assert any("rejected" in s for s in subjects)

    def test_double_submitted_decision_applies_once(self, service, loan, manager):
        first = service.decide(TENANT, loan.id, 1, "approved", manager)
        second = service.decide(TENANT, loan.id, 1, "approved", manager)

        assert first.ok
        assert second.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert len(service.get_approval_history(TENANT, loan.id).value) == 1

    def test_concurrent_write_is_detected(self, service, loan, manager):
        # Another writer bumps the version between our read and write
        original_get = service.loan_repository.get

        def stale_get(tenant_id, loan_id):
            stale = original_get(tenant_id, loan_id)
            fresh = original_get(tenant_id, loan_id)
            service.loan_repository.compare_and_swap(fresh, fresh.concurrency_token())
            return stale

        with patch.object(service.loan_repository, "get", side_effect=stale_get):
            result = service.decide(TENANT, loan.id, 1, "approved", manager)

        assert result.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert service.get_approval_history(TENANT, loan.id).value == []

    def test_finance_sanctions_lower_principal(self, service, loan, manager, hr, finance):
        service.decide(TENANT, loan.id, 1, "approved", manager)
        service.decide(TENANT, loan.id, 2, "approved", hr)
        sanctioned = service.decide(TENANT, loan.id, 3, "approved", finance,
                                    sanctioned_principal="60000").value

        assert sanctioned.applied_principal == Decimal("120000")
        assert sanctioned.sanctioned_principal == Decimal("60000")
        assert sanctioned.emi_amount < Decimal("10661.85")

    def test_sanctioned_principal_only_from_finance(self, service, loan, manager):
        result = service.decide(TENANT, loan.id, 1, "approved", manager,
                                sanctioned_principal="1000")
        assert result.error_code == ErrorCode.VALIDATION_ERROR

    def test_sanctioned_principal_within_product_limit(self, service, loan, manager, hr, finance):
        service.decide(TENANT, loan.id, 1, "approved", manager)
        service.decide(TENANT, loan.id, 2, "approved", hr)
        result = service.decide(TENANT, loan.id, 3, "approved", finance,
                                sanctioned_principal="900000")
        assert result.error_code == ErrorCode.VALIDATION_ERROR
        assert service.get_loan(TENANT, loan.id).value.status == LoanStatus.HR_VERIFIED

    def test_invalid_level(self, service, loan, manager):
        assert service.decide(TENANT, loan.id, 4, "approved", manager).error_code == \
            ErrorCode.VALIDATION_ERROR

    def test_invalid_decision(self, service, loan, manager):
        assert service.decide(TENANT, loan.id, 1, "maybe", manager).error_code == \
            ErrorCode.VALIDATION_ERROR

    def test_other_tenant_cannot_decide(self, service, loan, manager):
        result = service.decide(OTHER_TENANT, loan.id, 1, "approved", manager)
        assert result.error_code == ErrorCode.TENANT_MISMATCH

    def test_approval_queue(self, service, loan, manager, hr):
        assert [l.id for l in service.get_approval_queue(TENANT, manager).value] == [loan.id]
        assert service.get_approval_queue(TENANT, hr).value == []

        service.decide(TENANT, loan.id, 1, "approved", manager)
        assert service.get_approval_queue(TENANT, manager).value == []
        assert [l.id for l in service.get_approval_queue(TENANT, hr).value] == [loan.id]

    def test_manager_queue_only_shows_direct_reports(self, service, loan):
        other_manager = Actor("M2", ActorRole.MANAGER)
        assert service.get_approval_queue(TENANT, other_manager).value == []


class TestDisburse:
    """Test disbursal and schedule generation"""

    def test_disburse_generates_schedule(self, service, disbursed_loan):
        loan = disbursed_loan
        assert loan.status == LoanStatus.DISBURSED
        assert loan.disbursal_date == date(2025, 1, 10)
        assert loan.outstanding_balance == Decimal("120000")

        summary = service.get_schedule(TENANT, loan.id).value
        assert len(summary.installments) == 12
        assert summary.pending_count == 12
        assert summary.next_due_date == date(2025, 1, 10)
        assert sum(e.principal_component for e in summary.installments) == Decimal("120000")
        assert all(e.status == InstallmentStatus.PENDING for e in summary.installments)

    def test_disburse_defaults_to_today(self, service, sanctioned_loan, finance):
        loan = service.disburse(TENANT, sanctioned_loan.id, finance).value
        assert loan.disbursal_date == date(2025, 1, 15)

    def test_only_finance_disburses(self, service, sanctioned_loan, hr):
        result = service.disburse(TENANT, sanctioned_loan.id, hr)
        assert result.error_code == ErrorCode.NOT_AUTHORIZED

    def test_disburse_requires_sanction(self, service, product, employee, finance):
        loan = service.apply(TENANT, "E100", product.id, "1000", 6, employee).value
        result = service.disburse(TENANT, loan.id, finance)
        assert result.error_code == ErrorCode.INVALID_STATE_TRANSITION

    def test_disburse_twice(self, service, disbursed_loan, finance):
        result = service.disburse(TENANT, disbursed_loan.id, finance)
        assert result.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert len(service.get_schedule(TENANT, disbursed_loan.id).value.installments) == 12

    def test_schedule_write_failure_rolls_back_status(self, service, sanctioned_loan, finance):
        with patch.object(service.schedule_repository, "add_all", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                service.disburse(TENANT, sanctioned_loan.id, finance)

        loan = service.get_loan(TENANT, sanctioned_loan.id).value
        assert loan.status == LoanStatus.FINANCE_SANCTIONED
        assert service.get_schedule(TENANT, loan.id).value.installments == []

    def test_audit_failure_does_not_undo_disbursal(self, service, sanctioned_loan, finance):
        with patch.object(service.audit_trail, "log_event", side_effect=RuntimeError("audit down")):
            result = service.disburse(TENANT, sanctioned_loan.id, finance)
        assert result.ok
        assert service.get_loan(TENANT, sanctioned_loan.id).value.status == LoanStatus.DISBURSED


class TestRemarksAndQueries:
    """Test remarks updates and loan listing"""

    def test_update_remarks_on_terminal_loan(self, service, product, employee, manager):
        loan = service.apply(TENANT, "E100", product.id, "1000", 6, employee).value
        service.decide(TENANT, loan.id, 1, "rejected", manager, remarks="No")

        result = service.update_remarks(TENANT, loan.id, "Reapply next quarter", manager)
        assert result.ok
        assert result.value.status == LoanStatus.REJECTED
        assert result.value.remarks == "Reapply next quarter"

    def test_employee_cannot_annotate_other_loans(self, service, product, employee):
        loan = service.apply(TENANT, "E100", product.id, "1000", 6, employee).value
        stranger = Actor("E200", ActorRole.EMPLOYEE)
        assert service.update_remarks(TENANT, loan.id, "x", stranger).error_code == \
            ErrorCode.NOT_AUTHORIZED

    def test_list_loans_filters(self, service, product, employee, hr):
        first = service.apply(TENANT, "E100", product.id, "1000", 6, employee).value
        second = service.apply(TENANT, "E100", product.id, "2000", 6, hr).value

        assert {l.id for l in service.list_loans(TENANT).value} == {first.id, second.id}
        assert service.list_loans(TENANT, employee_id="E200").value == []
        assert service.list_loans(OTHER_TENANT).value == []
        applied = service.list_loans(TENANT, status=LoanStatus.APPLIED).value
        assert len(applied) == 2

    def test_missing_tenant(self, service):
        result = service.list_loans(None)
        assert result.error_code == ErrorCode.VALIDATION_ERROR
        assert result.errors[0].field == "tenant_id"


class TestStateMachine:
    """Test the transition table"""

    def test_terminal_states_have_no_exits(self):
        for status in LoanStatus:
            assert not can_transition(LoanStatus.CLOSED, status)
            assert not can_transition(LoanStatus.REJECTED, status)

    def test_no_backwards_transitions(self):
        assert not can_transition(LoanStatus.ACTIVE, LoanStatus.DISBURSED)
        assert not can_transition(LoanStatus.HR_VERIFIED, LoanStatus.MANAGER_APPROVED)
        assert not can_transition(LoanStatus.FINANCE_SANCTIONED, LoanStatus.REJECTED)

    def test_sqlite_backend_runs_chain(self, directory, config, employee, manager,
                                       hr, finance):
        from staff_loans.service import LoanService
        from staff_loans.storage import SQLiteStorage

        sqlite_service = LoanService(SQLiteStorage(":memory:"), directory, config=config,
                                     clock=lambda: date(2025, 1, 15))
        sqlite_product = sqlite_service.create_product(TENANT, "PERS", "Personal", "12",
                                                       "500000", 36).value
        loan = sqlite_service.apply(TENANT, "E100", sqlite_product.id, "120000", 12, employee).value
        sqlite_service.decide(TENANT, loan.id, 1, "approved", manager)
        sqlite_service.decide(TENANT, loan.id, 2, "approved", hr)
        sqlite_service.decide(TENANT, loan.id, 3, "approved", finance)
        disbursed = sqlite_service.disburse(TENANT, loan.id, finance).value

        assert disbursed.status == LoanStatus.DISBURSED
        assert disbursed.version == 5
        assert len(sqlite_service.get_schedule(TENANT, loan.id).value.installments) == 12
        sqlite_service.close()
