"""
Test suite for eligibility module

Tests rule order, service-year arithmetic, range checks and EMI affordability.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from staff_loans.eligibility import completed_service_years, validate_application
from staff_loans.employees import EmployeeRecord, EmployeeStatus
from staff_loans.errors import EligibilityError, ErrorCode, ValidationError
from staff_loans.products import LoanProduct


AS_OF = date(2025, 1, 15)


def make_product(**overrides):
    now = datetime.now(timezone.utc)
    values = dict(
        id="P1", created_at=now, updated_at=now, tenant_id="acme", code="PERS",
        name="Personal Loan", interest_rate_percent=Decimal("12"),
        max_principal=Decimal("500000"), max_tenure_months=36,
        min_service_years=Decimal("1"),
    )
    values.update(overrides)
    return LoanProduct(**values)


def make_employee(**overrides):
    values = dict(grade="G3", estimated_take_home=Decimal("50000"))
    values.update(overrides)
    join_date = values.pop("join_date", date(2020, 1, 15))
    return EmployeeRecord.create("acme", "E100", join_date, **values)


def codes(result):
    return [e.code for e in result.errors]


class TestServiceYears:
    """Test completed service year arithmetic"""

    def test_exact_anniversary(self):
        assert completed_service_years(date(2020, 1, 15), date(2025, 1, 15)) == Decimal("5.0")

    def test_day_before_anniversary(self):
        assert completed_service_years(date(2020, 1, 15), date(2025, 1, 14)) == Decimal("4.9")

    def test_partial_year_truncates(self):
        # 182 days / 365.25 = 0.498...
        assert completed_service_years(date(2024, 7, 17), date(2025, 1, 15)) == Decimal("0.4")

    def test_join_date_in_future(self):
        assert completed_service_years(date(2025, 6, 1), date(2025, 1, 15)) == Decimal("0.0")

    def test_leap_day_joiner(self):
        assert completed_service_years(date(2020, 2, 29), date(2021, 2, 28)) == Decimal("1.0")
        assert completed_service_years(date(2020, 2, 29), date(2024, 2, 29)) == Decimal("4.0")


class TestValidateApplication:
    """Test eligibility rules"""

    def test_valid_application(self):
        result = validate_application(make_employee(), make_product(), "120000", 12,
                                      take_home=Decimal("50000"), as_of=AS_OF)

        assert result.valid
        assert result.errors == []
        assert result.emi_preview.emi_amount == Decimal("10661.85")
        assert result.service_years == Decimal("5.0")

    def test_inactive_product(self):
        result = validate_application(make_employee(), make_product(is_active=False), "1000", 6,
                                      take_home=Decimal("50000"), as_of=AS_OF)

        assert not result.valid
        assert codes(result) == [ErrorCode.VALIDATION_ERROR]
        assert result.errors[0].field == "product_id"
        assert isinstance(result.to_error(), ValidationError)

    @pytest.mark.parametrize("status", [
        EmployeeStatus.ON_NOTICE, EmployeeStatus.SEPARATED, EmployeeStatus.ON_LEAVE,
        EmployeeStatus.RETIRED, EmployeeStatus.INACTIVE,
    ])
    def test_non_active_status(self, status):
        result = validate_application(make_employee(status=status), make_product(), "1000", 6,
                                      take_home=Decimal("50000"), as_of=AS_OF)
        assert codes(result) == [ErrorCode.INELIGIBLE_EMPLOYEE_STATUS]

    def test_status_checked_before_service(self):
        employee = make_employee(status=EmployeeStatus.SEPARATED, join_date=date(2024, 12, 1))
        result = validate_application(employee, make_product(), "1000", 6,
                                      take_home=Decimal("50000"), as_of=AS_OF)
        assert codes(result) == [ErrorCode.INELIGIBLE_EMPLOYEE_STATUS]

    def test_insufficient_service(self):
        employee = make_employee(join_date=date(2024, 6, 1))
        result = validate_application(employee, make_product(), "1000", 6,
                                      take_home=Decimal("50000"), as_of=AS_OF)

        assert codes(result) == [ErrorCode.INSUFFICIENT_SERVICE]
        assert result.service_years == Decimal("0.6")

    def test_service_boundary_is_inclusive(self):
        """Exactly the minimum service on the anniversary passes"""
        employee = make_employee(join_date=date(2024, 1, 15))
        result = validate_application(employee, make_product(), "1000", 6,
                                      take_home=Decimal("50000"), as_of=AS_OF)
        assert result.valid

        employee = make_employee(join_date=date(2024, 1, 16))
        result = validate_application(employee, make_product(), "1000", 6,
                                      take_home=Decimal("50000"), as_of=AS_OF)
        assert codes(result) == [ErrorCode.INSUFFICIENT_SERVICE]

    def test_grade_not_eligible(self):
        product = make_product(eligible_grades=["G4", "G5"])
        result = validate_application(make_employee(), product, "1000", 6,
                                      take_home=Decimal("50000"), as_of=AS_OF)
        assert codes(result) == [ErrorCode.GRADE_NOT_ELIGIBLE]
        assert result.errors[0].field == "grade"

    def test_missing_grade_with_restricted_product(self):
        product = make_product(eligible_grades=["G3"])
        result = validate_application(make_employee(grade=None), product, "1000", 6,
                                      take_home=Decimal("50000"), as_of=AS_OF)
        assert codes(result) == [ErrorCode.GRADE_NOT_ELIGIBLE]

    def test_empty_grade_list_allows_all(self):
        result = validate_application(make_employee(grade="ANY"), make_product(), "1000", 6,
                                      take_home=Decimal("50000"), as_of=AS_OF)
        assert result.valid

    def test_principal_and_tenure_reported_together(self):
        result = validate_application(make_employee(), make_product(), "600000", 48,
                                      take_home=Decimal("500000"), as_of=AS_OF)

        assert codes(result) == [ErrorCode.AMOUNT_OR_TENURE_OUT_OF_RANGE] * 2
        assert [e.field for e in result.errors] == ["principal", "tenure_months"]
        error = result.to_error()
        assert isinstance(error, EligibilityError)
        assert error.code == ErrorCode.AMOUNT_OR_TENURE_OUT_OF_RANGE

    @pytest.mark.parametrize("principal,tenure", [("0", 12), ("-100", 12), ("1000", 0)])
    def test_non_positive_amounts(self, principal, tenure):
        result = validate_application(make_employee(), make_product(), principal, tenure,
                                      take_home=Decimal("50000"), as_of=AS_OF)
        assert codes(result) == [ErrorCode.AMOUNT_OR_TENURE_OUT_OF_RANGE]

    def test_limits_are_inclusive(self):
        result = validate_application(make_employee(), make_product(), "500000", 36,
                                      take_home=Decimal("100000"), as_of=AS_OF)
        assert result.valid

    def test_emi_unaffordable(self):
        """Take-home 40,000 caps the EMI at 20,000"""
        # 250,000 at 12% over 12 months is an EMI of about 22,212
        result = validate_application(make_employee(), make_product(), "250000", 12,
                                      take_home=Decimal("40000"), as_of=AS_OF)

        assert codes(result) == [ErrorCode.EMI_UNAFFORDABLE]
        assert result.emi_preview is not None
        assert result.emi_preview.emi_amount > Decimal("20000")

    def test_emi_at_exact_limit_passes(self):
        # Zero-rate product makes the EMI exactly principal / tenure
        product = make_product(interest_rate_percent=Decimal("0"))
        result = validate_application(make_employee(), product, "240000", 12,
                                      take_home=Decimal("40000"), as_of=AS_OF)
        assert result.valid

        result = validate_application(make_employee(), product, "240000.12", 12,
                                      take_home=Decimal("40000"), as_of=AS_OF)
        assert codes(result) == [ErrorCode.EMI_UNAFFORDABLE]

    def test_unknown_take_home_warns(self):
        result = validate_application(make_employee(), make_product(), "120000", 12,
                                      take_home=None, as_of=AS_OF)
        assert result.valid
        assert len(result.warnings) == 1
        assert "not checked" in result.warnings[0]

    def test_combined_emi_over_limit_only_warns(self):
        result = validate_application(make_employee(), make_product(), "120000", 12,
                                      take_home=Decimal("40000"),
                                      existing_emi_total=Decimal("15000"), as_of=AS_OF)
        assert result.valid
        assert any("Combined EMI" in w for w in result.warnings)

    def test_custom_affordability_ratio(self):
        result = validate_application(make_employee(), make_product(), "120000", 12,
                                      take_home=Decimal("40000"), as_of=AS_OF,
                                      affordability_ratio=Decimal("0.25"))
        assert codes(result) == [ErrorCode.EMI_UNAFFORDABLE]

    def test_to_dict(self):
        result = validate_application(make_employee(), make_product(), "120000", 12,
                                      take_home=Decimal("50000"), as_of=AS_OF)
        data = result.to_dict()
        assert data["valid"] is True
        assert data["emi_preview"]["emi_amount"] == "10661.85"
        assert data["service_years"] == "5.0"
