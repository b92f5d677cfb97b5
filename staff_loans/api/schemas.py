"""
Pydantic schemas for API requests
"""

from datetime import date
from typing import List, Optional
from pydantic import BaseModel, Field


class ApplyLoanRequest(BaseModel):
    employee_id: str
    product_id: str
    principal: str = Field(..., description="Decimal amount as string")
    tenure_months: int = Field(..., description="Number of monthly installments")
    remarks: str = ""


class EligibilityRequest(BaseModel):
    employee_id: str
    product_id: str
    principal: str = Field(..., description="Decimal amount as string")
    tenure_months: int
    as_of: Optional[date] = None


class DecisionRequest(BaseModel):
    level: int = Field(..., description="Approval level: 1 manager, 2 HR, 3 Finance")
    decision: str = Field(..., description="approved or rejected")
    remarks: str = ""
    sanctioned_principal: Optional[str] = Field(
        None, description="Finance only: principal to sanction, decimal as string"
    )


class DisburseRequest(BaseModel):
    disbursal_date: Optional[date] = None


class RemarksRequest(BaseModel):
    remarks: str


class WaiveInstallmentRequest(BaseModel):
    remarks: str = Field(..., description="Reason for the waiver")


class RepaymentRequest(BaseModel):
    employee_id: str
    cycle_date: date
    payroll_cycle_id: Optional[str] = None


class PayrollCycleRequest(BaseModel):
    employee_ids: List[str]
    cycle_date: date
    payroll_cycle_id: Optional[str] = None
    max_workers: Optional[int] = Field(None, ge=1, le=64)


class OverdueSweepRequest(BaseModel):
    as_of: date


class CreateProductRequest(BaseModel):
    code: str
    name: str
    interest_rate_percent: str = Field(..., description="Annual rate in percent, decimal as string")
    max_principal: str = Field(..., description="Decimal amount as string")
    max_tenure_months: int
    min_service_years: str = "0"
    eligible_grades: List[str] = Field(default_factory=list)
    description: str = ""


class ProductDescriptionRequest(BaseModel):
    description: str


class ProductStatusRequest(BaseModel):
    is_active: bool


class EmployeeSyncRequest(BaseModel):
    join_date: date
    status: str = "active"
    grade: Optional[str] = None
    estimated_take_home: Optional[str] = Field(None, description="Net monthly salary, decimal as string")
    monthly_salary: Optional[str] = Field(None, description="Gross monthly salary, decimal as string")
    email: Optional[str] = None
    manager_id: Optional[str] = None
    name: Optional[str] = None
