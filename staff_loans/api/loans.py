"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status

from .auth import get_actor, get_loan_service, get_tenant_id, require_self_or_staff, unwrap
from .schemas import (
    ApplyLoanRequest, DecisionRequest, DisburseRequest, EligibilityRequest, RemarksRequest,
    WaiveInstallmentRequest
)
from ..loans import Actor, ActorRole, LoanApplication, LoanStatus
from ..service import LoanService


router = APIRouter()


def load_visible_loan(service: LoanService, tenant_id: str, loan_id: str,
                      actor: Actor) -> LoanApplication:
    """Fetch a loan, rejecting employees who ask for someone else's"""
    loan = unwrap(service.get_loan(tenant_id, loan_id))
    require_self_or_staff(actor, loan.employee_id)
    return loan


@router.post("/eligibility")
async def check_eligibility(
    request: EligibilityRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Dry-run the eligibility rules with an EMI preview"""
    require_self_or_staff(actor, request.employee_id)
    result = unwrap(service.check_eligibility(
        tenant_id, request.employee_id, request.product_id,
        request.principal, request.tenure_months, as_of=request.as_of
    ))
    return result.to_dict()


@router.post("/apply", status_code=status.HTTP_201_CREATED)
async def apply_for_loan(
    request: ApplyLoanRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Submit a loan application"""
    result = service.apply(
        tenant_id, request.employee_id, request.product_id, request.principal,
        request.tenure_months, actor, remarks=request.remarks
    )
    loan = unwrap(result)
    return {
        "loan": loan.to_dict(),
        "warnings": result.warnings,
        "message": "Loan application submitted"
    }


@router.get("")
async def list_loans(
    status_filter: Optional[str] = Query(None, alias="status"),
    employee_id: Optional[str] = None,
    product_id: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """List the tenant's loans, newest first"""
    if actor.role == ActorRole.EMPLOYEE:
        employee_id = employee_id or actor.actor_id
        require_self_or_staff(actor, employee_id)

    loan_status = None
    if status_filter:
        try:
            loan_status = LoanStatus(status_filter)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown loan status: {status_filter}")

    loans = unwrap(service.list_loans(tenant_id, status=loan_status,
                                      employee_id=employee_id, product_id=product_id))
    return {"loans": [loan.to_dict() for loan in loans], "count": len(loans)}


@router.get("/approval-queue")
async def get_approval_queue(
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Loans awaiting the calling approver's decision"""
    loans = unwrap(service.get_approval_queue(tenant_id, actor))
    return {"loans": [loan.to_dict() for loan in loans], "count": len(loans)}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Get loan details"""
    return load_visible_loan(service, tenant_id, loan_id, actor).to_dict()


@router.post("/{loan_id}/decisions")
async def decide(
    loan_id: str,
    request: DecisionRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Record an approval or rejection at one approval level"""
    loan = unwrap(service.decide(
        tenant_id, loan_id, request.level, request.decision, actor,
        remarks=request.remarks, sanctioned_principal=request.sanctioned_principal
    ))
    return {
        "loan": loan.to_dict(),
        "message": f"Loan {loan.status.value}"
    }


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: Optional[DisburseRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Disburse a sanctioned loan and generate its repayment schedule"""
    disbursal_date = request.disbursal_date if request else None
    loan = unwrap(service.disburse(tenant_id, loan_id, actor, disbursal_date=disbursal_date))
    schedule = unwrap(service.get_schedule(tenant_id, loan_id))
    return {
        "loan": loan.to_dict(),
        "schedule": schedule.to_dict(),
        "message": "Loan disbursed successfully"
    }


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Get the repayment schedule with paid and pending totals"""
    load_visible_loan(service, tenant_id, loan_id, actor)
    return unwrap(service.get_schedule(tenant_id, loan_id)).to_dict()


@router.get("/{loan_id}/approvals")
async def get_approval_history(
    loan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Approval decisions recorded for a loan, in order"""
    load_visible_loan(service, tenant_id, loan_id, actor)
    records = unwrap(service.get_approval_history(tenant_id, loan_id))
    return {"loan_id": loan_id, "approvals": [record.to_dict() for record in records]}


@router.patch("/{loan_id}/remarks")
async def update_remarks(
    loan_id: str,
    request: RemarksRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Replace the loan's remarks"""
    loan = unwrap(service.update_remarks(tenant_id, loan_id, request.remarks, actor))
    return loan.to_dict()


@router.post("/{loan_id}/installments/{sequence}/waive")
async def waive_installment(
    loan_id: str,
    sequence: int,
    request: WaiveInstallmentRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Waive a pending or overdue installment (Finance only)"""
    loan, entry = unwrap(service.waive_installment(tenant_id, loan_id, sequence, actor,
                                                   remarks=request.remarks))
    return {
        "loan": loan.to_dict(),
        "installment": entry.to_dict(),
        "message": f"Installment {sequence} waived"
    }


@router.get("/{loan_id}/audit")
async def get_loan_audit_trail(
    loan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Audit events recorded against a loan"""
    load_visible_loan(service, tenant_id, loan_id, actor)
    events = unwrap(service.get_audit_events(tenant_id, "loan", loan_id))
    return {"loan_id": loan_id, "events": [event.to_dict() for event in events]}
