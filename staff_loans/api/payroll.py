"""
Payroll integration endpoints

Called by the payroll orchestrator once per cycle; replaying a cycle is safe.
"""

from datetime import date
from fastapi import APIRouter, Depends

from .auth import get_actor, get_loan_service, get_tenant_id, require_role, unwrap
from .schemas import OverdueSweepRequest, PayrollCycleRequest, RepaymentRequest
from ..loans import Actor, ActorRole
from ..service import LoanService


router = APIRouter()


@router.post("/repayments")
async def process_repayment(
    request: RepaymentRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Deduct one employee's installments due in the cycle month"""
    require_role(actor, ActorRole.FINANCE)
    result = unwrap(service.process_repayment(
        tenant_id, request.employee_id, request.cycle_date, request.payroll_cycle_id
    ))
    return result.to_dict()


@router.post("/cycles")
async def process_cycle(
    request: PayrollCycleRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Run repayments for a batch of employees; failures are reported per employee"""
    require_role(actor, ActorRole.FINANCE)
    result = unwrap(service.process_cycle(
        tenant_id, request.employee_ids, request.cycle_date,
        payroll_cycle_id=request.payroll_cycle_id, max_workers=request.max_workers
    ))
    return result.to_dict()


@router.get("/employees/{employee_id}/preview")
async def preview_deductions(
    employee_id: str,
    cycle_date: date,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Deductions the next repayment run would make, without changing anything"""
    require_role(actor, ActorRole.HR, ActorRole.FINANCE)
    return unwrap(service.preview_deductions(tenant_id, employee_id, cycle_date)).to_dict()


@router.post("/overdue-sweep")
async def mark_overdue(
    request: OverdueSweepRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Mark installments from past months that are still pending as overdue"""
    require_role(actor, ActorRole.FINANCE)
    marked = unwrap(service.mark_overdue(tenant_id, request.as_of))
    return {
        "as_of": request.as_of.isoformat(),
        "marked_count": len(marked),
        "installments": [entry.to_dict() for entry in marked]
    }
