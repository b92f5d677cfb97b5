"""
Employee endpoints: master-data sync and loan obligations
"""

from fastapi import APIRouter, Depends

from .auth import get_actor, get_loan_service, get_tenant_id, require_role, require_self_or_staff, unwrap
from .schemas import EmployeeSyncRequest
from ..loans import Actor, ActorRole
from ..service import LoanService


router = APIRouter()


@router.put("/{employee_id}")
async def sync_employee(
    employee_id: str,
    request: EmployeeSyncRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Insert or replace an employee pushed from the HR platform"""
    require_role(actor, ActorRole.HR)
    employee = unwrap(service.sync_employee(
        tenant_id, employee_id, request.join_date,
        status=request.status,
        grade=request.grade,
        estimated_take_home=request.estimated_take_home,
        monthly_salary=request.monthly_salary,
        email=request.email,
        manager_id=request.manager_id,
        name=request.name
    ))
    return employee.to_dict()


@router.get("/{employee_id}")
async def get_employee(
    employee_id: str,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Get the employee record the loan engine sees"""
    require_self_or_staff(actor, employee_id)
    return unwrap(service.get_employee(tenant_id, employee_id)).to_dict()


@router.get("/{employee_id}/obligations")
async def get_obligations(
    employee_id: str,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Summed monthly EMI and outstanding balance across repaying loans"""
    require_self_or_staff(actor, employee_id)
    return unwrap(service.get_obligations(tenant_id, employee_id)).to_dict()


@router.get("/{employee_id}/settlement")
async def get_settlement_recovery(
    employee_id: str,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Outstanding loan recovery for full-and-final settlement"""
    require_role(actor, ActorRole.HR, ActorRole.FINANCE)
    return unwrap(service.get_settlement_recovery(tenant_id, employee_id)).to_dict()
