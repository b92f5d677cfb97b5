"""
Admin endpoints (reporting, audit integrity)
"""

from typing import Any, Dict
from fastapi import APIRouter, Depends

from .auth import get_actor, get_loan_service, get_tenant_id, require_role, unwrap
from ..loans import Actor, ActorRole
from ..service import LoanService


router = APIRouter()


@router.get("/portfolio")
async def get_portfolio_summary(
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
) -> Dict[str, Any]:
    """Tenant loan book: counts by status, outstanding and disbursed totals"""
    require_role(actor, ActorRole.HR, ActorRole.FINANCE)
    return unwrap(service.get_portfolio_summary(tenant_id)).to_dict()


@router.get("/audit/verify")
async def verify_audit_integrity(
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
) -> Dict[str, Any]:
    """Verify the audit trail hash chain"""
    require_role(actor, ActorRole.FINANCE)
    return service.verify_audit_integrity()
