"""
Request identity and service dependencies

Authentication happens upstream; the gateway forwards the resolved tenant and
actor in the X-Tenant-ID, X-Actor-ID and X-Actor-Role headers.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from ..errors import ErrorCode, OperationResult
from ..loans import Actor, ActorRole
from ..service import LoanService


# HTTP status for each error code
STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INELIGIBLE_EMPLOYEE_STATUS: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INSUFFICIENT_SERVICE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.GRADE_NOT_ELIGIBLE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.AMOUNT_OR_TENURE_OUT_OF_RANGE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.EMI_UNAFFORDABLE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.NOT_AUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorCode.TENANT_MISMATCH: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


def get_loan_service(request: Request) -> LoanService:
    """The LoanService the application was created with"""
    return request.app.state.loan_service


def get_tenant_id(x_tenant_id: str = Header(..., description="Tenant (organisation) id")) -> str:
    if not x_tenant_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-ID is empty")
    return x_tenant_id.strip()


def get_actor(
    x_actor_id: str = Header(..., description="Authenticated user id"),
    x_actor_role: str = Header(..., description="employee, manager, hr or finance"),
    x_actor_name: Optional[str] = Header(None, description="Display name for approval records")
) -> Actor:
    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                            detail=f"Unknown actor role: {x_actor_role}")
    return Actor(actor_id=x_actor_id.strip(), role=role, name=x_actor_name)


def require_role(actor: Actor, *roles: ActorRole) -> None:
    """Reject the request unless the actor holds one of ``roles``"""
    if actor.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": ErrorCode.NOT_AUTHORIZED.value,
                "message": f"Requires role: {', '.join(r.value for r in roles)}",
                "details": [],
            }
        )


def require_self_or_staff(actor: Actor, employee_id: str) -> None:
    """Employees may only read their own loans and records; staff roles read any"""
    if actor.role == ActorRole.EMPLOYEE and actor.actor_id != employee_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": ErrorCode.NOT_AUTHORIZED.value,
                "message": f"Actor {actor.actor_id} cannot access employee {employee_id}",
                "details": [],
            }
        )


def unwrap(result: OperationResult):
    """Return the result's value or raise the matching HTTPException"""
    if result.ok:
        return result.value
    error = result.error
    detail = error.to_dict()
    if result.warnings:
        detail["warnings"] = result.warnings
    raise HTTPException(status_code=STATUS_BY_CODE.get(error.code, status.HTTP_400_BAD_REQUEST),
                        detail=detail)
