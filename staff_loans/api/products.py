"""
Loan product catalog endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import get_actor, get_loan_service, get_tenant_id, require_role, unwrap
from .schemas import CreateProductRequest, ProductDescriptionRequest, ProductStatusRequest
from ..loans import Actor, ActorRole
from ..service import LoanService


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(
    request: CreateProductRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Create a loan product (HR or Finance)"""
    require_role(actor, ActorRole.HR, ActorRole.FINANCE)
    product = unwrap(service.create_product(
        tenant_id,
        code=request.code,
        name=request.name,
        interest_rate_percent=request.interest_rate_percent,
        max_principal=request.max_principal,
        max_tenure_months=request.max_tenure_months,
        min_service_years=request.min_service_years,
        eligible_grades=request.eligible_grades,
        description=request.description,
        actor=actor
    ))
    return product.to_dict()


@router.get("")
async def list_products(
    active_only: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    service: LoanService = Depends(get_loan_service)
):
    """List the tenant's loan products"""
    products = unwrap(service.list_products(tenant_id, active_only=active_only))
    return {"products": [product.to_dict() for product in products], "count": len(products)}


@router.get("/{product_id}")
async def get_product(
    product_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: LoanService = Depends(get_loan_service)
):
    """Get product by ID"""
    return unwrap(service.get_product(tenant_id, product_id)).to_dict()


@router.put("/{product_id}/status")
async def set_product_status(
    product_id: str,
    request: ProductStatusRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Activate or deactivate a product; existing loans are unaffected"""
    require_role(actor, ActorRole.HR, ActorRole.FINANCE)
    product = unwrap(service.set_product_active(tenant_id, product_id, request.is_active, actor=actor))
    return product.to_dict()


@router.patch("/{product_id}/description")
async def update_product_description(
    product_id: str,
    request: ProductDescriptionRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    service: LoanService = Depends(get_loan_service)
):
    """Change a product's description; financial terms are fixed"""
    require_role(actor, ActorRole.HR, ActorRole.FINANCE)
    product = unwrap(service.update_product_description(tenant_id, product_id, request.description,
                                                        actor=actor))
    return product.to_dict()
