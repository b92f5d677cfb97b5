"""
Multi-Tenancy Support Module

Every loan record carries the id of the tenant (organisation) that owns it.
Operations are always called with an explicit tenant id; the context variable
below lets the HTTP layer and batch jobs carry the current tenant implicitly.
"""

import contextvars
from contextlib import contextmanager
from typing import Any, Dict, Optional

from .errors import TenantMismatch, ValidationError
from .logging_config import get_logger, log_action


logger = get_logger("tenancy")

# Thread-local tenant context using contextvars
_current_tenant = contextvars.ContextVar('current_tenant', default=None)


def get_current_tenant() -> Optional[str]:
    """Get the current tenant ID for this context"""
    return _current_tenant.get()


def set_current_tenant(tenant_id: str) -> None:
    """Set the current tenant ID for this context"""
    _current_tenant.set(tenant_id)


@contextmanager
def tenant_context(tenant_id: str):
    """Context manager for temporary tenant switching"""
    token = _current_tenant.set(tenant_id)
    try:
        yield
    finally:
        _current_tenant.reset(token)


def resolve_tenant(tenant_id: Optional[str] = None) -> str:
    """
    Return the explicit tenant id, falling back to the context tenant

    Raises:
        ValidationError: If neither is set
    """
    resolved = tenant_id or get_current_tenant()
    if not resolved:
        raise ValidationError("Tenant id is required", field="tenant_id")
    return resolved


def ensure_same_tenant(record: Dict[str, Any], tenant_id: str,
                       entity_type: str, entity_id: str) -> Dict[str, Any]:
    """
    Verify that a stored record belongs to the requesting tenant

    A mismatch means a caller crossed tenants, which correct callers never
    do, so it is logged at ERROR before being raised.

    Raises:
        TenantMismatch: If the record is owned by another tenant
    """
    owner = record.get('tenant_id')
    if owner != tenant_id:
        log_action(
            logger, "error",
            f"Tenant {tenant_id} addressed {entity_type} {entity_id} owned by another tenant",
            tenant_id=tenant_id,
            action="tenant_mismatch",
            resource=f"{entity_type}:{entity_id}",
        )
        raise TenantMismatch(
            f"{entity_type} {entity_id} does not belong to tenant {tenant_id}",
            field="tenant_id",
        )
    return record
