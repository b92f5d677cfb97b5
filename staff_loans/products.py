"""
Loan Product Catalog Module

Tenant-scoped loan product definitions: interest rate, principal and tenure
limits, minimum service and grade eligibility. A product's financial terms are
fixed once created; only its active flag and description may change.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
import uuid

from .amortization import MAX_ANNUAL_RATE_PERCENT
from .audit import AuditEventType, AuditSink, record_best_effort
from .errors import NotFound, ValidationError
from .money import ZERO, Number, to_decimal
from .storage import StorageInterface, StorageRecord
from .tenancy import ensure_same_tenant
from .logging_config import get_logger


logger = get_logger("products")


@dataclass
class LoanProduct(StorageRecord):
    """Loan product offered by a tenant"""
    tenant_id: str
    code: str                              # Unique per tenant, upper-cased
    name: str
    interest_rate_percent: Decimal         # Annual rate, e.g. 12 for 12%
    max_principal: Decimal
    max_tenure_months: int
    min_service_years: Decimal = ZERO
    eligible_grades: List[str] = field(default_factory=list)  # Empty = all grades
    is_active: bool = True
    description: str = ""

    @property
    def restricts_grades(self) -> bool:
        return bool(self.eligible_grades)


class ProductCatalog:
    """
    Manages the tenant-scoped loan product catalog
    """

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditSink] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "loan_products"

    def create_product(
        self,
        tenant_id: str,
        code: str,
        name: str,
        interest_rate_percent: Number,
        max_principal: Number,
        max_tenure_months: int,
        min_service_years: Number = 0,
        eligible_grades: Optional[List[str]] = None,
        description: str = "",
        actor_id: Optional[str] = None
    ) -> LoanProduct:
        """
        Create a new loan product

        Raises:
            ValidationError: If a term is out of range or the code is taken
        """
        code = (code or "").strip().upper()
        if not code:
            raise ValidationError("Product code is required", field="code")
        if not (name or "").strip():
            raise ValidationError("Product name is required", field="name")

        rate = self._decimal(interest_rate_percent, "interest_rate_percent")
        if rate < ZERO or rate > MAX_ANNUAL_RATE_PERCENT:
            raise ValidationError("Interest rate must be between 0 and 100 percent",
                                  field="interest_rate_percent")

        max_principal = self._decimal(max_principal, "max_principal")
        if max_principal <= ZERO:
            raise ValidationError("Maximum principal must be positive", field="max_principal")

        if isinstance(max_tenure_months, bool) or not isinstance(max_tenure_months, int) \
                or max_tenure_months < 1:
            raise ValidationError("Maximum tenure must be a positive whole number of months",
                                  field="max_tenure_months")

        min_service = self._decimal(min_service_years, "min_service_years")
        if min_service < ZERO:
            raise ValidationError("Minimum service years cannot be negative",
                                  field="min_service_years")

        if self.find_by_code(tenant_id, code):
            raise ValidationError(f"Product code {code} already exists", field="code")

        now = datetime.now(timezone.utc)
        product = LoanProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            code=code,
            name=name.strip(),
            interest_rate_percent=rate,
            max_principal=max_principal,
            max_tenure_months=max_tenure_months,
            min_service_years=min_service,
            eligible_grades=[g.strip() for g in (eligible_grades or []) if g and g.strip()],
            is_active=True,
            description=description or ""
        )

        self.storage.save(self.table_name, product.id, product.to_dict())
        logger.info(f"Created loan product {product.code} for tenant {tenant_id}",
                    extra={'tenant_id': tenant_id, 'actor': actor_id, 'action': 'create_product'})

        record_best_effort(
            self.audit_trail, tenant_id, actor_id, AuditEventType.PRODUCT_CREATED,
            "loan_product", product.id, f"Loan product {product.code} created",
            metadata={'code': product.code, 'interest_rate_percent': product.interest_rate_percent,
                      'max_principal': product.max_principal}
        )
        return product

    def get_product(self, tenant_id: str, product_id: str) -> LoanProduct:
        """
        Get a product owned by the tenant

        Raises:
            NotFound: If no such product exists
            TenantMismatch: If the product belongs to another tenant
        """
        data = self.storage.load(self.table_name, product_id)
        if not data:
            raise NotFound(f"Loan product {product_id} not found", field="product_id")
        ensure_same_tenant(data, tenant_id, "loan_product", product_id)
        return LoanProduct.from_dict(data)

    def find_by_code(self, tenant_id: str, code: str) -> Optional[LoanProduct]:
        """Look up a product by its tenant-unique code"""
        matches = self.storage.find(self.table_name, {'tenant_id': tenant_id, 'code': code.upper()})
        if matches:
            return LoanProduct.from_dict(matches[0])
        return None

    def list_products(self, tenant_id: str, active_only: bool = False) -> List[LoanProduct]:
        """List a tenant's products ordered by code"""
        filters = {'tenant_id': tenant_id}
        if active_only:
            filters['is_active'] = True
        products = [LoanProduct.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        return sorted(products, key=lambda p: p.code)

    def set_active(self, tenant_id: str, product_id: str, is_active: bool,
                   actor_id: Optional[str] = None) -> LoanProduct:
        """Activate or deactivate a product; existing loans are unaffected"""
        product = self.get_product(tenant_id, product_id)
        product.is_active = is_active
        product.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, product.id, product.to_dict())

        event = AuditEventType.PRODUCT_UPDATED if is_active else AuditEventType.PRODUCT_DEACTIVATED
        record_best_effort(
            self.audit_trail, tenant_id, actor_id, event, "loan_product", product.id,
            f"Loan product {product.code} {'activated' if is_active else 'deactivated'}"
        )
        return product

    def update_description(self, tenant_id: str, product_id: str, description: str,
                           actor_id: Optional[str] = None) -> LoanProduct:
        """Change a product's description"""
        product = self.get_product(tenant_id, product_id)
        product.description = description or ""
        product.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, product.id, product.to_dict())

        record_best_effort(
            self.audit_trail, tenant_id, actor_id, AuditEventType.PRODUCT_UPDATED,
            "loan_product", product.id, f"Loan product {product.code} description updated"
        )
        return product

    @staticmethod
    def _decimal(value: Number, field_name: str) -> Decimal:
        try:
            return to_decimal(value)
        except ValueError:
            raise ValidationError(f"{field_name} must be a decimal number", field=field_name)
