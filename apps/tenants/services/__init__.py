"""
Services for tenant context, organization hierarchy and lifecycle.
"""
from .tenant_context import TenantContext, tenant_transaction, run_in_tenant, run_in_current_tenant
from .organization_service import OrganizationService, UNSET

__all__ = [
    'TenantContext',
    'tenant_transaction',
    'run_in_tenant',
    'run_in_current_tenant',
    'OrganizationService',
    'UNSET',
]
