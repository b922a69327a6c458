"""
Tenant context manager.

Every unit of work that touches tenant-scoped rows runs inside
``tenant_transaction()``. On PostgreSQL the tenant id is bound to the
transaction with ``set_config(..., is_local => true)`` so row-level-security
policies filter every statement; the binding disappears when the
transaction ends and can never leak to another request sharing the pooled
connection. On every engine the bound tenant is also published to the
``tenant_scoped`` model managers through a ContextVar.
"""
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass

from django.conf import settings
from django.db import DEFAULT_DB_ALIAS, InterfaceError, OperationalError, connections, transaction

from apps.core.exceptions import DatabaseUnavailable, TenantContextConflict, TenantContextMissing
from apps.tenants.context import (
    _bind_tenant,
    _unbind_tenant,
    get_bound_tenant,
    get_current_tenant_id,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantContext:
    """The tenant bound to the running unit of work."""
    tenant_id: str
    using: str = DEFAULT_DB_ALIAS

    @property
    def organization_id(self) -> uuid.UUID:
        """The bound tenant as an Organization primary key."""
        return uuid.UUID(self.tenant_id)


def _setting_name():
    return getattr(settings, 'TENANT_SETTING_NAME', 'app.tenant_id')


def _apply_binding(connection, tenant_id):
    """Bind tenant_id to the connection for the current transaction only."""
    if connection.vendor == 'postgresql':
        with connection.cursor() as cursor:
            cursor.execute('SELECT set_config(%s, %s, true)', [_setting_name(), tenant_id])
    # Engines without RLS only get the application-level binding
    connection.tessera_tenant_id = tenant_id


def _release_binding(connection):
    """
    Clear the binding after the atomic block has exited.

    When the block was nested in an outer transaction (a savepoint), a
    transaction-local setting would survive until the outer commit, so it
    is blanked explicitly.
    """
    connection.tessera_tenant_id = None
    if (
        connection.vendor == 'postgresql'
        and connection.in_atomic_block
        and not connection.needs_rollback
    ):
        with connection.cursor() as cursor:
            cursor.execute('SELECT set_config(%s, %s, true)', [_setting_name(), ''])


def _ensure_connection(connection):
    try:
        connection.ensure_connection()
    except (OperationalError, InterfaceError) as exc:
        logger.error(
            "Database unavailable while binding tenant",
            extra={'database': connection.alias},
            exc_info=True,
        )
        raise DatabaseUnavailable(
            "Database is unavailable; refusing to run without tenant scope",
            details={'database': connection.alias},
        ) from exc


@contextmanager
def tenant_transaction(tenant_id, using=DEFAULT_DB_ALIAS):
    """
    Run the enclosed block in one transaction bound to ``tenant_id``.

    Re-entering for the tenant that is already bound opens a savepoint and
    reuses the binding. Entering for a different tenant raises
    TenantContextConflict.

    Raises:
        TenantContextMissing: If tenant_id is empty
        TenantContextConflict: If another tenant is already bound
        DatabaseUnavailable: If the database cannot be reached
    """
    if tenant_id is None or not str(tenant_id).strip():
        raise TenantContextMissing("A tenant id is required to open a tenant transaction")
    tenant_id = str(tenant_id)

    bound = get_bound_tenant()
    if bound is not None:
        if bound == (tenant_id, using):
            with transaction.atomic(using=using):
                yield TenantContext(tenant_id, using)
            return
        raise TenantContextConflict(
            "Another tenant is already bound to this unit of work",
            details={'bound_tenant_id': bound[0], 'requested_tenant_id': tenant_id},
        )

    connection = connections[using]
    _ensure_connection(connection)

    token = None
    try:
        with transaction.atomic(using=using):
            _apply_binding(connection, tenant_id)
            token = _bind_tenant(tenant_id, using)
            logger.debug("Tenant bound", extra={'tenant_id': tenant_id, 'database': using})
            yield TenantContext(tenant_id, using)
    finally:
        if token is not None:
            _unbind_tenant(token)
            _release_binding(connection)


def run_in_tenant(tenant_id, work, using=DEFAULT_DB_ALIAS):
    """
    Execute ``work(ctx)`` inside a tenant transaction and return its result.

    Args:
        tenant_id: Organization id to bind
        work: Callable receiving the TenantContext
        using: Database alias

    Returns:
        Whatever ``work`` returns
    """
    with tenant_transaction(tenant_id, using=using) as ctx:
        return work(ctx)


def run_in_current_tenant(work, using=DEFAULT_DB_ALIAS):
    """
    Execute ``work(ctx)`` bound to the tenant of the active request.

    Raises:
        TenantContextMissing: If no request tenant is set, e.g. when called
            from a background job that forgot to pick a tenant
    """
    tenant_id = get_current_tenant_id()
    if not tenant_id:
        raise TenantContextMissing(
            "No tenant is set for the current request",
        )
    return run_in_tenant(tenant_id, work, using=using)
