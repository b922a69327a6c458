"""
Request-scoped and unit-of-work-scoped context.

Two context variables live here:

* the request context (request id, tenant id, user id) set by
  RequestContextMiddleware for the lifetime of one request, and
* the bound tenant, set only while a tenant transaction is open.

Both are ContextVars so concurrent threads and asyncio tasks never
observe each other's values.
"""
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RequestContext:
    """Identity of the request currently being served."""
    request_id: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None


_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    'tessera_request_context', default=None
)

# (tenant_id, database alias) while a tenant transaction is open
_bound_tenant: ContextVar[Optional[tuple]] = ContextVar(
    'tessera_bound_tenant', default=None
)


def get_request_context() -> Optional[RequestContext]:
    return _request_context.get()


def get_current_tenant_id() -> Optional[str]:
    """Tenant of the active request, or None outside a tenant request."""
    ctx = _request_context.get()
    return ctx.tenant_id if ctx else None


def activate_request_context(request_id, tenant_id=None, user_id=None):
    """Install a RequestContext; returns the token for deactivate_request_context()."""
    return _request_context.set(RequestContext(
        request_id=str(request_id),
        tenant_id=str(tenant_id) if tenant_id else None,
        user_id=str(user_id) if user_id else None,
    ))


def deactivate_request_context(token):
    _request_context.reset(token)


@contextmanager
def request_context_scope(request_id, tenant_id=None, user_id=None):
    """
    Install a RequestContext for the duration of the block.

    The previous context is restored on exit, including when the block raises.
    """
    token = activate_request_context(request_id, tenant_id, user_id)
    try:
        yield _request_context.get()
    finally:
        deactivate_request_context(token)


def get_bound_tenant_id() -> Optional[str]:
    """Tenant bound to the open tenant transaction, if any."""
    bound = _bound_tenant.get()
    return bound[0] if bound else None


def get_bound_tenant():
    return _bound_tenant.get()


def _bind_tenant(tenant_id, using):
    return _bound_tenant.set((str(tenant_id), using))


def _unbind_tenant(token):
    _bound_tenant.reset(token)
