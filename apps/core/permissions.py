"""
Request authorization pipeline.

This module provides:
- Principal: who is calling (anonymous, member or superadmin)
- OperationPolicy: what an operation requires, declared once per operation
- authorize(): the single pipeline that checks a request against a policy
- PolicyPermission: DRF permission class running authorize() for a view
- @policy: decorator attaching an OperationPolicy to a view or handler

Pipeline order, cheapest first:
1. public operations skip everything
2. session resolution (the only step that yields 401)
3. global role check
4. active organization check
5. permission check (the only step that reads storage)
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from rest_framework.permissions import BasePermission

from apps.core.exceptions import Forbidden, Unauthenticated
from apps.core.logging import SecurityLogger

logger = logging.getLogger(__name__)

SUPERADMIN_ROLE = 'superadmin'

# Marks "middleware did not run", as opposed to "no session"
_UNRESOLVED = object()


class PrincipalKind(str, enum.Enum):
    ANONYMOUS = 'anonymous'
    MEMBER = 'member'
    SUPERADMIN = 'superadmin'


@dataclass(frozen=True)
class Principal:
    """The caller of an operation, tagged by kind."""
    kind: PrincipalKind
    user_id: Optional[str] = None
    global_role: Optional[str] = None
    organization_id: Optional[str] = None

    @classmethod
    def anonymous(cls):
        return cls(kind=PrincipalKind.ANONYMOUS)

    @classmethod
    def from_session(cls, session):
        kind = (
            PrincipalKind.SUPERADMIN
            if session.global_role == SUPERADMIN_ROLE
            else PrincipalKind.MEMBER
        )
        return cls(
            kind=kind,
            user_id=session.user_id,
            global_role=session.global_role,
            organization_id=session.active_organization_id,
        )

    @property
    def is_anonymous(self):
        return self.kind is PrincipalKind.ANONYMOUS

    @property
    def is_superadmin(self):
        return self.kind is PrincipalKind.SUPERADMIN


def _frozen(values):
    if values is None:
        return frozenset()
    if isinstance(values, str):
        return frozenset({values})
    return frozenset(values)


@dataclass(frozen=True)
class OperationPolicy:
    """
    Authorization requirements of one operation.

    Attributes:
        public: Skip every check
        optional_auth: Allow callers without a session as anonymous
        roles: Global roles of which the caller must hold one
        permissions: Permission keys the caller must hold, all of them
        require_organization: The session must carry an active organization
    """
    public: bool = False
    optional_auth: bool = False
    roles: FrozenSet[str] = field(default_factory=frozenset)
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    require_organization: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'roles', _frozen(self.roles))
        object.__setattr__(self, 'permissions', _frozen(self.permissions))


AUTHENTICATED = OperationPolicy()


def resolve_session(request):
    """
    Session of the request; resolved by RequestContextMiddleware when it ran,
    otherwise by the configured resolver.
    """
    session = getattr(request, 'auth_session', _UNRESOLVED)
    if session is _UNRESOLVED:
        from apps.rbac.authentication import get_session_resolver
        session = get_session_resolver().resolve(request)
    return session


def authorize(request, policy: OperationPolicy) -> Principal:
    """
    Run the authorization pipeline for one request.

    Returns:
        The authorized Principal

    Raises:
        Unauthenticated: No session and the operation needs one
        Forbidden: Missing global role, active organization or permission
    """
    path = getattr(request, 'path', None)

    if policy.public:
        return Principal.anonymous()

    session = resolve_session(request)
    if session is None:
        if policy.optional_auth:
            return Principal.anonymous()
        logger.info(
            "Unauthenticated request",
            extra={'path': path, 'request_id': getattr(request, 'request_id', None)},
        )
        raise Unauthenticated("Authentication credentials were not provided or are invalid")

    principal = Principal.from_session(session)

    if policy.roles and principal.global_role not in policy.roles:
        SecurityLogger.log_permission_denied(principal, 'role', policy.roles, path)
        raise Forbidden(
            "Insufficient global role",
            details={'required_roles': sorted(policy.roles)},
        )

    if policy.require_organization and not principal.organization_id:
        SecurityLogger.log_permission_denied(principal, 'organization', None, path)
        raise Forbidden("An active organization is required for this operation")

    if policy.permissions:
        from apps.rbac.services import RBACService

        granted = RBACService.effective_permissions(principal, principal.organization_id)
        missing = policy.permissions - granted
        if missing:
            SecurityLogger.log_permission_denied(principal, 'permission', missing, path)
            raise Forbidden(
                "Missing required permissions",
                details={'missing_permissions': sorted(missing)},
            )

    return principal


def policy(**requirements):
    """
    Attach an OperationPolicy to a view class or to one handler method.

    Usage:
        @policy(permissions=['roles:read'], require_organization=True)
        class RoleListView(APIView):
            permission_classes = [PolicyPermission]

    Or per method:
        class RoleListView(APIView):
            @policy(permissions=['roles:write'], require_organization=True)
            def post(self, request):
                ...
    """
    operation_policy = OperationPolicy(**requirements)

    def decorator(view_or_method):
        view_or_method.policy = operation_policy
        return view_or_method

    return decorator


def get_view_policy(view, request) -> OperationPolicy:
    """Per-method policy first, then the view's, then AUTHENTICATED."""
    handler = getattr(view, (request.method or '').lower(), None)
    method_policy = getattr(handler, 'policy', None)
    if isinstance(method_policy, OperationPolicy):
        return method_policy
    view_policy = getattr(view, 'policy', None)
    if isinstance(view_policy, OperationPolicy):
        return view_policy
    return AUTHENTICATED


class PolicyPermission(BasePermission):
    """
    DRF permission class that runs the authorization pipeline.

    The authorized principal is stored as ``request.principal``. Failures
    raise Unauthenticated or Forbidden, rendered by custom_exception_handler.
    """

    def has_permission(self, request, view):
        operation_policy = get_view_policy(view, request)
        request.principal = authorize(request, operation_policy)
        logger.debug(
            "Request authorized",
            extra={
                'view': view.__class__.__name__,
                'method': request.method,
                'principal_kind': request.principal.kind.value,
            },
        )
        return True
