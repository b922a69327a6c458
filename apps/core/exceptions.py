"""
Domain exceptions and the DRF exception handler.

Every error raised by the authorization core derives from TesseraException
and carries a stable ``code``, an HTTP ``status_code`` and a ``details``
dict. The handler renders them as::

    {"error": {"code": ..., "message": ..., "details": {...}}, "request_id": ...}
"""
import logging
from rest_framework.response import Response
from rest_framework import status

logger = logging.getLogger(__name__)


class TesseraException(Exception):
    """Base exception for Tessera-specific errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = 'internal_error'

    def __init__(self, message, details=None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Tenant context

class TenantContextMissing(TesseraException):
    """Raised when tenant-scoped data is touched without a bound tenant."""
    status_code = status.HTTP_403_FORBIDDEN
    code = 'tenant_context_missing'


class TenantContextConflict(TesseraException):
    """Raised when a different tenant is bound inside an active tenant transaction."""
    code = 'tenant_context_conflict'


class DatabaseUnavailable(TesseraException):
    """Raised when the database cannot be reached to bind a tenant."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = 'database_unavailable'


# Organization hierarchy

class OrganizationNotFound(TesseraException):
    status_code = status.HTTP_404_NOT_FOUND
    code = 'organization_not_found'


class OrganizationSlugConflict(TesseraException):
    status_code = status.HTTP_409_CONFLICT
    code = 'organization_slug_conflict'


class InvalidOrganizationSlug(TesseraException):
    """Raised when no usable slug can be given or derived from the name."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'invalid_organization_slug'


class OrganizationStateError(TesseraException):
    """Raised when an organization is in the wrong lifecycle state for the operation."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'organization_state_error'


class OrgCycleDetected(TesseraException):
    """Raised when a reparent would make an organization its own ancestor."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'org_cycle_detected'


class OrgDepthExceeded(TesseraException):
    """Raised when a reparent or create would push the tree past the depth limit."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'org_depth_exceeded'


# RBAC

class RoleNotFound(TesseraException):
    status_code = status.HTTP_404_NOT_FOUND
    code = 'role_not_found'


class RoleSlugConflict(TesseraException):
    status_code = status.HTTP_409_CONFLICT
    code = 'role_slug_conflict'


class MemberNotFound(TesseraException):
    status_code = status.HTTP_404_NOT_FOUND
    code = 'member_not_found'


class MemberAlreadyExists(TesseraException):
    status_code = status.HTTP_409_CONFLICT
    code = 'member_already_exists'


class UnknownPermission(TesseraException):
    """Raised when a permission key does not exist in the catalog."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'unknown_permission'


class OwnershipConstraintViolation(TesseraException):
    """Raised when an operation would leave an organization without an Owner."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'ownership_constraint_violation'


class DefaultRoleConstraintViolation(TesseraException):
    """Raised when a default role would be renamed or deleted."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'default_role_constraint_violation'


# Request authorization

class Unauthenticated(TesseraException):
    """Raised when a protected operation is called without a valid session."""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = 'unauthenticated'


class Forbidden(TesseraException):
    """Raised when the principal lacks a required role, organization or permission."""
    status_code = status.HTTP_403_FORBIDDEN
    code = 'forbidden'


def error_payload(exc, request_id=None):
    """Render a TesseraException into the public error shape."""
    return {
        'error': {
            'code': exc.code,
            'message': exc.message,
            'details': exc.details,
        },
        'request_id': request_id,
    }


def custom_exception_handler(exc, context):
    """
    Custom exception handler that logs errors and returns consistent format.
    """
    request = context.get('request')
    request_id = getattr(request, 'request_id', None) if request else None

    if isinstance(exc, TesseraException):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"Domain error: {exc.__class__.__name__}",
            extra={
                'code': exc.code,
                'error_message': exc.message,
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            },
        )
        return Response(error_payload(exc, request_id), status=exc.status_code)

    # DRF views import the permission classes, which import this module
    from rest_framework.views import exception_handler

    # Call DRF's default exception handler for framework errors
    response = exception_handler(exc, context)

    if response is None:
        logger.error(
            f"API Exception: {exc.__class__.__name__}",
            extra={
                'exception': str(exc),
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            },
            exc_info=True
        )
        return Response(
            {
                'error': {
                    'code': 'internal_error',
                    'message': 'An unexpected error occurred',
                    'details': {},
                },
                'request_id': request_id,
            },
            status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    # Add request_id to all error responses
    if isinstance(response.data, dict):
        response.data['request_id'] = request_id

    return response
