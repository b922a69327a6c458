"""
Request context middleware.

Resolves the caller's session once per request and installs the
RequestContext (request id, tenant id, user id) that the tenant context
manager and the JSON log formatter read.
"""
import logging
import uuid
from django.utils.deprecation import MiddlewareMixin

from apps.rbac.authentication import get_session_resolver
from apps.tenants.context import activate_request_context, deactivate_request_context

logger = logging.getLogger(__name__)


class RequestContextMiddleware(MiddlewareMixin):
    """
    Install the per-request context.

    This middleware:
    1. Takes X-Request-ID from the request or generates one
    2. Resolves the session through the configured session resolver and
       stores it as request.auth_session (None when there is none)
    3. Installs the RequestContext for the lifetime of the request
    4. Echoes X-Request-ID on the response and removes the context

    It never rejects a request; the authorization pipeline decides that.
    """

    def process_request(self, request):
        request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())
        request.request_id = request_id

        session = get_session_resolver().resolve(request)
        request.auth_session = session

        request._request_context_token = activate_request_context(
            request_id,
            tenant_id=session.active_organization_id if session else None,
            user_id=session.user_id if session else None,
        )
        return None

    def process_response(self, request, response):
        token = getattr(request, '_request_context_token', None)
        if token is not None:
            deactivate_request_context(token)
            request._request_context_token = None

        if hasattr(request, 'request_id'):
            response['X-Request-ID'] = request.request_id
        return response
