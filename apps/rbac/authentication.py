"""
Session resolution.

A session resolver turns raw request credentials into a ``Session``
(user id, global role, active organization). The resolver class is
configurable with ``AUTHZ_SESSION_RESOLVER``; the default reads a JWT from
the ``Authorization: Bearer`` header.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.utils.module_loading import import_string
from rest_framework.authentication import BaseAuthentication

logger = logging.getLogger(__name__)

DEFAULT_SESSION_RESOLVER = 'apps.rbac.authentication.JWTSessionResolver'


@dataclass(frozen=True)
class Session:
    """Credentials of a resolved caller."""
    user_id: str
    global_role: Optional[str] = None
    active_organization_id: Optional[str] = None


class JWTSessionResolver:
    """
    Resolve sessions from ``Authorization: Bearer <jwt>``.

    Claims: ``sub`` (user id), ``org`` (active organization, optional),
    ``exp``. The global role always comes from the user row, never from
    the token.
    """

    keyword = 'Bearer'

    def get_token(self, request) -> Optional[str]:
        header = request.META.get('HTTP_AUTHORIZATION', '')
        parts = header.split()
        if len(parts) != 2 or parts[0] != self.keyword:
            return None
        return parts[1]

    def resolve(self, request) -> Optional[Session]:
        token = self.get_token(request)
        if not token:
            return None

        from apps.rbac.models import User
        from apps.rbac.services import AuthService

        payload = AuthService.decode_token(token)
        if not payload:
            return None

        try:
            user = User.objects.active().filter(id=payload['sub']).first()
        except ValidationError:
            user = None
        if user is None:
            logger.warning(
                "Session token for unknown or inactive user",
                extra={'request_id': getattr(request, 'request_id', None)},
            )
            return None

        return Session(
            user_id=str(user.id),
            global_role=user.global_role,
            active_organization_id=payload.get('org') or None,
        )


def get_session_resolver():
    """Instantiate the configured session resolver."""
    path = getattr(settings, 'AUTHZ_SESSION_RESOLVER', DEFAULT_SESSION_RESOLVER)
    return import_string(path)()


class SessionAuthentication(BaseAuthentication):
    """
    DRF authentication class that reuses the session resolved by
    RequestContextMiddleware.

    Sets ``request.user`` to the User and ``request.auth`` to the Session.
    Never rejects a request itself; the authorization pipeline decides
    whether a session is required.
    """

    def authenticate(self, request):
        django_request = request._request
        session = getattr(django_request, 'auth_session', None)
        if session is None:
            return None

        from apps.rbac.models import User
        user = User.objects.filter(id=session.user_id).first()
        if user is None:
            return None
        return (user, session)

    def authenticate_header(self, request):
        return JWTSessionResolver.keyword
