"""
Tests for the request authorization pipeline.
"""
import pytest
from unittest.mock import Mock, patch
from django.test import RequestFactory
from rest_framework.views import APIView

from apps.core.exceptions import Forbidden, Unauthenticated
from apps.core.permissions import (
    AUTHENTICATED,
    OperationPolicy,
    PolicyPermission,
    Principal,
    PrincipalKind,
    authorize,
    get_view_policy,
    policy,
)
from apps.rbac.authentication import Session
from apps.rbac.services import RBACService


ORG_ID = '4f1d9c0e-8b7a-4c61-9d3e-2a5b6c7d8e9f'


class NoSessionResolver:
    def resolve(self, request):
        return None


@pytest.fixture
def request_factory():
    """Provide Django request factory."""
    return RequestFactory()


@pytest.fixture
def make_request(request_factory):
    """Build a request carrying an already resolved session."""
    def build(session=None, method='get'):
        request = getattr(request_factory, method)('/v1/members')
        request.request_id = 'req-123'
        request.auth_session = session
        return request
    return build


def member_session(org_id=ORG_ID):
    return Session(user_id='user-1', global_role='user', active_organization_id=org_id)


def superadmin_session(org_id=None):
    return Session(user_id='root-1', global_role='superadmin', active_organization_id=org_id)


class TestOperationPolicy:
    """Test OperationPolicy normalization."""

    def test_lists_become_frozensets(self):
        operation_policy = OperationPolicy(roles=['superadmin'], permissions=['a:read', 'a:read'])

        assert operation_policy.roles == frozenset({'superadmin'})
        assert operation_policy.permissions == frozenset({'a:read'})

    def test_single_string(self):
        """Test that a lone key is not split into characters."""
        assert OperationPolicy(permissions='members:read').permissions == frozenset({'members:read'})

    def test_defaults_require_session_only(self):
        assert AUTHENTICATED == OperationPolicy()
        assert not AUTHENTICATED.public
        assert not AUTHENTICATED.require_organization


class TestPrincipal:
    """Test Principal construction from sessions."""

    def test_member(self):
        principal = Principal.from_session(member_session())

        assert principal.kind is PrincipalKind.MEMBER
        assert principal.organization_id == ORG_ID
        assert not principal.is_superadmin

    def test_superadmin(self):
        principal = Principal.from_session(superadmin_session())

        assert principal.is_superadmin
        assert not principal.is_anonymous

    def test_anonymous(self):
        assert Principal.anonymous().is_anonymous


class TestAuthorize:
    """Test the pipeline steps in order."""

    def test_public_skips_everything(self, make_request):
        """Test that public operations never resolve a session."""
        request = make_request()
        del request.auth_session

        with patch('apps.rbac.authentication.get_session_resolver') as resolver:
            principal = authorize(request, OperationPolicy(public=True))

        assert principal.is_anonymous
        resolver.assert_not_called()

    def test_no_session_is_401(self, make_request):
        with pytest.raises(Unauthenticated):
            authorize(make_request(), AUTHENTICATED)

    def test_optional_auth_allows_anonymous(self, make_request):
        principal = authorize(make_request(), OperationPolicy(optional_auth=True))

        assert principal.is_anonymous

    def test_optional_auth_keeps_session(self, make_request):
        principal = authorize(make_request(member_session()), OperationPolicy(optional_auth=True))

        assert principal.user_id == 'user-1'

    def test_role_check(self, make_request):
        """Test that a missing global role is 403 with the required roles."""
        with patch('apps.core.permissions.SecurityLogger.log_permission_denied') as log:
            with pytest.raises(Forbidden) as exc_info:
                authorize(make_request(member_session()), OperationPolicy(roles=['superadmin']))

        assert exc_info.value.details == {'required_roles': ['superadmin']}
        assert log.call_args.args[1] == 'role'

    def test_role_check_passes(self, make_request):
        principal = authorize(make_request(superadmin_session()), OperationPolicy(roles=['superadmin']))

        assert principal.kind is PrincipalKind.SUPERADMIN

    def test_organization_required(self, make_request):
        """Test that sessions without an active organization are refused."""
        with pytest.raises(Forbidden):
            authorize(make_request(member_session(org_id=None)), OperationPolicy(require_organization=True))

    def test_organization_required_applies_to_superadmin(self, make_request):
        with pytest.raises(Forbidden):
            authorize(make_request(superadmin_session()), OperationPolicy(require_organization=True))

    def test_missing_permissions(self, make_request):
        """Test that missing keys are reported sorted."""
        with patch.object(RBACService, 'resolve_permissions', return_value=frozenset({'members:read'})):
            with pytest.raises(Forbidden) as exc_info:
                authorize(
                    make_request(member_session()),
                    OperationPolicy(permissions=['members:write', 'members:delete', 'members:read']),
                )

        assert exc_info.value.details == {'missing_permissions': ['members:delete', 'members:write']}

    def test_permissions_granted(self, make_request):
        with patch.object(RBACService, 'resolve_permissions', return_value=frozenset({'members:read'})) as resolve:
            principal = authorize(make_request(member_session()), OperationPolicy(permissions=['members:read']))

        assert principal.organization_id == ORG_ID
        resolve.assert_called_once_with('user-1', ORG_ID)

    def test_superadmin_skips_permission_lookup(self, make_request):
        """Test that the superadmin bypass never reads storage."""
        with patch.object(RBACService, 'resolve_permissions') as resolve:
            authorize(make_request(superadmin_session(ORG_ID)), OperationPolicy(permissions=['roles:delete']))

        resolve.assert_not_called()

    def test_permission_check_without_organization(self, make_request):
        """Test that permissions cannot be granted outside an organization."""
        with pytest.raises(Forbidden):
            authorize(make_request(member_session(org_id=None)), OperationPolicy(permissions=['users:read']))

    def test_resolver_used_without_middleware(self, make_request, settings):
        """Test that the configured resolver runs when middleware did not."""
        settings.AUTHZ_SESSION_RESOLVER = 'apps.core.tests.test_permissions.NoSessionResolver'
        request = make_request(member_session())
        del request.auth_session

        with pytest.raises(Unauthenticated):
            authorize(request, AUTHENTICATED)


class TestGetViewPolicy:
    """Test policy lookup precedence."""

    def test_method_policy_wins(self, request_factory):
        @policy(roles=['superadmin'])
        class View(APIView):
            @policy(public=True)
            def get(self, request):
                pass

            def post(self, request):
                pass

        view = View()

        assert get_view_policy(view, request_factory.get('/')).public
        assert get_view_policy(view, request_factory.post('/')).roles == frozenset({'superadmin'})

    def test_default_is_authenticated(self, request_factory):
        class View(APIView):
            def get(self, request):
                pass

        assert get_view_policy(View(), request_factory.get('/')) is AUTHENTICATED


class TestPolicyPermission:
    """Test the DRF permission class."""

    def test_sets_principal(self, make_request):
        view = Mock(spec=APIView)
        view.policy = OperationPolicy()
        request = make_request(member_session())

        assert PolicyPermission().has_permission(request, view)
        assert request.principal.user_id == 'user-1'

    def test_raises_unauthenticated(self, make_request):
        view = Mock(spec=APIView)
        view.policy = OperationPolicy()

        with pytest.raises(Unauthenticated):
            PolicyPermission().has_permission(make_request(), view)
