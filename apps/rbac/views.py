"""
RBAC REST API views.

Implements endpoints for:
- Session tokens
- Role management (CRUD, role permissions)
- Membership management (add, role change, removal, ownership transfer)
- The caller's effective permissions

All organization-scoped endpoints act on the active organization of the
caller's session.
"""
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from drf_spectacular.utils import extend_schema, extend_schema_view

from apps.core.exceptions import Unauthenticated
from apps.core.permissions import PolicyPermission, policy
from apps.rbac.models import User
from apps.rbac.services import AuthService, RBACService
from apps.rbac.serializers import (
    MemberCreateSerializer,
    MemberRoleSerializer,
    MemberSerializer,
    OwnershipTransferSerializer,
    PermissionSerializer,
    RoleCreateSerializer,
    RoleSerializer,
    RoleUpdateSerializer,
    TokenSerializer,
)


@extend_schema_view(
    post=extend_schema(
        tags=['Auth'],
        summary='Issue session token',
        request=TokenSerializer,
        description='Exchange email and password for a JWT, optionally pinned to an organization.',
    )
)
@policy(public=True)
class TokenView(APIView):
    """
    POST /v1/auth/token

    Public endpoint returning a bearer token.
    """
    permission_classes = [PolicyPermission]

    def post(self, request):
        serializer = TokenSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        user = User.objects.active().filter(
            email=User.objects.normalize_email(serializer.validated_data['email'])
        ).first()
        if user is None or not user.check_password(serializer.validated_data['password']):
            raise Unauthenticated("Invalid email or password")

        token = AuthService.issue_token(user, serializer.validated_data.get('organization_id'))
        return Response({'token': token, 'token_type': 'Bearer'})


@extend_schema_view(
    get=extend_schema(tags=['RBAC - Roles'], summary='List roles', responses=RoleSerializer(many=True)),
    post=extend_schema(tags=['RBAC - Roles'], summary='Create custom role', request=RoleCreateSerializer),
)
class RoleListView(APIView):
    """
    GET  /v1/roles  (roles:read)
    POST /v1/roles  (roles:write)
    """
    permission_classes = [PolicyPermission]

    @policy(permissions=['roles:read'], require_organization=True)
    def get(self, request):
        roles = RBACService.list_roles(request.principal.organization_id)
        return Response({
            'count': len(roles),
            'results': RoleSerializer(roles, many=True).data,
        })

    @policy(permissions=['roles:write'], require_organization=True)
    def post(self, request):
        serializer = RoleCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = RBACService.create_role(
            request.principal.organization_id,
            name=serializer.validated_data['name'],
            permissions=serializer.validated_data['permissions'],
            description=serializer.validated_data['description'],
        )
        return Response(RoleSerializer(role).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    patch=extend_schema(tags=['RBAC - Roles'], summary='Update role', request=RoleUpdateSerializer),
    delete=extend_schema(tags=['RBAC - Roles'], summary='Delete custom role'),
)
class RoleDetailView(APIView):
    """
    PATCH  /v1/roles/{role_id}  (roles:write)
    DELETE /v1/roles/{role_id}  (roles:delete)

    Deleting a role moves its holders to Viewer.
    """
    permission_classes = [PolicyPermission]

    @policy(permissions=['roles:write'], require_organization=True)
    def patch(self, request, role_id):
        serializer = RoleUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = RBACService.update_role(
            request.principal.organization_id,
            role_id,
            **serializer.validated_data
        )
        return Response(RoleSerializer(role).data)

    @policy(permissions=['roles:delete'], require_organization=True)
    def delete(self, request, role_id):
        reassigned = RBACService.delete_role(request.principal.organization_id, role_id)
        return Response({'deleted': True, 'members_reassigned': reassigned})


@extend_schema(tags=['RBAC - Roles'], summary='List role permissions',
               responses=PermissionSerializer(many=True))
@policy(permissions=['roles:read'], require_organization=True)
class RolePermissionsView(APIView):
    """
    GET /v1/roles/{role_id}/permissions  (roles:read)
    """
    permission_classes = [PolicyPermission]

    def get(self, request, role_id):
        permissions = RBACService.get_role_permissions(request.principal.organization_id, role_id)
        return Response(PermissionSerializer(permissions, many=True).data)


@extend_schema_view(
    get=extend_schema(tags=['RBAC - Members'], summary='List members', responses=MemberSerializer(many=True)),
    post=extend_schema(tags=['RBAC - Members'], summary='Add member', request=MemberCreateSerializer),
)
class MemberListView(APIView):
    """
    GET  /v1/members  (members:read)
    POST /v1/members  (members:write)
    """
    permission_classes = [PolicyPermission]

    @policy(permissions=['members:read'], require_organization=True)
    def get(self, request):
        members = RBACService.list_members(request.principal.organization_id)
        return Response({
            'count': len(members),
            'results': MemberSerializer(members, many=True).data,
        })

    @policy(permissions=['members:write'], require_organization=True)
    def post(self, request):
        serializer = MemberCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        member = RBACService.add_member(
            request.principal.organization_id,
            serializer.validated_data['user_id'],
            serializer.validated_data['role'],
        )
        return Response(MemberSerializer(member).data, status=status.HTTP_201_CREATED)


@extend_schema(tags=['RBAC - Members'], summary='Remove member')
@policy(permissions=['members:delete'], require_organization=True)
class MemberDetailView(APIView):
    """
    DELETE /v1/members/{member_id}  (members:delete)

    The last Owner cannot be removed.
    """
    permission_classes = [PolicyPermission]

    def delete(self, request, member_id):
        RBACService.remove_member(request.principal.organization_id, member_id)
        return Response(status=status.HTTP_204_NO_CONTENT)


@extend_schema(tags=['RBAC - Members'], summary='Change member role', request=MemberRoleSerializer)
@policy(permissions=['members:write'], require_organization=True)
class MemberRoleView(APIView):
    """
    PATCH /v1/members/{member_id}/role  (members:write)

    The last Owner cannot be demoted.
    """
    permission_classes = [PolicyPermission]

    def patch(self, request, member_id):
        serializer = MemberRoleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        member = RBACService.change_member_role(
            request.principal.organization_id,
            member_id,
            serializer.validated_data['role_id'],
        )
        return Response(MemberSerializer(member).data)


@extend_schema(tags=['RBAC - Members'], summary='Transfer ownership',
               request=OwnershipTransferSerializer)
@policy(require_organization=True)
class OwnershipTransferView(APIView):
    """
    POST /v1/ownership/transfer

    Owner-only: not gated by a permission key but by the caller holding
    the Owner role, which the service checks.
    """
    permission_classes = [PolicyPermission]

    def post(self, request):
        serializer = OwnershipTransferSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        member = RBACService.transfer_ownership(
            request.principal.user_id,
            serializer.validated_data['target_member_id'],
        )
        return Response({'transferred': True, 'owner': MemberSerializer(member).data})


@extend_schema(tags=['RBAC - Permissions'], summary='My effective permissions')
@policy(require_organization=True)
class MyPermissionsView(APIView):
    """
    GET /v1/me/permissions

    Effective permission keys of the caller in the active organization.
    """
    permission_classes = [PolicyPermission]

    def get(self, request):
        principal = request.principal
        keys = RBACService.effective_permissions(principal, principal.organization_id)
        return Response({
            'organization_id': principal.organization_id,
            'principal_kind': principal.kind.value,
            'permissions': sorted(keys),
        })
