"""
Organization REST API views.

Implements endpoints for:
- Organization creation (optionally under a parent)
- Renames and reparenting
- Soft deletion, restore and deletion impact
"""
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from drf_spectacular.utils import extend_schema, extend_schema_view

from apps.core.exceptions import Forbidden
from apps.core.permissions import PolicyPermission, policy
from apps.rbac.services import RBACService
from apps.tenants.serializers import (
    DeletionImpactSerializer,
    OrganizationCreateSerializer,
    OrganizationSerializer,
    OrganizationUpdateSerializer,
)
from apps.tenants.services import UNSET, OrganizationService


def _require_active_organization(principal, org_id):
    """Members may only act on the organization their session is active in."""
    if principal.is_superadmin:
        return
    if str(org_id) != str(principal.organization_id):
        raise Forbidden(
            "Operation must target the active organization",
            details={'organization_id': str(org_id)},
        )


def _require_parent_write(principal, parent_id):
    if parent_id and not RBACService.has_permissions(principal, parent_id, ['organizations:write']):
        raise Forbidden(
            "Missing required permissions on the parent organization",
            details={'parent_id': str(parent_id), 'missing_permissions': ['organizations:write']},
        )


@extend_schema(tags=['Organizations'], summary='Create organization',
               request=OrganizationCreateSerializer, responses={201: OrganizationSerializer})
class OrganizationListView(APIView):
    """
    POST /v1/organizations

    Any signed-in user may create a root organization and becomes its Owner.
    Creating under a parent needs organizations:write in the parent.
    """
    permission_classes = [PolicyPermission]

    def post(self, request):
        serializer = OrganizationCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        _require_parent_write(request.principal, data.get('parent_id'))

        organization = OrganizationService.create_organization(
            name=data['name'],
            slug=data.get('slug'),
            parent_id=data.get('parent_id'),
            created_by=request.principal.user_id,
        )
        return Response(OrganizationSerializer(organization).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    patch=extend_schema(tags=['Organizations'], summary='Update or reparent organization',
                        request=OrganizationUpdateSerializer, responses=OrganizationSerializer),
    delete=extend_schema(tags=['Organizations'], summary='Soft delete organization',
                         responses=OrganizationSerializer),
)
class OrganizationDetailView(APIView):
    """
    PATCH  /v1/organizations/{org_id}  (organizations:write)
    DELETE /v1/organizations/{org_id}  (organizations:delete)
    """
    permission_classes = [PolicyPermission]

    @policy(permissions=['organizations:write'], require_organization=True)
    def patch(self, request, org_id):
        _require_active_organization(request.principal, org_id)

        serializer = OrganizationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        parent_id = data.get('parent_id', UNSET)
        if parent_id is not UNSET:
            _require_parent_write(request.principal, parent_id)

        organization = OrganizationService.update_organization(
            org_id,
            name=data.get('name'),
            slug=data.get('slug'),
            parent_id=parent_id,
        )
        return Response(OrganizationSerializer(organization).data)

    @policy(permissions=['organizations:delete'], require_organization=True)
    def delete(self, request, org_id):
        _require_active_organization(request.principal, org_id)
        organization = OrganizationService.delete_organization(org_id)
        return Response(OrganizationSerializer(organization).data)


@extend_schema(tags=['Organizations'], summary='Restore deleted organization',
               request=None, responses=OrganizationSerializer)
@policy(roles=['superadmin'])
class OrganizationRestoreView(APIView):
    """
    POST /v1/organizations/{org_id}/restore

    Superadmin only: members of a deleted organization have no active
    organization to act from.
    """
    permission_classes = [PolicyPermission]

    def post(self, request, org_id):
        organization = OrganizationService.restore_organization(org_id)
        return Response(OrganizationSerializer(organization).data)


@extend_schema(tags=['Organizations'], summary='Deletion impact',
               responses=DeletionImpactSerializer)
@policy(permissions=['organizations:read'], require_organization=True)
class OrganizationDeletionImpactView(APIView):
    """
    GET /v1/organizations/{org_id}/deletion-impact  (organizations:read)
    """
    permission_classes = [PolicyPermission]

    def get(self, request, org_id):
        _require_active_organization(request.principal, org_id)
        impact = OrganizationService.get_deletion_impact(org_id)
        return Response(DeletionImpactSerializer(impact).data)
