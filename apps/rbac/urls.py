"""
RBAC API URLs.

Provides endpoints for:
- Session tokens
- Role management (CRUD, role permissions)
- Membership management (add, role change, removal, ownership transfer)
- The caller's effective permissions
"""
from django.urls import path
from apps.rbac.views import (
    TokenView,
    RoleListView,
    RoleDetailView,
    RolePermissionsView,
    MemberListView,
    MemberDetailView,
    MemberRoleView,
    OwnershipTransferView,
    MyPermissionsView,
)

app_name = 'rbac'

urlpatterns = [
    path('auth/token', TokenView.as_view(), name='auth-token'),

    # Role endpoints
    path('roles', RoleListView.as_view(), name='role-list'),
    path('roles/<uuid:role_id>', RoleDetailView.as_view(), name='role-detail'),
    path('roles/<uuid:role_id>/permissions', RolePermissionsView.as_view(), name='role-permissions'),

    # Member endpoints
    path('members', MemberListView.as_view(), name='member-list'),
    path('members/<uuid:member_id>', MemberDetailView.as_view(), name='member-detail'),
    path('members/<uuid:member_id>/role', MemberRoleView.as_view(), name='member-role'),
    path('ownership/transfer', OwnershipTransferView.as_view(), name='ownership-transfer'),

    path('me/permissions', MyPermissionsView.as_view(), name='my-permissions'),
]
