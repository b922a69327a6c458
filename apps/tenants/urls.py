"""
Organization API URLs.
"""
from django.urls import path
from apps.tenants.views import (
    OrganizationListView,
    OrganizationDetailView,
    OrganizationRestoreView,
    OrganizationDeletionImpactView,
)

app_name = 'tenants'

urlpatterns = [
    path('organizations', OrganizationListView.as_view(), name='organization-list'),
    path('organizations/<uuid:org_id>', OrganizationDetailView.as_view(), name='organization-detail'),
    path('organizations/<uuid:org_id>/restore', OrganizationRestoreView.as_view(), name='organization-restore'),
    path(
        'organizations/<uuid:org_id>/deletion-impact',
        OrganizationDeletionImpactView.as_view(),
        name='organization-deletion-impact',
    ),
]
