"""
Tests for core models.
"""
from django.test import TestCase

from apps.core.exceptions import TenantContextMissing
from apps.rbac.models import Permission, Role
from apps.tenants.models import Organization
from apps.tenants.services.tenant_context import run_in_tenant


class TestBaseModel(TestCase):
    """Test BaseModel functionality."""

    def test_uuid_primary_key(self):
        """Test that BaseModel uses UUID as primary key."""
        obj = Permission.objects.create(resource='reports', action='read')
        self.assertEqual(len(str(obj.id)), 36)

    def test_timestamps(self):
        """Test that created_at and updated_at are set automatically."""
        obj = Permission.objects.create(resource='reports', action='read')
        self.assertIsNotNone(obj.created_at)
        self.assertLessEqual(obj.created_at, obj.updated_at)

    def test_soft_delete(self):
        """Test soft delete functionality."""
        obj = Organization.objects.create(name='Soft', slug='soft')

        obj.delete()

        self.assertTrue(obj.is_deleted)
        self.assertFalse(Organization.objects.filter(id=obj.id).exists())
        self.assertTrue(Organization.objects_with_deleted.filter(id=obj.id).exists())

    def test_restore(self):
        obj = Organization.objects.create(name='Soft', slug='soft')
        obj.delete()

        obj.restore()

        self.assertFalse(obj.is_deleted)
        self.assertTrue(Organization.objects.filter(id=obj.id).exists())

    def test_queryset_soft_delete(self):
        """Test that QuerySet.delete() is soft and hard_delete() is not."""
        Permission.objects.create(resource='reports', action='read')
        Permission.objects.create(resource='reports', action='write')

        Permission.objects.filter(resource='reports').delete()
        self.assertEqual(Permission.objects_with_deleted.filter(resource='reports').count(), 2)

        Permission.objects_with_deleted.filter(resource='reports').hard_delete()
        self.assertEqual(Permission.objects_with_deleted.filter(resource='reports').count(), 0)


class TestTenantScopedManager(TestCase):
    """Test the tenant_scoped manager."""

    def setUp(self):
        self.acme = Organization.objects.create(name='Acme', slug='acme')
        self.globex = Organization.objects.create(name='Globex', slug='globex')

    def test_requires_bound_tenant(self):
        with self.assertRaises(TenantContextMissing):
            Role.tenant_scoped.count()

    def test_filters_to_bound_tenant(self):
        """Test that only the bound organization's rows are visible."""
        slugs = run_in_tenant(
            self.acme.id,
            lambda ctx: set(Role.tenant_scoped.values_list('organization_id', flat=True)),
        )

        self.assertEqual(slugs, {self.acme.id})

    def test_unscoped_manager_sees_all(self):
        self.assertEqual(Role.objects.filter(slug='owner').count(), 2)
