"""
Core models for Tessera.
Provides BaseModel with UUID primary keys, soft delete, and timestamp fields,
plus the tenant-scoped manager used by organization-owned tables.
"""
import uuid
from django.db import models
from django.utils import timezone

from apps.tenants.context import get_bound_tenant_id


class BaseModelQuerySet(models.QuerySet):
    """QuerySet with soft delete support."""

    def delete(self):
        """Soft delete all objects in queryset."""
        return self.update(deleted_at=timezone.now())

    def hard_delete(self):
        """Permanently delete all objects in queryset."""
        return super().delete()


class BaseModelManager(models.Manager.from_queryset(BaseModelQuerySet)):
    """Manager that excludes soft-deleted objects by default."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


class TenantScopedManager(BaseModelManager):
    """
    Manager that only returns rows owned by the tenant bound to the
    current unit of work.

    Mirrors the row-level-security policy installed on PostgreSQL so the
    same isolation holds on engines without RLS. Reading through this
    manager outside of ``tenant_transaction()`` raises TenantContextMissing.

    The owning column is named by ``tenant_field`` (default: organization).
    """

    tenant_field = 'organization'

    def __init__(self, tenant_field=None):
        super().__init__()
        if tenant_field:
            self.tenant_field = tenant_field

    def get_queryset(self):
        from apps.core.exceptions import TenantContextMissing

        tenant_id = get_bound_tenant_id()
        if tenant_id is None:
            raise TenantContextMissing(
                f"{self.model.__name__} rows are tenant-scoped; "
                "run the query inside a tenant transaction"
            )
        return super().get_queryset().filter(**{f'{self.tenant_field}_id': tenant_id})


class BaseModel(models.Model):
    """
    Abstract base model with UUID primary key, soft delete, and timestamps.

    All models in Tessera inherit from this base model to ensure
    consistent behavior across the platform.
    """
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier"
    )

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when the record was created"
    )

    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when the record was last updated"
    )

    deleted_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Timestamp when the record was soft deleted"
    )

    # Default manager excludes soft-deleted objects
    objects = BaseModelManager()

    # Manager that includes soft-deleted objects
    objects_with_deleted = models.Manager.from_queryset(BaseModelQuerySet)()

    class Meta:
        abstract = True
        ordering = ['-created_at']

    def delete(self, using=None, keep_parents=False):
        """Soft delete the object."""
        self.deleted_at = timezone.now()
        self.save(using=using, update_fields=['deleted_at', 'updated_at'])

    def hard_delete(self, using=None, keep_parents=False):
        """Permanently delete the object."""
        return super().delete(using=using, keep_parents=keep_parents)

    def restore(self):
        """Restore a soft-deleted object."""
        self.deleted_at = None
        self.save(update_fields=['deleted_at', 'updated_at'])

    @property
    def is_deleted(self):
        """Check if the object is soft deleted."""
        return self.deleted_at is not None
