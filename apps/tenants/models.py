"""
Organization model.

Organizations are the tenants of Tessera. They form a shallow tree through
``parent_organization``; the shape of that tree is guarded by
``apps.tenants.services.hierarchy`` and never validated here.
"""
from django.db import models
from apps.core.models import BaseModel, BaseModelManager


class OrganizationManager(BaseModelManager):
    """Manager for live (not soft-deleted) organizations."""

    def by_slug(self, slug):
        """Find organization by slug."""
        return self.filter(slug=slug).first()


class Organization(BaseModel):
    """
    An isolated customer account and the unit of tenancy.

    Roles and members belong to exactly one organization and are only
    visible while that organization is bound as the current tenant.
    Soft-deleted organizations keep their rows for a grace period
    (``delete_scheduled_for``) and can be restored until then.
    """

    name = models.CharField(
        max_length=255,
        help_text="Organization display name"
    )
    slug = models.SlugField(
        unique=True,
        max_length=100,
        help_text="URL-friendly identifier"
    )
    parent_organization = models.ForeignKey(
        'self',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='child_organizations',
        db_index=True,
        help_text="Parent organization (null for a root)"
    )
    delete_scheduled_for = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When a soft-deleted organization is permanently purged"
    )

    objects = OrganizationManager()

    class Meta:
        db_table = 'organizations'
        ordering = ['name']
        indexes = [
            models.Index(fields=['parent_organization', 'deleted_at']),
        ]

    def __str__(self):
        return f"{self.name} ({self.slug})"

    @property
    def is_root(self):
        return self.parent_organization_id is None
