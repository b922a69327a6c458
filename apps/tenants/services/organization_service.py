"""
Organization lifecycle service.

Handles:
- Organization creation (optionally under a parent, with an Owner member)
- Renames and reparenting, validated and written in one transaction
- Soft deletion with a grace period, and restore
- Deletion impact reports
"""
import logging
from datetime import timedelta
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.text import slugify

from apps.core.exceptions import (
    InvalidOrganizationSlug,
    OrganizationNotFound,
    OrganizationSlugConflict,
    OrganizationStateError,
)
from apps.tenants.models import Organization
from apps.tenants.services.hierarchy import (
    OrganizationTree,
    collect_descendants,
    lock_hierarchy,
    normalize_org_id,
    validate_new_child,
    validate_reparent,
)
from apps.tenants.services.tenant_context import run_in_tenant

logger = logging.getLogger(__name__)

# Days a soft-deleted organization can still be restored
DELETION_GRACE_DAYS = 30


class _Unset:
    def __repr__(self):
        return 'UNSET'


# Sentinel for "leave parent unchanged"; None means "detach to root"
UNSET = _Unset()


class OrganizationService:
    """
    Service for organization lifecycle and hierarchy changes.

    Every method that can change the shape of the tree takes the hierarchy
    lock first, so validation and the write see the same tree.
    """

    @staticmethod
    def _get_live(org_id, for_update=False) -> Organization:
        qs = Organization.objects.filter(id=org_id)
        if for_update:
            qs = qs.select_for_update()
        organization = qs.first()
        if organization is None:
            raise OrganizationNotFound(
                "Organization not found",
                details={'organization_id': str(org_id)},
            )
        return organization

    @staticmethod
    def _parse_parent_id(parent_id):
        try:
            return normalize_org_id(parent_id)
        except ValueError as exc:
            raise OrganizationNotFound(
                "Parent organization not found",
                details={'parent_id': str(parent_id)},
            ) from exc

    @staticmethod
    def _ensure_slug_free(slug, exclude_id=None):
        qs = Organization.objects_with_deleted.filter(slug=slug)
        if exclude_id is not None:
            qs = qs.exclude(id=exclude_id)
        if qs.exists():
            raise OrganizationSlugConflict(
                f'Organization with slug "{slug}" already exists',
                details={'slug': slug},
            )

    @classmethod
    @transaction.atomic
    def create_organization(cls, name: str, slug: Optional[str] = None,
                            parent_id=None, created_by=None) -> Organization:
        """
        Create an organization.

        Default roles are seeded by the post_save signal inside this
        transaction. When ``created_by`` is given that user becomes the Owner.

        Args:
            name: Display name
            slug: URL-friendly identifier (derived from name if not provided)
            parent_id: Parent organization ID, or None for a root
            created_by: User (or user ID) who becomes the Owner

        Returns:
            Organization instance

        Raises:
            OrganizationNotFound: If the parent does not exist
            OrgDepthExceeded: If the parent is already at the maximum depth
            OrganizationSlugConflict: If the slug is taken
            InvalidOrganizationSlug: If no slug is given and the name yields none
        """
        slug = slug or slugify(name)
        if not slug:
            raise InvalidOrganizationSlug(
                "Organization slug cannot be empty",
                details={'name': name},
            )
        parent_id = cls._parse_parent_id(parent_id)

        if parent_id is not None:
            lock_hierarchy()
            tree = OrganizationTree(lock=True)
            if not tree.exists(parent_id):
                raise OrganizationNotFound(
                    "Parent organization not found",
                    details={'parent_id': str(parent_id)},
                )
            validate_new_child(parent_id, tree)

        cls._ensure_slug_free(slug)
        try:
            with transaction.atomic():
                organization = Organization.objects.create(
                    name=name,
                    slug=slug,
                    parent_organization_id=parent_id,
                )
        except IntegrityError as exc:
            raise OrganizationSlugConflict(
                f'Organization with slug "{slug}" already exists',
                details={'slug': slug},
            ) from exc

        if created_by is not None:
            from apps.rbac.services import OWNER_ROLE_SLUG, RBACService

            user_id = getattr(created_by, 'id', created_by)
            RBACService.add_member(organization.id, user_id, OWNER_ROLE_SLUG)

        logger.info(
            "Organization created",
            extra={
                'organization_id': str(organization.id),
                'slug': slug,
                'parent_id': str(parent_id) if parent_id else None,
            },
        )
        return organization

    @classmethod
    @transaction.atomic
    def update_organization(cls, org_id, name: Optional[str] = None,
                            slug: Optional[str] = None, parent_id=UNSET) -> Organization:
        """
        Rename and/or reparent an organization.

        Args:
            org_id: Organization ID
            name: New display name
            slug: New slug
            parent_id: New parent ID, None to make it a root, UNSET to keep

        Raises:
            OrganizationNotFound: If the organization or new parent does not exist
            OrgCycleDetected: If the new parent is the organization or a descendant
            OrgDepthExceeded: If the move would make the tree too deep
            OrganizationSlugConflict: If the new slug is taken
            InvalidOrganizationSlug: If the new slug is empty
        """
        if parent_id is not UNSET:
            lock_hierarchy()

        organization = cls._get_live(org_id, for_update=True)
        update_fields = []

        if parent_id is not UNSET:
            parent_id = cls._parse_parent_id(parent_id)
            if parent_id is not None:
                tree = OrganizationTree(lock=True)
                if not tree.exists(parent_id):
                    raise OrganizationNotFound(
                        "Parent organization not found",
                        details={'parent_id': str(parent_id)},
                    )
                validate_reparent(organization.id, parent_id, tree)
            organization.parent_organization_id = parent_id
            update_fields.append('parent_organization')

        if name is not None:
            organization.name = name
            update_fields.append('name')

        if slug is not None and slug != organization.slug:
            if not slug:
                raise InvalidOrganizationSlug(
                    "Organization slug cannot be empty",
                    details={'organization_id': str(organization.id)},
                )
            cls._ensure_slug_free(slug, exclude_id=organization.id)
            organization.slug = slug
            update_fields.append('slug')

        if update_fields:
            try:
                with transaction.atomic():
                    organization.save(update_fields=update_fields + ['updated_at'])
            except IntegrityError as exc:
                raise OrganizationSlugConflict(
                    f'Organization with slug "{organization.slug}" already exists',
                    details={'slug': organization.slug},
                ) from exc
            logger.info(
                "Organization updated",
                extra={'organization_id': str(organization.id), 'fields': update_fields},
            )
        return organization

    @classmethod
    @transaction.atomic
    def delete_organization(cls, org_id) -> Organization:
        """
        Soft delete an organization.

        Children are not deleted: they are detached and become roots. The
        organization can be restored until ``delete_scheduled_for``.

        Raises:
            OrganizationNotFound: If the organization does not exist
            OrganizationStateError: If it is already deleted
        """
        lock_hierarchy()
        organization = (
            Organization.objects_with_deleted.select_for_update().filter(id=org_id).first()
        )
        if organization is None:
            raise OrganizationNotFound(
                "Organization not found",
                details={'organization_id': str(org_id)},
            )
        if organization.is_deleted:
            raise OrganizationStateError(
                "Organization is already deleted",
                details={'organization_id': str(org_id)},
            )

        detached = Organization.objects.filter(
            parent_organization_id=organization.id
        ).update(parent_organization=None, updated_at=timezone.now())

        now = timezone.now()
        organization.deleted_at = now
        organization.delete_scheduled_for = now + timedelta(days=DELETION_GRACE_DAYS)
        organization.save(update_fields=['deleted_at', 'delete_scheduled_for', 'updated_at'])

        logger.info(
            "Organization soft deleted",
            extra={
                'organization_id': str(organization.id),
                'children_detached': detached,
                'delete_scheduled_for': organization.delete_scheduled_for.isoformat(),
            },
        )
        return organization

    @classmethod
    @transaction.atomic
    def restore_organization(cls, org_id) -> Organization:
        """
        Restore a soft-deleted organization.

        Children detached at deletion stay roots. If the former parent is gone
        the organization is restored as a root; otherwise the old link is
        re-validated against the current tree.

        Raises:
            OrganizationNotFound: If the organization does not exist
            OrganizationStateError: If it is not deleted
            OrgDepthExceeded: If the former parent has since moved too deep
        """
        lock_hierarchy()
        organization = (
            Organization.objects_with_deleted.select_for_update().filter(id=org_id).first()
        )
        if organization is None:
            raise OrganizationNotFound(
                "Organization not found",
                details={'organization_id': str(org_id)},
            )
        if not organization.is_deleted:
            raise OrganizationStateError(
                "Organization is not deleted",
                details={'organization_id': str(org_id)},
            )

        parent_id = organization.parent_organization_id
        if parent_id is not None:
            tree = OrganizationTree(lock=True)
            if tree.exists(parent_id):
                validate_reparent(organization.id, parent_id, tree)
            else:
                organization.parent_organization_id = None

        organization.deleted_at = None
        organization.delete_scheduled_for = None
        organization.save(update_fields=[
            'deleted_at', 'delete_scheduled_for', 'parent_organization', 'updated_at',
        ])
        logger.info("Organization restored", extra={'organization_id': str(organization.id)})
        return organization

    @classmethod
    def get_deletion_impact(cls, org_id) -> dict:
        """
        Size the blast radius of deleting an organization.

        Member counts are read per organization under that organization's
        tenant binding.

        Returns:
            Dict with member_count, child_count, descendant_count and
            descendant_member_count
        """
        organization = cls._get_live(org_id)
        tree = OrganizationTree()
        descendants = collect_descendants(organization.id, tree)

        def count_members(ctx):
            from apps.rbac.models import Member
            return Member.tenant_scoped.count()

        return {
            'organization_id': str(organization.id),
            'member_count': run_in_tenant(organization.id, count_members),
            'child_count': len(tree.children_of(organization.id)),
            'descendant_count': len(descendants),
            'descendant_member_count': sum(
                run_in_tenant(descendant_id, count_members) for descendant_id in descendants
            ),
        }
