"""
RBAC and authentication services.

Implements:
- RBACService: permission resolution, default role seeding, role and
  membership management with the owner floor, ownership transfer
- AuthService: JWT issuing and decoding

Every organization-scoped read and write runs inside a tenant transaction
and goes through the ``tenant_scoped`` managers.
"""
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Dict, FrozenSet, Iterable, List, Optional

import jwt
from django.conf import settings
from django.core.cache import cache
from django.db import IntegrityError, transaction

from apps.core.exceptions import (
    DefaultRoleConstraintViolation,
    MemberAlreadyExists,
    MemberNotFound,
    OwnershipConstraintViolation,
    RoleNotFound,
    RoleSlugConflict,
    UnknownPermission,
)
from apps.core.logging import SecurityLogger
from apps.rbac.models import Member, Permission, Role, RolePermission, User
from apps.tenants.services.tenant_context import run_in_current_tenant, run_in_tenant

logger = logging.getLogger(__name__)


RESOURCES = ('users', 'organizations', 'members', 'invitations', 'roles')
ACTIONS = ('read', 'write', 'delete')

# Global permission catalogue, "resource:action"
PERMISSION_CATALOG = tuple(f"{resource}:{action}" for resource in RESOURCES for action in ACTIONS)
ALL_PERMISSIONS: FrozenSet[str] = frozenset(PERMISSION_CATALOG)

OWNER_ROLE_SLUG = 'owner'
ADMIN_ROLE_SLUG = 'admin'
MEMBER_ROLE_SLUG = 'member'
VIEWER_ROLE_SLUG = 'viewer'

# Role every holder of a deleted custom role falls back to
FALLBACK_ROLE_SLUG = VIEWER_ROLE_SLUG

DEFAULT_ROLES = {
    OWNER_ROLE_SLUG: {
        'name': 'Owner',
        'description': 'Full access - organization owner',
        'permissions': list(PERMISSION_CATALOG),
    },
    ADMIN_ROLE_SLUG: {
        'name': 'Admin',
        'description': 'Manage members, roles, and invitations',
        'permissions': [
            'users:read', 'users:write',
            'organizations:read', 'organizations:write',
            'members:read', 'members:write', 'members:delete',
            'invitations:read', 'invitations:write', 'invitations:delete',
            'roles:read', 'roles:write', 'roles:delete',
        ],
    },
    MEMBER_ROLE_SLUG: {
        'name': 'Member',
        'description': 'Standard member access',
        'permissions': [
            'users:read', 'organizations:read', 'members:read',
            'invitations:read', 'roles:read',
        ],
    },
    VIEWER_ROLE_SLUG: {
        'name': 'Viewer',
        'description': 'Read-only access',
        'permissions': ['users:read', 'organizations:read', 'members:read', 'roles:read'],
    },
}

_SLUG_RE = re.compile(r'[^a-z0-9]+')


def role_slug(name: str) -> str:
    """'Billing Manager!' -> 'billing-manager'"""
    return _SLUG_RE.sub('-', (name or '').lower()).strip('-')


class RBACService:
    """
    Service for RBAC operations: permission resolution, roles, members, ownership.
    """

    PERMISSION_CACHE_PREFIX = 'rbac:perms'

    # Cache

    @classmethod
    def _cache_ttl(cls):
        return getattr(settings, 'RBAC_PERMISSION_CACHE_TTL', 60)

    @classmethod
    def _generation_key(cls, organization_id):
        return f"{cls.PERMISSION_CACHE_PREFIX}:gen:{organization_id}"

    @classmethod
    def _generation(cls, organization_id):
        key = cls._generation_key(organization_id)
        generation = cache.get(key)
        if generation is None:
            generation = uuid.uuid4().hex
            cache.add(key, generation, None)
            generation = cache.get(key, generation)
        return generation

    @classmethod
    def invalidate_permission_cache(cls, organization_id):
        """
        Drop every cached permission set of an organization.

        Bumps the organization's cache generation now and again after the
        surrounding transaction commits, so a concurrent reader cannot
        re-cache the pre-commit state.
        """
        def bump():
            cache.set(cls._generation_key(organization_id), uuid.uuid4().hex, None)

        bump()
        transaction.on_commit(bump)

    # Resolution

    @classmethod
    def resolve_permissions(cls, user_id, organization_id) -> FrozenSet[str]:
        """
        Resolve the effective permission keys of a user in an organization.

        Looks up the user's membership, then the permissions of the member's
        role. Results are cached for RBAC_PERMISSION_CACHE_TTL seconds.

        Args:
            user_id: User ID
            organization_id: Organization ID

        Returns:
            Frozen set of keys (e.g., {'members:read', 'roles:read'});
            empty when the user is not a member
        """
        organization_id = str(organization_id)
        cache_key = (
            f"{cls.PERMISSION_CACHE_PREFIX}:{organization_id}:"
            f"{cls._generation(organization_id)}:{user_id}"
        )
        cached = cache.get(cache_key)
        if cached is not None:
            return frozenset(cached)

        def load(ctx):
            member = Member.tenant_scoped.filter(user_id=user_id).only('role_id').first()
            if member is None:
                return frozenset()
            rows = Permission.objects.filter(
                role_permissions__role_id=member.role_id
            ).values_list('resource', 'action')
            return frozenset(f"{resource}:{action}" for resource, action in rows)

        keys = run_in_tenant(organization_id, load)
        cache.set(cache_key, sorted(keys), cls._cache_ttl())
        return keys

    @classmethod
    def effective_permissions(cls, principal, organization_id) -> FrozenSet[str]:
        """
        Effective permissions of a principal; superadmins get the whole
        catalogue without touching storage.
        """
        if principal.is_superadmin:
            return ALL_PERMISSIONS
        if principal.user_id is None or organization_id is None:
            return frozenset()
        return cls.resolve_permissions(principal.user_id, organization_id)

    @classmethod
    def has_permissions(cls, principal, organization_id, keys: Iterable[str]) -> bool:
        """True when the principal holds every key in ``keys``."""
        if principal.is_superadmin:
            return True
        required = set(keys)
        if not required:
            return True
        return required.issubset(cls.effective_permissions(principal, organization_id))

    # Catalogue and default roles

    @classmethod
    def seed_permissions(cls) -> List[Permission]:
        """Create any missing catalogue permission (idempotent)."""
        permissions = []
        for key in PERMISSION_CATALOG:
            resource, action = Permission.objects.split_key(key)
            permission, _ = Permission.objects.get_or_create_key(
                key, description=f"{action.capitalize()} {resource}"
            )
            permissions.append(permission)
        return permissions

    @classmethod
    def _permission_map(cls) -> Dict[str, Permission]:
        return {p.key: p for p in Permission.objects.all()}

    @classmethod
    def _resolve_permission_objects(cls, keys) -> List[Permission]:
        """
        Raises:
            UnknownPermission: If any key is not in the catalogue
        """
        permission_map = cls._permission_map()
        unknown = sorted(set(keys) - set(permission_map))
        if unknown:
            raise UnknownPermission(
                "Unknown permission keys",
                details={'unknown': unknown},
            )
        return [permission_map[key] for key in sorted(set(keys))]

    @classmethod
    def seed_default_roles(cls, organization_id) -> Dict[str, Role]:
        """
        Create the default roles of an organization if they are absent.

        Safe to call more than once: existing roles are kept, only missing
        roles and missing role permissions are added.

        Returns:
            Dict of slug -> Role
        """
        cls.seed_permissions()
        permission_map = cls._permission_map()

        def seed(ctx):
            roles = {}
            created_count = 0
            for slug, definition in DEFAULT_ROLES.items():
                role, created = Role.objects.get_or_create_role(
                    organization_id=ctx.organization_id,
                    slug=slug,
                    name=definition['name'],
                    description=definition['description'],
                    is_default=True,
                )
                created_count += int(created)
                for key in definition['permissions']:
                    RolePermission.objects.grant_permission(role, permission_map[key])
                roles[slug] = role
            return roles, created_count

        roles, created_count = run_in_tenant(organization_id, seed)
        cls.invalidate_permission_cache(organization_id)

        logger.info(
            "Default roles seeded",
            extra={'organization_id': str(organization_id), 'roles_created': created_count},
        )
        return roles

    # Roles

    @classmethod
    def _get_role(cls, role_id, for_update=False) -> Role:
        qs = Role.tenant_scoped.filter(id=role_id)
        if for_update:
            qs = qs.select_for_update()
        role = qs.first()
        if role is None:
            raise RoleNotFound("Role not found", details={'role_id': str(role_id)})
        return role

    @classmethod
    def _get_role_by_slug(cls, slug) -> Role:
        role = Role.tenant_scoped.filter(slug=slug).first()
        if role is None:
            raise RoleNotFound(f"Role '{slug}' not found", details={'slug': slug})
        return role

    @classmethod
    def _get_role_ref(cls, ref) -> Role:
        """Look a role up by id, or by slug when ref is not a UUID."""
        try:
            role_id = uuid.UUID(str(ref))
        except ValueError:
            return cls._get_role_by_slug(ref)
        return cls._get_role(role_id)

    @classmethod
    def list_roles(cls, organization_id) -> List[Role]:
        return run_in_tenant(
            organization_id,
            lambda ctx: list(Role.tenant_scoped.order_by('-is_default', 'name')),
        )

    @classmethod
    def get_role_permissions(cls, organization_id, role_id) -> List[Permission]:
        def load(ctx):
            role = cls._get_role(role_id)
            return list(role.get_permissions().order_by('resource', 'action'))

        return run_in_tenant(organization_id, load)

    @classmethod
    def create_role(cls, organization_id, name: str, permissions: Iterable[str] = (),
                    description: str = '') -> Role:
        """
        Create a custom role.

        Raises:
            RoleSlugConflict: If a role with the same slug exists
            UnknownPermission: If a permission key is not in the catalogue
        """
        slug = role_slug(name)

        def create(ctx):
            if Role.tenant_scoped.filter(slug=slug).exists():
                raise RoleSlugConflict(
                    f'Role with slug "{slug}" already exists',
                    details={'slug': slug},
                )
            permission_objects = cls._resolve_permission_objects(permissions)
            role = Role.objects.create(
                organization_id=ctx.organization_id,
                slug=slug,
                name=name,
                description=description or '',
                is_default=False,
            )
            for permission in permission_objects:
                RolePermission.objects.grant_permission(role, permission)
            return role

        role = run_in_tenant(organization_id, create)
        logger.info(
            "Role created",
            extra={'organization_id': str(organization_id), 'role_id': str(role.id), 'slug': slug},
        )
        return role

    @classmethod
    def update_role(cls, organization_id, role_id, name: Optional[str] = None,
                    description: Optional[str] = None,
                    permissions: Optional[Iterable[str]] = None) -> Role:
        """
        Update a role's fields and/or replace its permissions.

        Renaming re-derives the slug. Default roles keep their name but
        their description and permissions may change.

        Raises:
            RoleNotFound, RoleSlugConflict, UnknownPermission,
            DefaultRoleConstraintViolation (renaming a default role)
        """
        def update(ctx):
            role = cls._get_role(role_id, for_update=True)
            update_fields = []

            if name is not None and name != role.name:
                if role.is_default:
                    raise DefaultRoleConstraintViolation(
                        "Default roles cannot be renamed",
                        details={'role_id': str(role.id), 'slug': role.slug},
                    )
                slug = role_slug(name)
                if Role.tenant_scoped.filter(slug=slug).exclude(id=role.id).exists():
                    raise RoleSlugConflict(
                        f'Role with slug "{slug}" already exists',
                        details={'slug': slug},
                    )
                role.name, role.slug = name, slug
                update_fields += ['name', 'slug']

            if description is not None:
                role.description = description
                update_fields.append('description')

            if update_fields:
                role.save(update_fields=update_fields + ['updated_at'])

            if permissions is not None:
                permission_objects = cls._resolve_permission_objects(permissions)
                RolePermission.objects_with_deleted.filter(role=role).hard_delete()
                for permission in permission_objects:
                    RolePermission.objects.grant_permission(role, permission)

            return role

        role = run_in_tenant(organization_id, update)
        cls.invalidate_permission_cache(organization_id)
        return role

    @classmethod
    def delete_role(cls, organization_id, role_id) -> int:
        """
        Delete a custom role, moving its holders to the Viewer role first.

        Returns:
            Number of members that were reassigned

        Raises:
            RoleNotFound: If the role does not exist in the organization
            DefaultRoleConstraintViolation: If the role is a default role
        """
        def delete(ctx):
            role = cls._get_role(role_id, for_update=True)
            if role.is_default:
                raise DefaultRoleConstraintViolation(
                    "Default roles cannot be deleted",
                    details={'role_id': str(role.id), 'slug': role.slug},
                )
            fallback = cls._get_role_by_slug(FALLBACK_ROLE_SLUG)
            # Soft-deleted memberships still reference the role
            reassigned = Member.objects_with_deleted.filter(
                organization_id=ctx.organization_id, role=role
            ).update(role=fallback)
            # Hard delete: role_permissions cascade, the slug becomes reusable
            role.hard_delete()
            return role, reassigned

        role, reassigned = run_in_tenant(organization_id, delete)
        cls.invalidate_permission_cache(organization_id)

        SecurityLogger.log_event(
            'role_deleted',
            level='info',
            organization_id=str(organization_id),
            role_id=str(role_id),
            slug=role.slug,
            members_reassigned=reassigned,
        )
        return reassigned

    # Members

    @classmethod
    def _get_member(cls, member_id, for_update=False) -> Member:
        qs = Member.tenant_scoped.filter(id=member_id).select_related('role')
        if for_update:
            qs = qs.select_for_update()
        member = qs.first()
        if member is None:
            raise MemberNotFound("Member not found", details={'member_id': str(member_id)})
        return member

    @classmethod
    def _owner_count(cls) -> int:
        # Locked read; FOR UPDATE cannot be combined with COUNT
        return len(list(
            Member.tenant_scoped.filter(role__slug=OWNER_ROLE_SLUG)
            .select_for_update()
            .values_list('id', flat=True)
        ))

    @classmethod
    def list_members(cls, organization_id) -> List[Member]:
        return run_in_tenant(
            organization_id,
            lambda ctx: list(Member.tenant_scoped.select_related('user', 'role')),
        )

    @classmethod
    def add_member(cls, organization_id, user_id, role_slug_or_id=MEMBER_ROLE_SLUG) -> Member:
        """
        Add a user to an organization.

        Args:
            organization_id: Organization ID
            user_id: User ID
            role_slug_or_id: Role slug (e.g., 'owner') or Role ID

        Raises:
            RoleNotFound: If the role does not exist in the organization
            MemberAlreadyExists: If the user is already a member
        """
        def add(ctx):
            role = cls._get_role_ref(role_slug_or_id)
            if Member.tenant_scoped.filter(user_id=user_id).exists():
                raise MemberAlreadyExists(
                    "User is already a member of this organization",
                    details={'user_id': str(user_id)},
                )
            try:
                with transaction.atomic():
                    return Member.objects.create(
                        organization_id=ctx.organization_id,
                        user_id=user_id,
                        role=role,
                    )
            except IntegrityError as exc:
                raise MemberAlreadyExists(
                    "User is already a member of this organization",
                    details={'user_id': str(user_id)},
                ) from exc

        member = run_in_tenant(organization_id, add)
        cls.invalidate_permission_cache(organization_id)
        return member

    @classmethod
    def change_member_role(cls, organization_id, member_id, role_id) -> Member:
        """
        Give a member a different role.

        Raises:
            MemberNotFound, RoleNotFound
            OwnershipConstraintViolation: If the member is the last Owner
                and the new role is not Owner
        """
        def change(ctx):
            role = cls._get_role(role_id)
            member = cls._get_member(member_id, for_update=True)
            if (
                member.role.slug == OWNER_ROLE_SLUG
                and role.slug != OWNER_ROLE_SLUG
                and cls._owner_count() <= 1
            ):
                raise OwnershipConstraintViolation(
                    "Cannot remove the last Owner - transfer ownership first",
                    details={'member_id': str(member.id)},
                )
            member.role = role
            member.save(update_fields=['role', 'updated_at'])
            return member

        member = run_in_tenant(organization_id, change)
        cls.invalidate_permission_cache(organization_id)
        return member

    @classmethod
    def remove_member(cls, organization_id, member_id) -> None:
        """
        Remove a member from an organization.

        Raises:
            MemberNotFound
            OwnershipConstraintViolation: If the member is the last Owner
        """
        def remove(ctx):
            member = cls._get_member(member_id, for_update=True)
            if member.role.slug == OWNER_ROLE_SLUG and cls._owner_count() <= 1:
                raise OwnershipConstraintViolation(
                    "Cannot remove the last Owner - transfer ownership first",
                    details={'member_id': str(member.id)},
                )
            # Hard delete so the user can be re-added later
            member.hard_delete()

        run_in_tenant(organization_id, remove)
        cls.invalidate_permission_cache(organization_id)
        logger.info(
            "Member removed",
            extra={'organization_id': str(organization_id), 'member_id': str(member_id)},
        )

    @classmethod
    def transfer_ownership(cls, current_user_id, target_member_id, organization_id=None) -> Member:
        """
        Make another member the Owner; the current Owner becomes Admin.

        Both role changes commit together or not at all. Without an explicit
        organization_id the tenant of the active request is used.

        Args:
            current_user_id: User ID of the acting Owner
            target_member_id: Member ID of the new Owner
            organization_id: Organization ID (defaults to the request tenant)

        Returns:
            The target Member, now holding the Owner role

        Raises:
            OwnershipConstraintViolation: If the actor is not the Owner or the
                target is not another member of the same organization
            TenantContextMissing: If no organization is given or set
        """
        def transfer(ctx):
            owner_role = cls._get_role_by_slug(OWNER_ROLE_SLUG)
            admin_role = cls._get_role_by_slug(ADMIN_ROLE_SLUG)

            current = (
                Member.tenant_scoped.select_for_update()
                .filter(user_id=current_user_id, role=owner_role)
                .first()
            )
            if current is None:
                raise OwnershipConstraintViolation(
                    "Only the Owner can transfer ownership",
                    details={'user_id': str(current_user_id)},
                )

            target = Member.tenant_scoped.select_for_update().filter(id=target_member_id).first()
            if target is None:
                raise OwnershipConstraintViolation(
                    "Target must be a member of the same organization",
                    details={'member_id': str(target_member_id)},
                )
            if target.id == current.id:
                raise OwnershipConstraintViolation(
                    "Ownership cannot be transferred to the current Owner",
                    details={'member_id': str(target_member_id)},
                )

            current.role = admin_role
            current.save(update_fields=['role', 'updated_at'])
            target.role = owner_role
            target.save(update_fields=['role', 'updated_at'])
            return target

        if organization_id is None:
            target = run_in_current_tenant(transfer)
        else:
            target = run_in_tenant(organization_id, transfer)

        cls.invalidate_permission_cache(target.organization_id)
        SecurityLogger.log_ownership_transferred(
            target.organization_id, current_user_id, target.user_id
        )
        return target


class AuthService:
    """
    Service for issuing and decoding session tokens.
    """

    @classmethod
    def issue_token(cls, user: User, organization_id=None) -> str:
        """
        Generate a JWT for a user, optionally pinned to an active organization.

        Args:
            user: User instance
            organization_id: Organization the session acts in

        Returns:
            JWT token string
        """
        now = datetime.now(dt_timezone.utc)
        payload = {
            'sub': str(user.id),
            'exp': now + timedelta(hours=getattr(settings, 'JWT_EXPIRATION_HOURS', 24)),
            'iat': now,
        }
        if organization_id:
            payload['org'] = str(organization_id)

        return jwt.encode(
            payload,
            settings.JWT_SECRET_KEY,
            algorithm=getattr(settings, 'JWT_ALGORITHM', 'HS256')
        )

    @classmethod
    def decode_token(cls, token: str) -> Optional[dict]:
        """
        Validate a JWT and return its claims.

        Returns:
            Decoded payload dict, or None if invalid or expired
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[getattr(settings, 'JWT_ALGORITHM', 'HS256')],
                options={'require': ['sub', 'exp']},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired session token")
            return None
        except jwt.InvalidTokenError as exc:
            logger.warning("Rejected invalid session token", extra={'reason': str(exc)})
            return None
