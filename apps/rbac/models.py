"""
RBAC models for organization-scoped access control.

Implements:
- Global User identity (can belong to many organizations)
- Permission (global "resource:action" catalogue)
- Role (per-organization role definitions, default or custom)
- RolePermission (maps permissions to roles)
- Member (user membership in an organization with exactly one role)

Role and Member rows belong to one organization. Besides the regular
``objects`` manager they expose ``tenant_scoped``, which only returns rows
of the organization bound by ``tenant_transaction()``.
"""
import logging
from django.db import models
from django.contrib.auth.hashers import make_password, check_password
from apps.core.models import BaseModel, BaseModelManager, TenantScopedManager

logger = logging.getLogger(__name__)


class UserManager(BaseModelManager):
    """
    Manager for User queries.
    """

    def active(self):
        """Return only active users."""
        return self.filter(is_active=True)

    def create_user(self, email, password=None, **extra_fields):
        """Create a new user with hashed password."""
        if not email:
            raise ValueError('Email address is required')

        email = self.normalize_email(email)
        extra_fields.setdefault('is_active', True)

        user = self.model(email=email, **extra_fields)
        if password:
            user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superadmin(self, email, password=None, **extra_fields):
        """Create a platform superadmin, who bypasses organization permissions."""
        extra_fields['global_role'] = User.GLOBAL_ROLE_SUPERADMIN
        return self.create_user(email, password, **extra_fields)

    def normalize_email(self, email):
        """Lowercase the domain part of the email address."""
        email = email or ''
        try:
            email_name, domain_part = email.strip().rsplit('@', 1)
        except ValueError:
            pass
        else:
            email = email_name + '@' + domain_part.lower()
        return email


class User(BaseModel):
    """
    Global user identity.

    Authentication happens at the User level, authorization at the Member
    level. ``global_role`` is the only authority that is not scoped to an
    organization.

    This is the AUTH_USER_MODEL for the entire application.
    """

    GLOBAL_ROLE_USER = 'user'
    GLOBAL_ROLE_SUPERADMIN = 'superadmin'
    GLOBAL_ROLE_CHOICES = [
        (GLOBAL_ROLE_USER, 'User'),
        (GLOBAL_ROLE_SUPERADMIN, 'Superadmin'),
    ]

    email = models.EmailField(
        unique=True,
        db_index=True,
        help_text="User email address (unique globally)"
    )
    password_hash = models.CharField(
        max_length=255,
        blank=True,
        help_text="Hashed password",
        db_column='password_hash'
    )
    global_role = models.CharField(
        max_length=20,
        choices=GLOBAL_ROLE_CHOICES,
        default=GLOBAL_ROLE_USER,
        db_index=True,
        help_text="Platform-wide role; superadmin bypasses organization permissions"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether user account is active"
    )
    first_name = models.CharField(max_length=100, blank=True)
    last_name = models.CharField(max_length=100, blank=True)

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = []

    objects = UserManager()

    class Meta:
        db_table = 'users'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['is_active', 'created_at']),
        ]

    def __str__(self):
        return self.email

    @property
    def password(self):
        return self.password_hash

    @password.setter
    def password(self, value):
        self.password_hash = value

    def check_password(self, raw_password):
        """Check if provided password matches stored hash."""
        return check_password(raw_password, self.password_hash)

    def set_password(self, raw_password):
        """Set user password (hashes automatically)."""
        self.password_hash = make_password(raw_password)

    @property
    def is_superadmin(self):
        return self.global_role == self.GLOBAL_ROLE_SUPERADMIN

    @property
    def is_authenticated(self):
        """Always True for User instances (Django auth compatibility)."""
        return True

    @property
    def is_anonymous(self):
        """Always False for User instances (Django auth compatibility)."""
        return False


class PermissionManager(BaseModelManager):
    """Manager for Permission queries."""

    @staticmethod
    def split_key(key):
        """Split "resource:action" into its parts."""
        resource, sep, action = (key or '').partition(':')
        if not sep or not resource or not action:
            raise ValueError(f"Permission key must look like 'resource:action', got {key!r}")
        return resource, action

    def by_key(self, key):
        """Find permission by its "resource:action" key."""
        resource, action = self.split_key(key)
        return self.filter(resource=resource, action=action).first()

    def get_or_create_key(self, key, description=''):
        """Get or create permission by key (idempotent)."""
        resource, action = self.split_key(key)
        return self.get_or_create(
            resource=resource,
            action=action,
            defaults={'description': description},
        )


class Permission(BaseModel):
    """
    Global permission definitions - shared across all organizations.

    The catalogue is seeded by ``seed_permissions``; only the association of
    permissions to roles is organization-scoped.
    """

    resource = models.CharField(
        max_length=50,
        db_index=True,
        help_text="Resource the permission guards (e.g., 'members')"
    )
    action = models.CharField(
        max_length=50,
        help_text="Action on the resource (e.g., 'read')"
    )
    description = models.TextField(
        blank=True,
        help_text="What this permission grants"
    )

    objects = PermissionManager()

    class Meta:
        db_table = 'permissions'
        ordering = ['resource', 'action']
        unique_together = [('resource', 'action')]

    def __str__(self):
        return self.key

    @property
    def key(self):
        return f"{self.resource}:{self.action}"


class RoleManager(BaseModelManager):
    """Manager for Role queries."""

    def for_organization(self, organization_id):
        return self.filter(organization_id=organization_id)

    def default_roles(self, organization_id):
        """Get seeded default roles for an organization."""
        return self.filter(organization_id=organization_id, is_default=True)

    def by_slug(self, organization_id, slug):
        return self.filter(organization_id=organization_id, slug=slug).first()

    def get_or_create_role(self, organization_id, slug, name, description='', is_default=False):
        """Get or create role (idempotent)."""
        return self.get_or_create(
            organization_id=organization_id,
            slug=slug,
            defaults={
                'name': name,
                'description': description,
                'is_default': is_default,
            }
        )


class Role(BaseModel):
    """
    Per-organization role definitions.

    Every organization gets the default roles (Owner, Admin, Member, Viewer)
    when it is created; organizations may add custom roles on top.
    Default roles can be neither renamed nor deleted.
    """

    organization = models.ForeignKey(
        'tenants.Organization',
        on_delete=models.CASCADE,
        related_name='roles',
        db_index=True,
        help_text="Organization this role belongs to"
    )
    slug = models.SlugField(
        max_length=100,
        help_text="Identifier unique within the organization (e.g., 'owner')"
    )
    name = models.CharField(
        max_length=100,
        help_text="Role name (e.g., 'Owner', 'Billing Manager')"
    )
    description = models.TextField(
        blank=True,
        help_text="Role description"
    )
    is_default = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Whether this is one of the seeded default roles"
    )

    objects = RoleManager()
    tenant_scoped = TenantScopedManager()

    class Meta:
        db_table = 'roles'
        unique_together = [('organization', 'slug')]
        ordering = ['organization', 'name']
        indexes = [
            models.Index(fields=['organization', 'is_default']),
        ]

    def __str__(self):
        return f"{self.name} ({self.slug})"

    def get_permissions(self):
        """Get all permissions granted by this role."""
        return Permission.objects.filter(
            role_permissions__role=self
        ).distinct()

    def permission_keys(self):
        return sorted(p.key for p in self.get_permissions())


class RolePermissionManager(BaseModelManager):
    """Manager for RolePermission queries."""

    def grant_permission(self, role, permission):
        """Grant permission to role (idempotent)."""
        return self.get_or_create(role=role, permission=permission)


class RolePermission(BaseModel):
    """
    Maps permissions to roles.

    Rows go away with their role.
    """

    role = models.ForeignKey(
        Role,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        help_text="Role that grants the permission"
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        help_text="Permission granted"
    )

    objects = RolePermissionManager()

    class Meta:
        db_table = 'role_permissions'
        unique_together = [('role', 'permission')]

    def __str__(self):
        return f"{self.role.slug} -> {self.permission.key}"


class MemberManager(BaseModelManager):
    """Manager for Member queries."""

    def for_organization(self, organization_id):
        return self.filter(organization_id=organization_id)

    def get_membership(self, organization_id, user_id):
        """Get the membership of user in organization, or None."""
        return self.filter(organization_id=organization_id, user_id=user_id).first()

    def owners(self, organization_id):
        from apps.rbac.services import OWNER_ROLE_SLUG
        return self.filter(organization_id=organization_id, role__slug=OWNER_ROLE_SLUG)


class Member(BaseModel):
    """
    A user's membership in an organization.

    Every organization keeps at least one member holding the Owner role;
    that floor is enforced by RBACService, not by the database.
    """

    organization = models.ForeignKey(
        'tenants.Organization',
        on_delete=models.CASCADE,
        related_name='members',
        db_index=True,
        help_text="Organization this membership belongs to"
    )
    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='memberships',
        db_index=True,
        help_text="User who is a member"
    )
    role = models.ForeignKey(
        Role,
        on_delete=models.PROTECT,
        related_name='members',
        help_text="Role held in the organization"
    )

    objects = MemberManager()
    tenant_scoped = TenantScopedManager()

    class Meta:
        db_table = 'members'
        unique_together = [('organization', 'user')]
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['organization', 'role']),
        ]

    def __str__(self):
        return f"{self.user.email} @ {self.organization_id} ({self.role.slug})"
