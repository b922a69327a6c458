"""
RBAC serializers for REST API endpoints.

Provides serialization for:
- Session tokens
- Permissions and roles
- Members, role changes and ownership transfer
"""
from rest_framework import serializers
from apps.rbac.models import Member, Permission, Role
from apps.rbac.services import role_slug


# ===== AUTHENTICATION SERIALIZERS =====

class TokenSerializer(serializers.Serializer):
    """Serializer for issuing a session token."""

    email = serializers.EmailField(required=True)
    password = serializers.CharField(
        required=True,
        write_only=True,
        style={'input_type': 'password'}
    )
    organization_id = serializers.UUIDField(required=False, allow_null=True)


# ===== ROLE SERIALIZERS =====

class PermissionSerializer(serializers.ModelSerializer):
    """Serializer for Permission model."""

    key = serializers.CharField(read_only=True)

    class Meta:
        model = Permission
        fields = ['id', 'key', 'resource', 'action', 'description']
        read_only_fields = fields


class RoleSerializer(serializers.ModelSerializer):
    """Serializer for Role model with its permission keys."""

    permissions = serializers.SerializerMethodField()

    class Meta:
        model = Role
        fields = [
            'id', 'organization_id', 'name', 'slug', 'description',
            'is_default', 'permissions', 'created_at', 'updated_at',
        ]
        read_only_fields = fields

    def get_permissions(self, obj):
        return obj.permission_keys()


def _validate_role_name(value):
    value = value.strip()
    if not role_slug(value):
        raise serializers.ValidationError("Role name must contain letters or digits.")
    return value


class RoleCreateSerializer(serializers.Serializer):
    """Serializer for creating a custom role."""

    name = serializers.CharField(required=True, max_length=100)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    permissions = serializers.ListField(
        child=serializers.CharField(max_length=101),
        required=False,
        default=list,
        help_text="Permission keys, e.g. ['members:read']"
    )

    def validate_name(self, value):
        return _validate_role_name(value)


class RoleUpdateSerializer(serializers.Serializer):
    """Serializer for updating a role; omitted fields stay unchanged."""

    name = serializers.CharField(required=False, max_length=100)
    description = serializers.CharField(required=False, allow_blank=True)
    permissions = serializers.ListField(
        child=serializers.CharField(max_length=101),
        required=False,
    )

    def validate_name(self, value):
        return _validate_role_name(value)


# ===== MEMBER SERIALIZERS =====

class MemberSerializer(serializers.ModelSerializer):
    """Serializer for Member model."""

    email = serializers.EmailField(source='user.email', read_only=True)
    role = serializers.SlugRelatedField(slug_field='slug', read_only=True)

    class Meta:
        model = Member
        fields = ['id', 'organization_id', 'user_id', 'email', 'role', 'role_id', 'created_at']
        read_only_fields = fields


class MemberCreateSerializer(serializers.Serializer):
    """Serializer for adding a user to the active organization."""

    user_id = serializers.UUIDField(required=True)
    role = serializers.CharField(
        required=False,
        default='member',
        help_text="Role slug or role ID"
    )


class MemberRoleSerializer(serializers.Serializer):
    """Serializer for changing a member's role."""

    role_id = serializers.UUIDField(required=True)


class OwnershipTransferSerializer(serializers.Serializer):
    """Serializer for transferring ownership to another member."""

    target_member_id = serializers.UUIDField(required=True)
