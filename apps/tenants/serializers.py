"""
Serializers for organization endpoints.
"""
from rest_framework import serializers
from apps.tenants.models import Organization


class OrganizationSerializer(serializers.ModelSerializer):
    """Serializer for Organization model."""

    parent_organization_id = serializers.UUIDField(read_only=True)

    class Meta:
        model = Organization
        fields = [
            'id', 'name', 'slug', 'parent_organization_id',
            'created_at', 'updated_at', 'deleted_at', 'delete_scheduled_for',
        ]
        read_only_fields = fields


class OrganizationCreateSerializer(serializers.Serializer):
    """Serializer for creating an organization."""

    name = serializers.CharField(required=True, max_length=255)
    slug = serializers.SlugField(required=False, max_length=100)
    parent_id = serializers.UUIDField(required=False, allow_null=True)

    def validate_name(self, value):
        if not value.strip():
            raise serializers.ValidationError("Name cannot be empty.")
        return value.strip()


class OrganizationUpdateSerializer(serializers.Serializer):
    """
    Serializer for renaming and reparenting an organization.

    ``parent_id`` omitted keeps the parent; ``null`` makes it a root.
    """

    name = serializers.CharField(required=False, max_length=255)
    slug = serializers.SlugField(required=False, max_length=100)
    parent_id = serializers.UUIDField(required=False, allow_null=True)


class DeletionImpactSerializer(serializers.Serializer):
    organization_id = serializers.UUIDField()
    member_count = serializers.IntegerField()
    child_count = serializers.IntegerField()
    descendant_count = serializers.IntegerField()
    descendant_member_count = serializers.IntegerField()
