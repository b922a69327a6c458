"""
RBAC app configuration.
"""
from django.apps import AppConfig


class RbacConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.rbac'
    verbose_name = 'Roles, Members and Permissions'

    def ready(self):
        """Connect default role seeding to organization creation."""
        import apps.rbac.signals  # noqa
