"""
RBAC signals for automatic default role seeding.

Seeds the default roles (Owner, Admin, Member, Viewer) once, when a new
organization is created.
"""
import logging
from django.db.models.signals import post_save
from django.dispatch import receiver

logger = logging.getLogger(__name__)


@receiver(post_save, sender='tenants.Organization')
def seed_roles_on_organization_creation(sender, instance, created, raw=False, **kwargs):
    """
    Seed default roles when a new organization is created.

    Runs inside the transaction that inserted the organization, so a failed
    seed rolls the organization back too. Fixture loading (``raw``) is skipped.
    """
    if not created or raw:
        return

    # Import here to avoid circular imports
    from apps.rbac.services import RBACService

    RBACService.seed_default_roles(instance.id)
