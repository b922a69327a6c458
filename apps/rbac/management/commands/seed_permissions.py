"""
Management command to seed the global permission catalogue.

Creates every "resource:action" Permission record. This command is
idempotent and safe to re-run.
"""
from django.core.management.base import BaseCommand
from apps.rbac.models import Permission
from apps.rbac.services import PERMISSION_CATALOG, RBACService


class Command(BaseCommand):
    help = 'Seed the global permission catalogue (idempotent)'

    def handle(self, *args, **options):
        before = Permission.objects.count()
        RBACService.seed_permissions()
        created = Permission.objects.count() - before

        self.stdout.write(
            self.style.SUCCESS(
                f'Permission catalogue ready: {len(PERMISSION_CATALOG)} permissions, '
                f'{created} created'
            )
        )
