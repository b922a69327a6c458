"""
Management command to seed default roles for organizations.

Creates the default roles (Owner, Admin, Member, Viewer) with their
permission mappings for one or all organizations. Idempotent: existing
roles are kept and only missing permissions are added.
"""
from uuid import UUID

from django.core.management.base import BaseCommand, CommandError
from apps.rbac.services import RBACService
from apps.tenants.models import Organization


class Command(BaseCommand):
    help = 'Seed default roles for organization(s) (idempotent)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--org',
            type=str,
            help='Organization ID or slug to seed roles for',
        )
        parser.add_argument(
            '--all',
            action='store_true',
            help='Seed roles for all organizations',
        )

    def handle(self, *args, **options):
        org_ref = options.get('org')
        seed_all = options.get('all')

        if not org_ref and not seed_all:
            raise CommandError('You must specify either --org=<id|slug> or --all')
        if org_ref and seed_all:
            raise CommandError('Cannot specify both --org and --all')

        if seed_all:
            organizations = list(Organization.objects.all())
            self.stdout.write(f'Seeding roles for all {len(organizations)} organizations...')
        else:
            organizations = [self._find_organization(org_ref)]

        for organization in organizations:
            roles = RBACService.seed_default_roles(organization.id)
            self.stdout.write(f'  {organization.slug}: {", ".join(sorted(roles))}')

        self.stdout.write(
            self.style.SUCCESS(f'Seeding complete for {len(organizations)} organization(s)')
        )

    def _find_organization(self, ref):
        organization = Organization.objects.by_slug(ref)
        if organization is None:
            try:
                organization = Organization.objects.filter(id=UUID(ref)).first()
            except ValueError:
                organization = None
        if organization is None:
            raise CommandError(f'Organization not found: {ref}')
        return organization
