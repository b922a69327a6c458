"""
Management command to install row-level-security policies.

Enables and forces RLS on every tenant-owned table so that rows are only
visible while ``tenant_transaction()`` has bound the owning organization.
PostgreSQL only; other engines rely on the ``tenant_scoped`` managers.

Usage:
    python manage.py install_rls_policies
    python manage.py install_rls_policies --drop
"""
from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.db import DEFAULT_DB_ALIAS, connections, transaction

# Tables whose rows carry organization_id
TENANT_TABLES = ('roles', 'members')

POLICY_NAME = 'tenant_isolation'


class Command(BaseCommand):
    help = 'Install row-level-security tenant isolation policies (PostgreSQL only)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--database',
            default=DEFAULT_DB_ALIAS,
            help='Database alias to install the policies on',
        )
        parser.add_argument(
            '--drop',
            action='store_true',
            help='Remove the policies and disable RLS instead',
        )

    def handle(self, *args, **options):
        using = options['database']
        connection = connections[using]
        if connection.vendor != 'postgresql':
            raise CommandError(
                f'Row-level security requires PostgreSQL (database "{using}" is {connection.vendor})'
            )

        statements = self.drop_statements() if options['drop'] else self.install_statements()
        with transaction.atomic(using=using):
            with connection.cursor() as cursor:
                for statement in statements:
                    cursor.execute(statement)

        verb = 'Removed' if options['drop'] else 'Installed'
        self.stdout.write(
            self.style.SUCCESS(f'{verb} tenant isolation on: {", ".join(TENANT_TABLES)}')
        )

    def install_statements(self):
        setting_name = getattr(settings, 'TENANT_SETTING_NAME', 'app.tenant_id')
        predicate = f"organization_id::text = current_setting('{setting_name}', true)"
        statements = []
        for table in TENANT_TABLES:
            statements += [
                f'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY',
                # Apply to the table owner too; the app usually connects as owner
                f'ALTER TABLE {table} FORCE ROW LEVEL SECURITY',
                f'DROP POLICY IF EXISTS {POLICY_NAME} ON {table}',
                f'CREATE POLICY {POLICY_NAME} ON {table} '
                f'USING ({predicate}) WITH CHECK ({predicate})',
            ]
        return statements

    def drop_statements(self):
        statements = []
        for table in TENANT_TABLES:
            statements += [
                f'DROP POLICY IF EXISTS {POLICY_NAME} ON {table}',
                f'ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY',
                f'ALTER TABLE {table} DISABLE ROW LEVEL SECURITY',
            ]
        return statements
