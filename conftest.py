"""
Pytest configuration and fixtures.
"""
import pytest
from django.conf import settings
import django
from django.core.management import call_command


def pytest_configure(config):
    """Configure Django settings for tests."""
    settings.DATABASES['default'] = {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        'ATOMIC_REQUESTS': False,
    }
    settings.CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'tessera-tests',
        }
    }
    settings.JWT_SECRET_KEY = 'test-jwt-secret-0123456789-abcdefghijklmnopqrstuvwxyz'
    settings.PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']
    django.setup()
    # Apply Django's per-connection defaults to the replaced database entry and
    # drop any connection built from the old one, so every thread shares it
    from django.db import connections
    connections.configure_settings(settings.DATABASES)
    if hasattr(connections._connections, 'default'):
        del connections['default']


@pytest.fixture(scope='session')
def django_db_setup(django_db_setup, django_db_blocker):
    """Set up test database from the current models."""
    with django_db_blocker.unblock():
        call_command('migrate', '--run-syncdb', verbosity=0)


@pytest.fixture(autouse=True)
def clear_cache():
    """Start every test with an empty permission cache."""
    from django.core.cache import cache
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def api_client():
    """Return DRF API client."""
    from rest_framework.test import APIClient
    return APIClient()


@pytest.fixture
def user(db):
    """Create a test user."""
    from apps.rbac.models import User
    return User.objects.create_user(
        email='owner@example.com',
        password='testpass123',
        first_name='Olive',
    )


@pytest.fixture
def other_user(db):
    """Create a second test user."""
    from apps.rbac.models import User
    return User.objects.create_user(
        email='member@example.com',
        password='testpass123',
    )


@pytest.fixture
def superadmin(db):
    """Create a platform superadmin."""
    from apps.rbac.models import User
    return User.objects.create_superadmin(
        email='root@example.com',
        password='testpass123',
    )


@pytest.fixture
def organization(db, user):
    """Create an organization owned by ``user``."""
    from apps.tenants.services import OrganizationService
    return OrganizationService.create_organization(
        name='Acme Corp',
        slug='acme',
        created_by=user,
    )


@pytest.fixture
def other_organization(db, other_user):
    """Create a second organization for isolation tests."""
    from apps.tenants.services import OrganizationService
    return OrganizationService.create_organization(
        name='Globex',
        slug='globex',
        created_by=other_user,
    )


@pytest.fixture
def auth_client(api_client):
    """
    Return a function that authenticates the API client.

    Usage:
        client = auth_client(user, organization)
    """
    from apps.rbac.services import AuthService

    def authenticate(user, organization=None):
        organization_id = getattr(organization, 'id', organization)
        token = AuthService.issue_token(user, organization_id)
        api_client.credentials(HTTP_AUTHORIZATION=f'Bearer {token}')
        return api_client

    return authenticate
