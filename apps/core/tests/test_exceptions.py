"""
Tests for the exception handler.
"""
import os
import subprocess
import sys

import pytest
from django.conf import settings
from django.test import RequestFactory
from rest_framework.exceptions import ValidationError

from apps.core.exceptions import (
    DatabaseUnavailable,
    Forbidden,
    OrgCycleDetected,
    TenantContextConflict,
    TenantContextMissing,
    Unauthenticated,
    custom_exception_handler,
)


@pytest.fixture
def context():
    request = RequestFactory().get('/v1/roles')
    request.request_id = 'req-1'
    return {'request': request}


class TestCustomExceptionHandler:
    """Test error rendering."""

    def test_domain_error_shape(self, context):
        exc = OrgCycleDetected("Cycle", details={'organization_id': 'a', 'parent_id': 'b'})

        response = custom_exception_handler(exc, context)

        assert response.status_code == 400
        assert response.data == {
            'error': {
                'code': 'org_cycle_detected',
                'message': 'Cycle',
                'details': {'organization_id': 'a', 'parent_id': 'b'},
            },
            'request_id': 'req-1',
        }

    @pytest.mark.parametrize('exc_class, status_code', [
        (Unauthenticated, 401),
        (Forbidden, 403),
        (TenantContextMissing, 403),
        (TenantContextConflict, 500),
        (DatabaseUnavailable, 503),
    ])
    def test_status_codes(self, context, exc_class, status_code):
        response = custom_exception_handler(exc_class("x"), context)

        assert response.status_code == status_code
        assert response.data['error']['details'] == {}

    def test_drf_errors_get_request_id(self, context):
        """Test that framework errors keep DRF's body plus the request id."""
        response = custom_exception_handler(ValidationError({'name': ['Required']}), context)

        assert response.status_code == 400
        assert response.data['name'] == ['Required']
        assert response.data['request_id'] == 'req-1'

    def test_unexpected_errors_are_500(self, context):
        """Test that unknown exceptions never leak their message."""
        response = custom_exception_handler(RuntimeError("db password is hunter2"), context)

        assert response.status_code == 500
        assert response.data['error']['code'] == 'internal_error'
        assert 'hunter2' not in str(response.data)

    def test_without_request(self):
        response = custom_exception_handler(Forbidden("x"), {})

        assert response.data['request_id'] is None


class TestImportOrder:
    """Test that the handler and the permission classes load in any order."""

    @pytest.mark.parametrize('first, second', [
        ('apps.core.exceptions', 'rest_framework.views'),
        ('rest_framework.views', 'apps.core.exceptions'),
        ('apps.core.permissions', 'apps.core.exceptions'),
    ])
    def test_fresh_interpreter(self, first, second):
        code = (
            'import django; django.setup(); '
            f'import {first}; import {second}; '
            'from apps.core.exceptions import custom_exception_handler, Forbidden; '
            'from apps.core.permissions import PolicyPermission'
        )
        env = dict(os.environ, DJANGO_SETTINGS_MODULE='config.settings')

        result = subprocess.run(
            [sys.executable, '-c', code],
            cwd=str(settings.BASE_DIR),
            env=env,
            capture_output=True,
            text=True,
        )

        assert result.returncode == 0, result.stderr
