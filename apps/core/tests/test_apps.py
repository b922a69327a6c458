"""
Tests for startup configuration validation.
"""
import pytest
from django.apps import apps
from django.core.exceptions import ImproperlyConfigured


@pytest.fixture
def core_config():
    return apps.get_app_config('core')


class TestJWTConfigurationValidation:
    """Test CoreConfig._validate_jwt_configuration."""

    def test_missing_secret(self, core_config, settings):
        settings.JWT_SECRET_KEY = ''

        with pytest.raises(ImproperlyConfigured, match='must be set'):
            core_config._validate_jwt_configuration()

    def test_short_secret(self, core_config, settings):
        settings.JWT_SECRET_KEY = 'short'

        with pytest.raises(ImproperlyConfigured, match='at least 32'):
            core_config._validate_jwt_configuration()

    def test_same_as_secret_key(self, core_config, settings):
        settings.JWT_SECRET_KEY = settings.SECRET_KEY = 'k' * 8 + 'abcdefghijklmnopqrstuvwxyz012345'

        with pytest.raises(ImproperlyConfigured, match='different'):
            core_config._validate_jwt_configuration()

    def test_low_entropy(self, core_config, settings):
        settings.JWT_SECRET_KEY = 'ab' * 20

        with pytest.raises(ImproperlyConfigured, match='entropy'):
            core_config._validate_jwt_configuration()

    def test_valid_secret(self, core_config):
        core_config._validate_jwt_configuration()
