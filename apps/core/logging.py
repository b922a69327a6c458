"""
Structured JSON logging and security event logging.
"""
import json
import logging
import re
import traceback
from datetime import datetime, timezone as dt_timezone
from django.utils import timezone
import sentry_sdk

from apps.tenants.context import get_request_context


class PIIMasker:
    """
    Utility class to mask credentials and personal data in logs.
    """

    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
    SECRET_PATTERN = re.compile(
        r'(token|secret|password|authorization|bearer)["\']?\s*[:=]?\s*["\']?'
        r'(?:bearer\s+)?([^"\'\s,}]+)',
        re.IGNORECASE,
    )

    SENSITIVE_FIELDS = {
        'password', 'password_hash',
        'token', 'access_token', 'authorization',
        'secret', 'secret_key', 'jwt_secret_key',
        'email',
    }

    @classmethod
    def mask_email(cls, text):
        """Keep the first character and domain of each email address."""
        if not isinstance(text, str):
            return text

        def mask_email_match(match):
            username, _, domain = match.group(0).partition('@')
            if len(username) > 1:
                username = username[0] + '*' * (len(username) - 1)
            return f"{username}@{domain}"

        return cls.EMAIL_PATTERN.sub(mask_email_match, text)

    @classmethod
    def mask_secrets(cls, text):
        if not isinstance(text, str):
            return text
        return cls.SECRET_PATTERN.sub(r'\1: ********', text)

    @classmethod
    def mask_text(cls, text):
        """Apply all masking patterns to text."""
        if not isinstance(text, str):
            return text
        return cls.mask_secrets(cls.mask_email(text))

    @classmethod
    def mask_dict(cls, data):
        """Recursively mask sensitive data in dictionaries."""
        if not isinstance(data, dict):
            return data

        masked = {}
        for key, value in data.items():
            if key.lower() in cls.SENSITIVE_FIELDS:
                masked[key] = '********' if value and not isinstance(value, (dict, list)) else value
            elif isinstance(value, dict):
                masked[key] = cls.mask_dict(value)
            elif isinstance(value, list):
                masked[key] = [
                    cls.mask_dict(item) if isinstance(item, dict) else cls.mask_text(item)
                    for item in value
                ]
            else:
                masked[key] = cls.mask_text(value)
        return masked


# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'request_id', 'tenant_id', 'user_id',
}


class JSONFormatter(logging.Formatter):
    """
    Format log records as JSON for structured logging.

    request_id, tenant_id and user_id come from the record's ``extra`` when
    given, otherwise from the active request context.
    """

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(dt_timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': PIIMasker.mask_text(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        ctx = get_request_context()
        for attr in ('request_id', 'tenant_id', 'user_id'):
            value = getattr(record, attr, None)
            if value is None and ctx is not None:
                value = getattr(ctx, attr)
            if value is not None:
                log_data[attr] = str(value)

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': PIIMasker.mask_text(str(record.exc_info[1])),
                'traceback': [
                    PIIMasker.mask_text(line)
                    for line in traceback.format_exception(*record.exc_info)
                ],
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith('_'):
                continue
            if isinstance(value, dict):
                value = PIIMasker.mask_dict(value)
            elif key.lower() in PIIMasker.SENSITIVE_FIELDS and value:
                value = '********'
            elif isinstance(value, str):
                value = PIIMasker.mask_text(value)
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = PIIMasker.mask_text(str(value))

        return json.dumps(log_data)


class SecurityLogger:
    """
    Centralized logging for authorization and tenancy security events.

    Events are written to the ``security`` logger with structured data.
    Critical events are also sent to Sentry for alerting.
    """

    CRITICAL_EVENTS = {
        'ownership_transferred',
        'cycle_rejected',
    }

    @staticmethod
    def log_event(event_type: str, level: str = 'warning', **context):
        """
        Log a security event with structured data.

        Args:
            event_type: Type of security event (e.g., 'permission_denied')
            level: Log level ('info', 'warning', 'error', 'critical')
            **context: Additional context (organization_id, user_id, ...)

        Example:
            >>> SecurityLogger.log_event(
            ...     'cycle_rejected',
            ...     organization_id='...',
            ...     parent_id='...',
            ... )
        """
        logger = logging.getLogger('security')

        log_data = {
            'event_type': event_type,
            'timestamp': timezone.now().isoformat(),
        }
        log_data.update(context)
        log_data = PIIMasker.mask_dict(log_data)

        log_method = getattr(logger, level, logger.warning)
        log_method(
            f"Security event: {event_type}",
            extra=log_data
        )

        if event_type in SecurityLogger.CRITICAL_EVENTS:
            sentry_sdk.capture_message(
                f"Critical security event: {event_type}",
                level='error',
            )

    @staticmethod
    def log_permission_denied(principal, reason: str, required=None, path: str = None):
        """
        Log a rejected request.

        Args:
            principal: Principal that was denied (may be anonymous)
            reason: Which authorization step rejected the request
            required: Roles or permission keys that were missing
            path: Request path
        """
        SecurityLogger.log_event(
            'permission_denied',
            level='warning',
            user_id=str(principal.user_id) if principal and principal.user_id else None,
            organization_id=(
                str(principal.organization_id)
                if principal and principal.organization_id else None
            ),
            reason=reason,
            required=sorted(required) if required else [],
            path=path,
        )

    @staticmethod
    def log_ownership_transferred(organization_id, from_user_id, to_user_id):
        SecurityLogger.log_event(
            'ownership_transferred',
            level='info',
            organization_id=str(organization_id),
            from_user_id=str(from_user_id),
            to_user_id=str(to_user_id),
        )

    @staticmethod
    def log_cycle_rejected(organization_id, parent_id):
        """Log a reparent that would have created a cycle in the hierarchy."""
        SecurityLogger.log_event(
            'cycle_rejected',
            level='warning',
            organization_id=str(organization_id),
            parent_id=str(parent_id),
        )
