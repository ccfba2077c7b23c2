"""
Request validation for the inbox API.

Checks the JSON body of the connect-IMAP request and the paging and search
query parameters before they reach the managers. Every failure is a
:class:`ValidationError`, which the routes turn into a 400 response.
"""

import re
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

MAX_PASSWORD_LENGTH = 1024
TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off')


class ValidationError(Exception):
    """Raised when input validation fails."""


def _is_blank(value: Any) -> bool:
    return value is None or value == ''


class InputValidator:
    """
    Field validators shared by the inbox routes.

    String fields are stripped; integer fields are bounds-checked; booleans
    accept JSON booleans or the usual string spellings.
    """

    HOSTNAME_PATTERN = re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$')
    MAILBOX_PATTERN = re.compile(r'^[^\r\n"]+$')

    @staticmethod
    def validate_string(value: Any, field_name: str, max_length: int = 255,
                        required: bool = True, pattern: Optional[re.Pattern] = None) -> str:
        """
        Return ``value`` stripped, or ``''`` for an absent optional field.

        Args:
            value: Raw value from the request
            field_name: Name used in the error message
            max_length: Longest accepted length after stripping
            required: Reject absent or whitespace-only values
            pattern: Regex the stripped value must match
        """
        if _is_blank(value):
            if required:
                raise ValidationError(f"{field_name} is required")
            return ''
        if not isinstance(value, str):
            raise ValidationError(f"{field_name} must be a string")

        cleaned = value.strip()
        if not cleaned:
            if required:
                raise ValidationError(f"{field_name} is required")
            return ''
        if len(cleaned) > max_length:
            raise ValidationError(f"{field_name} exceeds maximum length of {max_length}")
        if pattern and not pattern.match(cleaned):
            raise ValidationError(f"{field_name} contains invalid characters")
        return cleaned

    @staticmethod
    def validate_integer(value: Any, field_name: str, min_val: int = 0,
                         max_val: int = 2147483647, required: bool = True,
                         default: Optional[int] = None) -> int:
        """Parse an int within ``[min_val, max_val]``; absent optional fields give ``default``."""
        if _is_blank(value):
            if required:
                raise ValidationError(f"{field_name} is required")
            return min_val if default is None else default

        # bool is an int subclass; "port": true is a client bug
        if isinstance(value, bool):
            raise ValidationError(f"{field_name} must be a valid integer")
        try:
            number = int(value)
        except (ValueError, TypeError):
            raise ValidationError(f"{field_name} must be a valid integer")

        if not min_val <= number <= max_val:
            raise ValidationError(f"{field_name} must be between {min_val} and {max_val}")
        return number

    @staticmethod
    def validate_port(value: Any, field_name: str = 'port') -> int:
        return InputValidator.validate_integer(value, field_name, min_val=1, max_val=65535)

    @staticmethod
    def validate_boolean(value: Any, field_name: str, default: bool = True) -> bool:
        if _is_blank(value):
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in TRUE_VALUES:
                return True
            if lowered in FALSE_VALUES:
                return False
        raise ValidationError(f"{field_name} must be a boolean")

    @staticmethod
    def validate_imap_settings(data: Any) -> Dict[str, Any]:
        """
        Validate the body of a "connect IMAP account" request.

        The password is checked for presence and length only and is returned
        exactly as entered.

        Returns:
            Dict with host, port, username, password, use_tls and mailbox
        """
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        password = data.get('password')
        if not isinstance(password, str) or not password.strip():
            raise ValidationError("password is required")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(f"password exceeds maximum length of {MAX_PASSWORD_LENGTH}")

        return {
            'host': InputValidator.validate_string(data.get('host'), 'host', pattern=InputValidator.HOSTNAME_PATTERN),
            'port': InputValidator.validate_port(data.get('port')),
            'username': InputValidator.validate_string(data.get('username'), 'username', max_length=320),
            'password': password,
            'use_tls': InputValidator.validate_boolean(data.get('tls'), 'tls', default=True),
            'mailbox': InputValidator.validate_string(
                data.get('mailbox'), 'mailbox', required=False,
                pattern=InputValidator.MAILBOX_PATTERN,
            ) or None,
        }
