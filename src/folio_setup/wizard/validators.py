"""Network-free format checks for user-supplied setup input.

Every function here is pure and never raises; malformed input produces an
invalid ``ValidationResult`` with a corrective message instead.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from ..models import ValidationResult

ACCESS_TOKEN_PREFIX = 'sbp_'
MIN_ACCESS_TOKEN_LENGTH = 20

PROVIDER_DOMAIN_SUFFIX = '.supabase.co'

PUBLISHABLE_KEY_PREFIX = 'sb_publishable_'
MIN_PUBLISHABLE_KEY_LENGTH = 25
LEGACY_KEY_PREFIX = 'eyJ'
MIN_LEGACY_KEY_LENGTH = 50

_PROJECT_ID_RE = re.compile(r'^[a-z0-9-]+$')


def validate_token(token: str) -> ValidationResult:
    trimmed = token.strip()
    if not trimmed:
        return ValidationResult(False, 'Access token is required')
    if not trimmed.startswith(ACCESS_TOKEN_PREFIX):
        return ValidationResult(False, f'Token must start with {ACCESS_TOKEN_PREFIX}')
    if len(trimmed) < MIN_ACCESS_TOKEN_LENGTH:
        return ValidationResult(False, 'Token is too short')
    return ValidationResult(True, 'Valid access token')


def validate_url_shape(value: str) -> ValidationResult:
    """Accept a bare project id or an http(s) URL on the provider domain."""
    trimmed = value.strip()
    if not trimmed:
        return ValidationResult(False, 'URL is required')

    if trimmed.startswith(('http://', 'https://')):
        try:
            hostname = urlsplit(trimmed).hostname
        except ValueError:
            return ValidationResult(False, 'Invalid URL format')
        if not hostname:
            return ValidationResult(False, 'Invalid URL format')
        if hostname.endswith(PROVIDER_DOMAIN_SUFFIX):
            return ValidationResult(True, 'Valid Supabase URL')
        return ValidationResult(False, 'URL must be a supabase.co domain')

    if _PROJECT_ID_RE.match(trimmed):
        return ValidationResult(True, 'Project ID detected')

    return ValidationResult(False, 'Enter a valid URL or project ID')


def validate_key_shape(value: str) -> ValidationResult:
    trimmed = value.strip()
    if not trimmed:
        return ValidationResult(False, 'API key is required')

    if trimmed.startswith(PUBLISHABLE_KEY_PREFIX):
        if len(trimmed) < MIN_PUBLISHABLE_KEY_LENGTH:
            return ValidationResult(False, 'Incomplete publishable key')
        return ValidationResult(True, 'Valid publishable key')

    if trimmed.startswith(LEGACY_KEY_PREFIX):
        if len(trimmed) < MIN_LEGACY_KEY_LENGTH:
            return ValidationResult(False, 'Incomplete anon key')
        return ValidationResult(True, 'Valid anon key')

    return ValidationResult(False, 'Invalid API key format')


def normalize_url(value: str) -> str:
    """Expand a bare project id into its API URL; URLs pass through trimmed."""
    trimmed = value.strip()
    if not trimmed:
        return ''
    if trimmed.startswith(('http://', 'https://')):
        return trimmed.rstrip('/')
    return f'https://{trimmed}{PROVIDER_DOMAIN_SUFFIX}'


def extract_project_identifier(value: str) -> str | None:
    """Return the project reference for a URL or bare id, if any."""
    trimmed = value.strip()
    if not trimmed:
        return None

    if '.' not in trimmed and '/' not in trimmed:
        return trimmed

    candidate = trimmed if trimmed.startswith('http') else f'https://{trimmed}'
    try:
        hostname = urlsplit(candidate).hostname
    except ValueError:
        return None
    if not hostname:
        return None
    return hostname.split('.')[0] or None
