"""Value types shared by the parser, the operation client and the wizard."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class WorkflowStep(str, Enum):
    """The wizard step currently shown to the user."""

    WELCOME = 'welcome'
    MODE_SELECT = 'mode-select'
    TOKEN_ENTRY = 'token-entry'
    ORG_SELECT = 'org-select'
    PROVISIONING = 'provisioning'
    MANUAL_CREDENTIALS = 'manual-credentials'
    VALIDATING = 'validating'
    MIGRATION = 'migration'


class LogKind(str, Enum):
    STDOUT = 'stdout'
    STDERR = 'stderr'
    INFO = 'info'
    ERROR = 'error'
    SUCCESS = 'success'


class StreamEventType(str, Enum):
    INFO = 'info'
    ERROR = 'error'
    SUCCESS = 'success'
    IDENTIFIER = 'identifier'
    STDOUT = 'stdout'
    STDERR = 'stderr'
    DONE = 'done'


# Wire spellings accepted for each event type. The setup API names the
# identifier event ``project_id``.
EVENT_TYPE_ALIASES: Mapping[str, StreamEventType] = {
    **{t.value: t for t in StreamEventType},
    'project_id': StreamEventType.IDENTIFIER,
}

DONE_SUCCESS = 'success'


@dataclass(frozen=True, slots=True)
class LogEntry:
    kind: LogKind
    message: str
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One decoded ``data: {...}`` frame."""

    type: StreamEventType
    data: Any = None

    @property
    def is_done_success(self) -> bool:
        return self.type is StreamEventType.DONE and self.data == DONE_SUCCESS

    @classmethod
    def from_payload(cls, payload: Any) -> StreamEvent | None:
        """Build an event from a decoded JSON payload, or None if unusable."""
        if not isinstance(payload, dict):
            return None
        raw_type = payload.get('type')
        if not isinstance(raw_type, str):
            return None
        event_type = EVENT_TYPE_ALIASES.get(raw_type)
        if event_type is None:
            return None
        return cls(type=event_type, data=payload.get('data'))


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Connection credentials of a provisioned project.

    Attributes:
        identifier: Project reference (first label of the project host).
        endpoint_url: Project API URL.
        public_key: Anon / publishable key the application connects with.
        secret: Generated database password; empty when recovered.
    """

    identifier: str
    endpoint_url: str
    public_key: str
    secret: str = ''

    def __repr__(self) -> str:
        return (
            'OperationResult('
            f'identifier={self.identifier!r}, '
            f'endpoint_url={self.endpoint_url!r}, '
            f'public_key={self.public_key[:8]!r}..., '
            'secret=<redacted>)'
        )

    @classmethod
    def from_payload(cls, payload: Any, *, fallback_identifier: str = '') -> OperationResult:
        """Parse a ``success`` event body or a recovery response.

        Raises:
            ValueError: If the payload is not an object or lacks a key.
        """
        if not isinstance(payload, dict):
            raise ValueError('credentials payload must be an object')
        identifier = str(payload.get('projectId') or fallback_identifier).strip()
        if not identifier:
            raise ValueError('credentials payload has no project id')
        endpoint_url = str(payload.get('url') or f'https://{identifier}.supabase.co')
        public_key = str(payload.get('anonKey') or '').strip()
        if not public_key:
            raise ValueError('credentials payload has no anon key')
        return cls(
            identifier=identifier,
            endpoint_url=endpoint_url,
            public_key=public_key,
            secret=str(payload.get('dbPass') or ''),
        )


@dataclass(frozen=True, slots=True)
class MigrationStatusSnapshot:
    needs_migration: bool
    target_version: str
    observed_version: str | None
    message: str


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    message: str


@dataclass(frozen=True, slots=True)
class Organization:
    id: str
    name: str
