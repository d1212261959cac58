"""Persisted ``{url, key}`` record for the resolved Supabase connection.

The record is read at startup and rewritten on every successful credential
resolution. It never holds the Management API access token.

Sources, in order:
  1. The JSON file written by the wizard (``ui``).
  2. ``SUPABASE_URL`` / ``SUPABASE_ANON_KEY`` environment variables (``env``).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Literal, Mapping

logger = logging.getLogger(__name__)

ConfigSource = Literal['ui', 'env', 'none']

_MIN_KEY_LENGTH = 20
_PLACEHOLDER_HOST = 'placeholder.supabase.co'


@dataclass(frozen=True, slots=True)
class StoredConfig:
    url: str
    key: str

    def __repr__(self) -> str:
        return f'StoredConfig(url={self.url!r}, key=<redacted>)'


def is_valid_config(candidate: Any) -> bool:
    if not isinstance(candidate, Mapping):
        return False
    url = candidate.get('url')
    key = candidate.get('key')
    return (
        isinstance(url, str)
        and isinstance(key, str)
        and url.startswith('http')
        and len(key) > _MIN_KEY_LENGTH
        and _PLACEHOLDER_HOST not in url
    )


class LocalConfigStore:
    """JSON-file implementation of the persisted configuration record."""

    def __init__(
        self,
        path: Path | str,
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.path = Path(path)
        self._env = env if env is not None else os.environ

    def _read_file(self) -> dict[str, Any] | None:
        try:
            raw = self.path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning('Could not read config file %s: %s', self.path, e)
            return None
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning('Ignoring malformed config file %s', self.path)
            return None
        return parsed if isinstance(parsed, dict) else None

    def _env_config(self) -> dict[str, str]:
        return {
            'url': self._env.get('SUPABASE_URL', ''),
            'key': self._env.get('SUPABASE_ANON_KEY', ''),
        }

    def load(self) -> StoredConfig | None:
        stored = self._read_file()
        if is_valid_config(stored):
            return StoredConfig(url=stored['url'], key=stored['key'])

        env_config = self._env_config()
        if is_valid_config(env_config):
            return StoredConfig(**env_config)
        return None

    def save(self, config: StoredConfig) -> None:
        """Write the record atomically (temp file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        tmp_path.write_text(json.dumps(asdict(config), indent=2), encoding='utf-8')
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)
        logger.info('Saved Supabase config for %s', config.url)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def source(self) -> ConfigSource:
        if self.path.exists():
            return 'ui'
        env_config = self._env_config()
        if env_config['url'] and env_config['key']:
            return 'env'
        return 'none'
