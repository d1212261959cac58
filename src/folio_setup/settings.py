"""Setup orchestrator configuration settings.

SetupSettings is the single configuration object accepted by the
orchestrator, the setup API factory and the CLI. It is intentionally a plain
dataclass (not env-coupled) so tests can inject config without touching
os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# Hard limits for streamed operations, in seconds.
PROVISION_TIMEOUT_SECONDS = 360.0
MIGRATION_TIMEOUT_SECONDS = 600.0

_DEFAULT_CONFIG_PATH = Path.home() / ".folio" / "supabase-config.json"
_DEFAULT_SETUP_API_URL = "http://localhost:3006"
_DEFAULT_MANAGEMENT_API_URL = "https://api.supabase.com"
_DEFAULT_MIGRATE_COMMAND = ("bash", "scripts/migrate.sh")
_DEFAULT_APP_VERSION = "0.0.0"
_DEFAULT_POLL_INTERVAL_SECONDS = 5.0
_DEFAULT_CORS_ORIGINS = (
    "http://localhost:5173",
    "http://localhost:3000",
)


@dataclass(frozen=True, slots=True)
class SetupSettings:
    """Configuration for the setup client and the setup API server.

    All fields have sensible defaults for local development.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Client side ────────────────────────────────────────────────
    setup_api_url: str = _DEFAULT_SETUP_API_URL
    """Base URL of the setup API the wizard talks to."""

    config_path: Path = _DEFAULT_CONFIG_PATH
    """Where the resolved ``{url, key}`` record is persisted."""

    app_version: str = _DEFAULT_APP_VERSION
    """Application version reported in migration snapshots."""

    latest_migration_timestamp: str = "unknown"
    """Newest migration the application expects the database to have."""

    provision_timeout_seconds: float = PROVISION_TIMEOUT_SECONDS
    migration_timeout_seconds: float = MIGRATION_TIMEOUT_SECONDS

    # ── Server side ────────────────────────────────────────────────
    management_api_url: str = _DEFAULT_MANAGEMENT_API_URL
    """Supabase Management API base URL. The access token is forwarded here."""

    migrate_command: tuple[str, ...] = _DEFAULT_MIGRATE_COMMAND
    """Command the migration endpoint runs; output is streamed line by line."""

    migrate_cwd: Path | None = None
    """Working directory for the migration command (defaults to CWD)."""

    provision_poll_interval_seconds: float = _DEFAULT_POLL_INTERVAL_SECONDS
    """Delay between readiness polls while provisioning."""

    provision_max_status_polls: int = 60

    cors_origins: tuple[str, ...] = _DEFAULT_CORS_ORIGINS
    """Allowed CORS origins for the setup API."""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.setup_api_url.startswith(("http://", "https://")):
            errors.append("setup_api_url must be an http(s) URL")
        if not self.is_local and not self.management_api_url.startswith("https://"):
            errors.append(
                f"{self.environment}: management_api_url must use https"
            )
        if self.provision_timeout_seconds <= 0 or self.migration_timeout_seconds <= 0:
            errors.append("operation timeouts must be positive")
        if self.provision_poll_interval_seconds < 0:
            errors.append("provision_poll_interval_seconds must be >= 0")
        if self.provision_max_status_polls < 1:
            errors.append("provision_max_status_polls must be >= 1")
        if not self.migrate_command:
            errors.append("migrate_command must not be empty")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> SetupSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct SetupSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        cors_raw = env.get("CORS_ORIGINS", "")
        cors = tuple(o.strip() for o in cors_raw.split(",") if o.strip()) if cors_raw else _DEFAULT_CORS_ORIGINS

        migrate_raw = env.get("MIGRATE_COMMAND", "")
        migrate_command = tuple(migrate_raw.split()) if migrate_raw.strip() else _DEFAULT_MIGRATE_COMMAND

        config_path = env.get("FOLIO_CONFIG_PATH", "")
        migrate_cwd = env.get("MIGRATE_CWD", "")

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            setup_api_url=env.get("SETUP_API_URL", _DEFAULT_SETUP_API_URL).rstrip("/"),
            config_path=Path(config_path).expanduser() if config_path else _DEFAULT_CONFIG_PATH,
            app_version=env.get("APP_VERSION", _DEFAULT_APP_VERSION),
            latest_migration_timestamp=env.get("LATEST_MIGRATION_TIMESTAMP", "unknown"),
            management_api_url=env.get(
                "SUPABASE_MANAGEMENT_URL", _DEFAULT_MANAGEMENT_API_URL
            ).rstrip("/"),
            migrate_command=migrate_command,
            migrate_cwd=Path(migrate_cwd) if migrate_cwd else None,
            provision_poll_interval_seconds=float(
                env.get("PROVISION_POLL_INTERVAL_SECONDS", _DEFAULT_POLL_INTERVAL_SECONDS)
            ),
            cors_origins=cors,
        )
