"""Decide whether a target database needs the application's migrations.

The database reports the newest applied migration through the
``get_latest_migration_timestamp`` RPC. Timestamps are fixed-width
``YYYYMMDDHHMMSS`` strings, so lexical comparison orders them correctly.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

import httpx

from .db import SupabaseClient, SupabaseError
from .models import MigrationStatusSnapshot

logger = logging.getLogger(__name__)

LATEST_MIGRATION_RPC = "get_latest_migration_timestamp"
MIGRATION_CHECK_TIMEOUT_SECONDS = 12.0
UNKNOWN_VERSION = "unknown"

# Reported when the RPC itself is missing: nothing has been applied yet.
NO_MIGRATIONS_VERSION = "0"


async def get_observed_version(client: SupabaseClient) -> str | None:
    """Return the database's latest migration timestamp, or None if unknown."""
    try:
        data = await asyncio.wait_for(
            client.rpc(LATEST_MIGRATION_RPC),
            timeout=MIGRATION_CHECK_TIMEOUT_SECONDS,
        )
    except SupabaseError as e:
        if e.is_undefined_function:
            return NO_MIGRATIONS_VERSION
        logger.info("Migration version RPC failed: status=%s code=%s", e.status_code, e.code)
        return None
    except (asyncio.TimeoutError, httpx.HTTPError, ValueError) as e:
        logger.info("Migration version RPC unavailable: %s", type(e).__name__)
        return None

    if data is None:
        return None
    return str(data)


def evaluate_migration_status(
    *,
    expected_version: str,
    observed_version: str | None,
) -> MigrationStatusSnapshot:
    """Pure decision: compare expected vs observed migration versions."""
    if expected_version == UNKNOWN_VERSION:
        return MigrationStatusSnapshot(
            needs_migration=True,
            target_version=expected_version,
            observed_version=observed_version,
            message="App migration metadata missing.",
        )

    if observed_version is None or not observed_version.strip():
        return MigrationStatusSnapshot(
            needs_migration=True,
            target_version=expected_version,
            observed_version=observed_version,
            message="Database migration state unknown.",
        )

    if expected_version > observed_version:
        return MigrationStatusSnapshot(
            needs_migration=True,
            target_version=expected_version,
            observed_version=observed_version,
            message=f"Database is behind ({observed_version}).",
        )

    return MigrationStatusSnapshot(
        needs_migration=False,
        target_version=expected_version,
        observed_version=observed_version,
        message="Database schema is up-to-date.",
    )


async def check_migration_status(
    url: str,
    key: str,
    *,
    expected_version: str,
    http_client: httpx.AsyncClient | None = None,
) -> MigrationStatusSnapshot:
    client = SupabaseClient(
        supabase_url=url,
        api_key=key,
        http_client=http_client,
        timeout_seconds=MIGRATION_CHECK_TIMEOUT_SECONDS,
    )
    observed = await get_observed_version(client)
    snapshot = evaluate_migration_status(
        expected_version=expected_version,
        observed_version=observed,
    )
    logger.info(
        "Migration status: needs_migration=%s expected=%s observed=%s",
        snapshot.needs_migration,
        expected_version,
        observed,
    )
    return snapshot


def fresh_project_snapshot(expected_version: str) -> MigrationStatusSnapshot:
    """Snapshot for a project the wizard just created."""
    return MigrationStatusSnapshot(
        needs_migration=True,
        target_version=expected_version,
        observed_version=None,
        message="Fresh project created. Migration is required.",
    )


def unverified_snapshot(expected_version: str) -> MigrationStatusSnapshot:
    """Snapshot used when the status check itself failed."""
    return MigrationStatusSnapshot(
        needs_migration=True,
        target_version=expected_version,
        observed_version=None,
        message="Could not verify migration status. Run migration to continue.",
    )


# Migration files are named ``<YYYYMMDDHHMMSS>_<name>.sql``.
_MIGRATION_FILE_RE = re.compile(r"^(\d{14})_")
DEFAULT_BASELINE_VERSION = "20240101000000"


def latest_local_migration(migrations_dir: Path) -> str:
    """Newest migration timestamp shipped with the application.

    Test migrations are ignored. Returns ``UNKNOWN_VERSION`` if the directory
    cannot be read and the baseline version if it holds no migrations.
    """
    try:
        names = [p.name for p in migrations_dir.iterdir() if p.suffix == ".sql"]
    except OSError as e:
        logger.warning("Cannot read migrations directory %s: %s", migrations_dir, e)
        return UNKNOWN_VERSION

    timestamps: list[str] = []
    for name in names:
        match = _MIGRATION_FILE_RE.match(name)
        if match and "test" not in name.lower():
            timestamps.append(match.group(1))
    return max(timestamps) if timestamps else DEFAULT_BASELINE_VERSION
