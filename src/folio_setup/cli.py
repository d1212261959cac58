"""Command line entry point: run the setup wizard headlessly or serve the setup API."""
from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys
from dataclasses import replace
from pathlib import Path

import httpx

from .api.setup_client import SetupApiClient
from .config_store import LocalConfigStore
from .migration_check import UNKNOWN_VERSION, latest_local_migration
from .models import LogEntry, WorkflowStep
from .observability.logging import configure_logging
from .settings import SetupSettings
from .wizard.orchestrator import SetupOrchestrator
from .wizard.state_machine import DEFAULT_PROJECT_NAME, DEFAULT_REGION, WizardState

ACCESS_TOKEN_ENV = "FOLIO_ACCESS_TOKEN"
MIGRATIONS_DIR = Path("supabase") / "migrations"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="folio-setup")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--json-logs", action=argparse.BooleanOptionalAction, default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    managed = sub.add_parser("managed", help="Provision a new Supabase project")
    managed.add_argument("--org", default=None, help="Organization id (default: first)")
    managed.add_argument("--project-name", default=DEFAULT_PROJECT_NAME)
    managed.add_argument("--region", default=DEFAULT_REGION)

    manual = sub.add_parser("manual", help="Connect an existing Supabase project")
    manual.add_argument("--url", default=os.environ.get("SUPABASE_URL", ""))
    manual.add_argument("--key", default=os.environ.get("SUPABASE_ANON_KEY", ""))

    serve = sub.add_parser("serve", help="Run the setup API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=3006)

    return parser.parse_args(argv)


def resolve_settings(settings: SetupSettings) -> SetupSettings:
    """Fill in the expected migration version from the shipped migrations."""
    if settings.latest_migration_timestamp != UNKNOWN_VERSION:
        return settings
    root = settings.migrate_cwd or Path.cwd()
    migrations_dir = root / MIGRATIONS_DIR
    if not migrations_dir.is_dir():
        return settings
    return replace(
        settings,
        latest_migration_timestamp=latest_local_migration(migrations_dir),
    )


def _read_access_token() -> str:
    token = os.environ.get(ACCESS_TOKEN_ENV, "")
    if token:
        return token
    return getpass.getpass("Supabase access token: ")


class _LogPrinter:
    """Prints wizard log lines and errors as they appear."""

    def __init__(self) -> None:
        self._logs: tuple[LogEntry, ...] = ()
        self._error: str | None = None

    def __call__(self, state: WizardState) -> None:
        seen = {id(entry) for entry in self._logs}
        for entry in state.logs:
            if id(entry) not in seen:
                stream = sys.stderr if entry.kind.value in ("stderr", "error") else sys.stdout
                print(f"[{entry.kind.value}] {entry.message}", file=stream)
        self._logs = state.logs
        if state.error and state.error != self._error:
            print(f"error: {state.error}", file=sys.stderr)
        self._error = state.error


async def _run_managed(orchestrator: SetupOrchestrator, args: argparse.Namespace) -> bool:
    orchestrator.begin()
    orchestrator.choose_managed()
    if not await orchestrator.fetch_organizations(_read_access_token()):
        return False

    organizations = orchestrator.state.managed.organizations
    if not organizations:
        print("error: no organizations available for this token", file=sys.stderr)
        return False
    for org in organizations:
        print(f"  {org.id}  {org.name}")
    if args.org:
        orchestrator.select_organization(args.org)
    orchestrator.set_project_name(args.project_name)
    orchestrator.set_region(args.region)
    return await orchestrator.provision()


async def _run_manual(orchestrator: SetupOrchestrator, args: argparse.Namespace) -> bool:
    orchestrator.begin()
    orchestrator.choose_manual()
    orchestrator.set_manual_credentials(args.url, args.key)
    if not await orchestrator.validate_manual():
        return False
    if orchestrator.state.completed:
        return True

    status = orchestrator.state.migration_status
    if status is not None:
        print(status.message)
    if orchestrator.state.step is not WorkflowStep.MIGRATION:
        return False
    if not orchestrator.set_access_token(_read_access_token()):
        return False
    return await orchestrator.run_migration()


async def _run_wizard(settings: SetupSettings, args: argparse.Namespace) -> int:
    async with httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None)) as http_client:
        api = SetupApiClient(
            base_url=settings.setup_api_url,
            http_client=http_client,
            provision_timeout_seconds=settings.provision_timeout_seconds,
            migration_timeout_seconds=settings.migration_timeout_seconds,
        )
        orchestrator = SetupOrchestrator(
            api=api,
            config_store=LocalConfigStore(settings.config_path),
            settings=settings,
        )
        orchestrator.subscribe(_LogPrinter())
        async with orchestrator:
            runner = _run_managed if args.command == "managed" else _run_manual
            ok = await runner(orchestrator, args)

    if ok and orchestrator.state.completed:
        print(f"Setup complete. Configuration saved to {settings.config_path}")
        return 0
    return 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(level=args.log_level, json_output=args.json_logs)
    settings = resolve_settings(SetupSettings.from_env())

    if args.command == "serve":
        import uvicorn

        from .server.app import create_app

        uvicorn.run(create_app(settings), host=args.host, port=args.port)
        return 0

    try:
        return asyncio.run(_run_wizard(settings, args))
    except KeyboardInterrupt:
        print("Setup cancelled.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
