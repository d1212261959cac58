"""Setup API application factory.

``create_app()`` assembles the ASGI app the wizard talks to: request-ID and
CORS middleware, ``/health``, the setup router and the migration router.
Collaborators are injectable so tests never reach the Management API::

    app = create_app(SetupSettings(provision_poll_interval_seconds=0),
                     management_client=fake_management)

Serve with ``uvicorn folio_setup.server.app:create_app --factory`` or
``folio-setup serve``.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from ..observability.logging import request_id_ctx
from ..settings import SetupSettings
from .management_client import ManagementClient
from .migrate_routes import create_migrate_router
from .setup_routes import create_setup_router

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with the caller's X-Request-ID, or a fresh one."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        ctx_token = request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(ctx_token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def create_app(
    settings: SetupSettings | None = None,
    *,
    management_client: ManagementClient | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the setup API.

    Args:
        settings: Defaults to ``SetupSettings()`` (local development).
        management_client: Replaces the Management API client built from
            ``settings.management_api_url``.
        http_client: Used to reach user-supplied project URLs and by the
            default Management API client.

    Raises:
        ValueError: ``settings.validate()`` reported problems.
    """
    settings = settings or SetupSettings()
    problems = settings.validate()
    if problems:
        raise ValueError(
            "Invalid setup API settings:\n" + "\n".join(f"  - {p}" for p in problems)
        )

    owned_management = management_client is None
    management = management_client or ManagementClient(
        base_url=settings.management_api_url,
        http_client=http_client,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Setup API starting",
            extra={"environment": settings.environment, "version": settings.app_version},
        )
        try:
            yield
        finally:
            if owned_management:
                await management.aclose()
            logger.info("Setup API stopped")

    app = FastAPI(
        title="Folio Setup API",
        description="Project provisioning and database migration for the setup wizard",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Added last runs first: request id is set before CORS handling.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": settings.app_version,
        }

    app.include_router(create_setup_router(management, settings, http_client=http_client))
    app.include_router(create_migrate_router(settings))
    return app
