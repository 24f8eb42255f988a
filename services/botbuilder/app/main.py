"""FastAPI application entrypoint."""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import builds
from .config import get_settings
from .domain.errors import AuthenticationError, BuilderError
from .domain.script_registry import BundledScriptRegistry
from .observability.otel import configure_logging, configure_telemetry
from .persistence.db import init_db


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Bot Builder",
        version="0.1.0",
        openapi_version="3.1.0",
        docs_url="/docs",
        redoc_url=None,
    )

    configure_logging()
    configure_telemetry()
    registry = BundledScriptRegistry()
    registry.self_check()

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - FastAPI lifecycle
        await init_db()

    @app.exception_handler(AuthenticationError)
    async def _auth_exception_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(
            status_code=502,
            content={
                "error": "HostingAuthenticationFailed",
                "message": str(exc),
                "remediation": "Refresh the hosting API token and retry",
            },
        )

    @app.exception_handler(BuilderError)
    async def _builder_exception_handler(request: Request, exc: BuilderError):
        return JSONResponse(
            status_code=502,
            content={
                "error": type(exc).__name__,
                "message": str(exc),
                "remediation": "Check the upstream integration settings and retry",
            },
        )

    @app.exception_handler(Exception)
    async def _generic_exception_handler(request: Request, exc: Exception):  # pragma: no cover - fallback
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalServerError",
                "message": str(exc),
                "remediation": "Contact Bot Builder support with correlation ID",
            },
        )

    app.include_router(builds.router)

    @app.get("/healthz")
    async def healthcheck():
        return {
            "status": "ok",
            "environment": settings.environment,
            "bundledScripts": len(registry),
        }

    return app


app = create_app()


__all__ = ["app", "create_app"]
