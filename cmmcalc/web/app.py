"""FastAPI application for the CMMCalc quantity derivation API."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from cmmcalc import __version__
from cmmcalc.core.logging import configure_logging
from cmmcalc.db.connection import close_db
from cmmcalc.errors import (
    InvalidTransition,
    PersistenceError,
    ProfileNotFoundError,
    RunNotFoundError,
    UnknownRuleSet,
    ValidationError,
)
from cmmcalc.web.dependencies import close_dependencies
from cmmcalc.web.routes import estimates, health, materials, rulesets, runs, taxonomy

logger = structlog.get_logger()


# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            logger.info(
                "request_completed",
                status_code=response.status_code,
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_dependencies()
    await close_db()


def _error(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="CMMCalc",
        description="Construction material quantity derivation engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)

    # Exception Handlers (errors not already mapped by a route)
    app.add_exception_handler(UnknownRuleSet, _error(404))
    app.add_exception_handler(ValidationError, _error(422))
    app.add_exception_handler(ProfileNotFoundError, _error(404))
    app.add_exception_handler(RunNotFoundError, _error(404))
    app.add_exception_handler(InvalidTransition, _error(409))
    app.add_exception_handler(PersistenceError, _error(503))

    # Include Routers
    app.include_router(health.router)
    app.include_router(taxonomy.router)
    app.include_router(rulesets.router)
    app.include_router(runs.router)
    app.include_router(estimates.router)
    app.include_router(materials.router)

    return app


app = create_app()
