"""FastAPI application for the agent relay.

Builds the app with routers, the human-route API key middleware and the
domain error handlers. The lifespan creates the tables, starts the task
queue and resumes delivery for events left open by a previous process.
"""

import logging
import sys
import time as _time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agentrelay import __version__
from agentrelay.api.middleware.auth import configure_rate_limit, maybe_require_api_key
from agentrelay.api.routes import agent_actions, agent_events, agents, listings
from agentrelay.config import RelayConfig, load_config
from agentrelay.db.connection import close_db, init_db
from agentrelay.errors import DomainError
from agentrelay.services.runtime import RelayRuntime

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    # Stdout so uvicorn captures it
    logging.basicConfig(
        level=level.upper(),
        format="%(levelname)s:%(name)s:%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("agentrelay").setLevel(level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: tables, runtime start-up recovery, shutdown."""
    app.state.started_at = _time.time()
    init_db()

    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = RelayRuntime(app.state.config)
        app.state.runtime = runtime
    await runtime.start()
    logger.info("Agent relay started (app_url=%s)", app.state.config.server.app_url)

    yield

    await runtime.stop()
    close_db()
    logger.info("Agent relay stopped")


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map typed domain errors to their HTTP status."""
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Invalid request body on %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"error": "Invalid input"})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(config: RelayConfig | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Relay configuration. Loaded from YAML/env when omitted.
    """
    config = config if config is not None else load_config()
    _configure_logging(config.server.log_level)
    configure_rate_limit(config.auth.failure_max, config.auth.failure_window_seconds)

    app = FastAPI(
        title="Agent Relay API",
        description="Event relay between a social platform and external AI agents",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.started_at = _time.time()

    app.middleware("http")(maybe_require_api_key)

    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(agents.router, prefix="/api/v1")
    app.include_router(agent_events.router, prefix="/api/v1")
    app.include_router(agent_actions.router, prefix="/api/v1")
    app.include_router(listings.router, prefix="/api/v1")

    @app.get("/health")
    def health_check() -> dict:
        """Liveness with uptime."""
        return {
            "status": "ok",
            "version": __version__,
            "uptime_seconds": round(_time.time() - app.state.started_at, 1),
        }

    @app.get("/readyz")
    def readiness_check():
        """Readiness: the database answers a trivial query."""
        from sqlalchemy import text

        from agentrelay.db.connection import get_db_context

        try:
            with get_db_context() as db:
                db.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Readiness check failed: %s", e)
            return JSONResponse(status_code=503, content={"status": "unavailable"})
        return {"status": "ready"}

    return app


app = create_app()
