"""FastAPI application for the AgentDesk session service.

Provides the main application instance with the agent routers, CORS and
exception handlers configured. Run with ``agentdesk-server`` or
``uvicorn agentdesk.api.main:app``.
"""

import logging
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request

from agentdesk.config import (
    get_allowed_origins,
    get_log_level,
    get_ws_ping_interval,
    get_ws_ping_timeout,
)

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=get_log_level(),
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("agentdesk").setLevel(get_log_level())

from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from sqlalchemy import text  # noqa: E402

from agentdesk import __version__  # noqa: E402
from agentdesk.api.routes import agent_socket, agent_sse  # noqa: E402
from agentdesk.api.runtime import shutdown_session_runtime  # noqa: E402
from agentdesk.db.connection import close_db, get_db_context, init_db  # noqa: E402
from agentdesk.errors import (  # noqa: E402
    ConflictError,
    DomainError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

_startup_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup; end live sessions on shutdown."""
    global _startup_time

    _startup_time = _time.time()
    init_db()
    logger.info(
        "AgentDesk started: single-worker mode only, live sessions are in memory"
    )

    yield

    await shutdown_session_runtime()
    close_db()


app = FastAPI(
    title="AgentDesk API",
    description="Realtime conversational agent sessions over SSE and websockets",
    version=__version__,
    lifespan=lifespan,
)

# CORS allowlist is env-driven. If unset, CORS is disabled (same-origin only).
allowed_origins = get_allowed_origins()
if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )


_DOMAIN_STATUS: list[tuple[type[DomainError], int]] = [
    (NotFoundError, 404),
    (ConflictError, 409),
]


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map typed domain exceptions to HTTP statuses.

    The body keeps FastAPI's ``detail`` key alongside the registry payload.
    """
    status_code = 500
    for error_type, code in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    content = {"detail": str(exc), **exc.to_error().to_payload()}
    return JSONResponse(status_code=status_code, content=content)


# Include routers
app.include_router(agent_sse.router, prefix="/api/v1")
app.include_router(agent_socket.router, prefix="/api/v1")


@app.get("/health")
def health_check() -> dict:
    """Health check with live session count and database status."""
    from agentdesk.api import runtime

    uptime = int(_time.time() - _startup_time) if _startup_time else 0
    try:
        with get_db_context() as db:
            db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as exc:
        logger.warning("Health check database probe failed: %s", exc)
        database = "error"

    manager = runtime._session_manager
    try:
        version = _pkg_version("agentdesk")
    except PackageNotFoundError:
        version = __version__

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "version": version,
        "uptime_seconds": uptime,
        "live_sessions": len(manager.list_sessions()) if manager else 0,
        "database": database,
    }


def main() -> None:
    """Run the API server with websocket keepalive settings."""
    import uvicorn

    uvicorn.run(
        "agentdesk.api.main:app",
        host="127.0.0.1",
        port=8000,
        ws_ping_interval=get_ws_ping_interval(),
        ws_ping_timeout=get_ws_ping_timeout(),
        workers=1,
    )
