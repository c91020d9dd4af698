"""FastAPI application entry point for the FlowCoder backend.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_session_manager as set_routes_session_manager
from api.websocket import set_session_manager as set_websocket_session_manager
from api.websocket import websocket_router
from config import configure_logging, settings
from events import get_event_bus
from session_manager import SessionManager

configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the session manager on startup and close every session on shutdown."""
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
        default_model=settings.default_model,
        tiny_model=settings.tiny_model,
    )

    session_manager = SessionManager(get_event_bus())
    set_routes_session_manager(session_manager)
    set_websocket_session_manager(session_manager)
    app.state.session_manager = session_manager

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.session_manager.cleanup_all()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="FlowCoder",
    description="Turn orchestration engine for a local multi-agent coding assistant.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router, tags=["sessions"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "FlowCoder API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
