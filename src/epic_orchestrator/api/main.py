"""FastAPI application exposing the engine.

Provides REST endpoints for the snapshot and the imperative operations, and
a WebSocket that streams every change notification.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import OrchestratorError
from ..orchestrator import Orchestrator
from .deps import STATUS_BY_CATEGORY
from .routes import epic, pipeline, sessions
from .websocket import ConnectionManager, router as websocket_router


def create_app(orchestrator: Orchestrator, manage_lifecycle: bool = True) -> FastAPI:
    """Create the FastAPI application.

    Args:
        orchestrator: Engine instance served by this app
        manage_lifecycle: Start the session timers on startup and stop every
            timer on shutdown

    Returns:
        Configured FastAPI application
    """
    manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        unsubscribe = orchestrator.subscribe(
            lambda event, snapshot: manager.broadcast(event, snapshot.model_dump(mode="json"))
        )
        if manage_lifecycle:
            await orchestrator.start()
        try:
            yield
        finally:
            unsubscribe()
            if manage_lifecycle:
                await orchestrator.shutdown()

    app = FastAPI(
        title="Epic Orchestrator API",
        description="Monitoring and control of epic orchestration",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.orchestrator = orchestrator
    app.state.connections = manager

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
        return JSONResponse(
            status_code=STATUS_BY_CATEGORY.get(exc.category, 500),
            content={"detail": exc.message, "category": exc.category.value},
        )

    app.include_router(epic.router, prefix="/api", tags=["epic"])
    app.include_router(pipeline.router, prefix="/api", tags=["pipeline"])
    app.include_router(sessions.router, prefix="/api", tags=["sessions"])
    app.include_router(websocket_router, prefix="/ws", tags=["websocket"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Epic Orchestrator API",
            "version": __version__,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "monitoring": orchestrator.monitor.is_monitoring,
            "clients": len(manager.active_connections),
        }

    return app


async def serve(
    orchestrator: Orchestrator,
    host: str = "127.0.0.1",
    port: int = 8000,
    log_level: Optional[str] = None,
) -> None:
    """Run the API server on the current event loop.

    Args:
        orchestrator: Engine instance to serve
        host: Host to bind to
        port: Port to listen on
        log_level: uvicorn log level
    """
    import uvicorn

    app = create_app(orchestrator)

    config = uvicorn.Config(app, host=host, port=port, log_level=log_level or "info")
    server = uvicorn.Server(config)
    await server.serve()
