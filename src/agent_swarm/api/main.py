"""FastAPI application for the swarm dashboard."""

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .routes import status, messages, coordination, control


def create_app(project_path: Optional[Path] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        project_path: Path to the project whose swarm is monitored

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Swarm Dashboard API",
        description="Monitoring and control for parallel coding agents",
        version=__version__,
    )

    # Add CORS middleware for frontend access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.project_path = Path(project_path).resolve() if project_path else None

    app.include_router(status.router, prefix="/api", tags=["status"])
    app.include_router(messages.router, prefix="/api", tags=["messages"])
    app.include_router(coordination.router, prefix="/api", tags=["coordination"])
    app.include_router(control.router, prefix="/api", tags=["control"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Swarm Dashboard API",
            "version": __version__,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


def run_dashboard(
    project_path: Path,
    host: str = "127.0.0.1",
    port: int = 8000,
    reload: bool = False
) -> None:
    """Run the dashboard server.

    Args:
        project_path: Path to the project being monitored
        host: Host to bind to
        port: Port to listen on
        reload: Enable auto-reload for development
    """
    import uvicorn

    app = create_app(project_path)
    uvicorn.run(
        app,
        host=host,
        port=port,
        reload=reload,
    )
