"""
FastAPI Main Application
========================

Main entry point for the FeatureForge control server.
Provides the auto mode REST API.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routers import auto_mode_router
from .services.orchestrator_manager import cleanup_orchestrator

# Module logger
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    logger.info("FeatureForge server starting")
    yield
    # Shutdown - stop auto mode and every running feature
    await cleanup_orchestrator()


# Create FastAPI app
app = FastAPI(
    title="FeatureForge",
    description="Feature execution orchestrator control API",
    version="1.0.0",
    lifespan=lifespan,
)

# Set FEATUREFORGE_ALLOW_REMOTE=1 to accept requests from other hosts
ALLOW_REMOTE = os.environ.get("FEATUREFORGE_ALLOW_REMOTE", "").lower() in ("1", "true", "yes")

if ALLOW_REMOTE:
    logger.warning("ALLOW_REMOTE is enabled. Only use this in trusted network environments.")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:8888",
            "http://127.0.0.1:8888",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ============================================================================
# Security Middleware
# ============================================================================

if not ALLOW_REMOTE:
    @app.middleware("http")
    async def require_localhost(request: Request, call_next):
        """Only allow requests from localhost (disabled when FEATUREFORGE_ALLOW_REMOTE=1)."""
        client_host = request.client.host if request.client else None

        if client_host not in ("127.0.0.1", "::1", "localhost", "testclient", None):
            return JSONResponse(status_code=403, content={"detail": "Localhost access only"})

        return await call_next(request)


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(auto_mode_router)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server.main:app",
        host="127.0.0.1",  # Localhost only for security
        port=8888,
        reload=True,
    )
