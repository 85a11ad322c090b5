"""
Main FastAPI application entry point.

Responsibilities:
- Initialize FastAPI app
- Configure CORS
- Include routers
- Setup startup/shutdown events
"""
from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import sync, webhooks
from models.database import close_db, get_pool_status
from config import log_missing_env_vars

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)

app = FastAPI(title="Directory Sync API", version="1.0.0")


def _normalize_origin(origin: str) -> str:
    return origin.strip().rstrip("/")


# Only the admin console calls this API from a browser; providers post server-to-server
cors_origins: list[str] = [
    "http://localhost:5173",  # Vite dev server
    "http://localhost:3000",
]

frontend_url = os.environ.get("FRONTEND_URL")
if frontend_url:
    cors_origins.append(frontend_url)

allowed_origins = {_normalize_origin(origin) for origin in cors_origins}


def get_cors_headers(origin: str | None) -> dict[str, str]:
    """Return CORS headers if origin is allowed."""
    normalized_origin = _normalize_origin(origin) if origin else None
    if normalized_origin and normalized_origin in allowed_origins:
        return {
            "Access-Control-Allow-Origin": normalized_origin,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "*",
        }
    return {}


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler to ensure CORS headers on all errors
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all uncaught exceptions with CORS headers."""
    origin = request.headers.get("origin")
    cors_headers = get_cors_headers(origin)
    logging.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers=cors_headers,
    )


# Routes
app.include_router(sync.router, prefix="/api/sync", tags=["sync"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])


@app.on_event("startup")
async def startup() -> None:
    # Note: init_db() skipped - Alembic handles migrations
    log_missing_env_vars(logging.getLogger("config"))
    logging.info("Database connection pool ready")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Clean up database connections on shutdown."""
    logging.info("Shutting down, closing database connections...")
    await close_db()
    logging.info("Database connections closed")


@app.get("/")
async def root_health_check() -> dict[str, str]:
    """Root endpoint exposing the health check payload."""
    return await health_check()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    logging.info("Health check requested")
    return {"status": "ok"}


@app.get("/health/db")
async def db_health_check() -> dict[str, object]:
    """Database health check with pool status."""
    try:
        pool_status = get_pool_status()
        return {
            "status": "ok",
            "pool": pool_status,
        }
    except Exception as e:
        return {
            "status": "error",
            "error": str(e),
        }
