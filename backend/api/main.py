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
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.routes import data_sources, integrations, oauth, sync
from config import log_missing_env_vars, settings
from models.database import close_db, get_pool_status, get_session

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)

app = FastAPI(title="Integration Sync API", version="1.0.0")


def _normalize_origin(origin: str) -> str:
    return origin.strip().rstrip("/")


cors_origins: list[str] = [
    "http://localhost:5173",  # Vite dev server
    "http://localhost:3000",
    settings.FRONTEND_URL,
]
allowed_origins = {_normalize_origin(origin) for origin in cors_origins if origin}


def get_cors_headers(origin: str | None) -> dict[str, str]:
    """Return CORS headers if origin is allowed."""
    normalized_origin = _normalize_origin(origin) if origin else None
    if normalized_origin and normalized_origin in allowed_origins:
        return {
            "Access-Control-Allow-Origin": normalized_origin,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS, PATCH",
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
    cors_headers = get_cors_headers(request.headers.get("origin"))
    logging.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers=cors_headers,
    )


# Routes
app.include_router(oauth.router, prefix="/api/oauth", tags=["oauth"])
app.include_router(integrations.router, prefix="/api/integrations", tags=["integrations"])
app.include_router(data_sources.router, prefix="/api/data-sources", tags=["data-sources"])
app.include_router(sync.router, prefix="/api/sync", tags=["sync"])


@app.on_event("startup")
async def startup() -> None:
    # Schema is managed by Alembic; nothing to create here
    log_missing_env_vars(logging.getLogger("config"))
    logging.info("Integration sync API started (environment=%s)", settings.ENVIRONMENT)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Clean up database connections on shutdown."""
    logging.info("Shutting down, closing database connections...")
    await close_db()


@app.get("/health")
async def health_check() -> dict[str, object]:
    """Liveness plus a round trip to the database."""
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        database = "ok"
    except (SQLAlchemyError, OSError) as e:
        logging.warning("Health check database probe failed: %s", e)
        database = "error"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "pool": get_pool_status(),
    }
