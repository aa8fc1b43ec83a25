"""
RenoAI API server.

Wires the in-memory TTL cache, JWT authentication with refresh-token
rotation, and the auth/admin routers into a FastAPI application.
"""

import logging
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.config import Settings
from core.exceptions import AppError
from core.logging import configure_logging, get_logger
from middleware.auth import AuthMiddleware
from middleware.cache import ResponseCacheMiddleware
from routers import admin, auth

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting RenoAI API")

    await container.database().startup()
    await container.cache().start()

    logger.info("Services started successfully")
    yield

    await container.cache().stop()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}
                }
            )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()}
    )


def create_app(settings: Settings) -> FastAPI:
    app = FastAPI(
        title="RenoAI API",
        version="1.0.0",
        description="Renovation quoting backend: auth, sessions and response caching",
        lifespan=lifespan,
    )
    app.add_exception_handler(AppError, app_error_handler)

    # Last added runs first: CORS -> catch-all -> auth -> response cache -> routes
    app.add_middleware(ResponseCacheMiddleware, ttl=settings.cache_response_ttl)
    app.add_middleware(AuthMiddleware)
    app.add_middleware(CatchAllExceptionsMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Cache"],
    )

    app.include_router(auth.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health_check():
        cache = container.cache()
        return {
            "status": "OK",
            "service": "renoai-api",
            "environment": "development" if settings.debug else "production",
            "cache": {"size": cache.size(), "sweep_running": cache.is_running},
            "timestamp": datetime.now().isoformat()
        }

    return app


settings = container.settings()
configure_logging(settings)

# Suppress noisy loggers
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)

app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting RenoAI API", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
