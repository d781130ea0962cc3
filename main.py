import logging
import os
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from knowledge_engine import __version__
from knowledge_engine.api.v1 import api_router
from knowledge_engine.core.config import settings
from knowledge_engine.core.database import create_tables
from knowledge_engine.core.exceptions import setup_exception_handlers
from knowledge_engine.core.logging_config import setup_logging
from knowledge_engine.services.engine_builder import get_engine

setup_logging("DEBUG" if settings.DEBUG else settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Knowledge Engine API",
    description="Retrieval, caching, ingestion and answer auditing for AI agents",
    version=__version__,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if settings.ENVIRONMENT == "production":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log its duration"""
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - start_time) * 1000, 2)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={"request_id": request_id, "duration_ms": duration_ms},
        )
        return response


if not os.environ.get("TESTING"):
    app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(RequestLoggingMiddleware)

# Compression middleware (safe for tests)
app.add_middleware(GZipMiddleware, minimum_size=1000)

# Exception handlers
setup_exception_handlers(app)

# Routes
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    return {"message": "Knowledge Engine API", "version": __version__}


@app.get("/health")
async def health_check():
    engine = get_engine()
    database_ok = await engine.store.health_check()
    cache_ok = await engine.cache.health_check()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "ok" if database_ok else "unavailable",
        # Cache outages degrade to cache bypass, so they never make the service unhealthy
        "cache": "ok" if cache_ok else "bypassed",
    }


@app.on_event("startup")
async def startup_event():
    """Create tables on startup"""
    if not os.environ.get("TESTING"):
        await create_tables()
        logger.info("Database tables ready")


@app.on_event("shutdown")
async def shutdown_event():
    """Release cache connections"""
    if not os.environ.get("TESTING"):
        await get_engine().cache.backend.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True if settings.ENVIRONMENT == "development" else False
    )
