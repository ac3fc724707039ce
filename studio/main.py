"""
Studio Batch API
FastAPI Backend Entry Point
"""

import io
import logging
import mimetypes
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from studio import __version__
from studio.core.config import settings
from studio.core.database import init_db
from studio.api import batches

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info(f"Starting {settings.APP_NAME}...")
    init_db()
    logger.info("Database tables created")
    yield
    logger.info(f"Shutting down {settings.APP_NAME}...")


app = FastAPI(
    title=settings.APP_NAME,
    description="Batch image/video generation with pause, resume, cancel and live progress",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(batches.router, prefix="/api/v1/batches", tags=["Batches"])


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint for Cloud Run and monitoring.
    Returns detailed status of critical services.
    """
    status = {
        "status": "healthy",
        "version": __version__,
        "environment": {
            "storage": "gcs" if settings.USE_GCS else ("local" if settings.USE_LOCAL_STORAGE else "s3"),
            "database": "sqlite" if settings.DATABASE_URL.startswith("sqlite") else "postgresql",
            "scheduler": settings.SCHEDULER_BACKEND,
            "provider": settings.GENERATION_PROVIDER,
        },
        "services": {}
    }

    # Check database connection
    try:
        from sqlalchemy import text
        from studio.core.database import SessionLocal
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        status["services"]["database"] = "ok"
    except Exception as e:
        status["services"]["database"] = f"error: {str(e)}"
        status["status"] = "degraded"

    # Check Redis connection (only needed by the rq scheduler and redis progress backend)
    if settings.SCHEDULER_BACKEND == "rq" or settings.PROGRESS_BACKEND == "redis":
        try:
            from studio.core.redis import redis_health_check
            redis_status = redis_health_check()
            if redis_status.get("connected"):
                status["services"]["redis"] = "ok"
                status["services"]["redis_version"] = redis_status.get("redis_version")
            else:
                status["services"]["redis"] = f"error: {redis_status.get('error', 'not connected')}"
                status["status"] = "degraded"
        except Exception as e:
            status["services"]["redis"] = f"error: {str(e)}"
            status["status"] = "degraded"

    # Check storage availability
    try:
        from studio.services.storage import get_storage_service
        get_storage_service()
        status["services"]["storage"] = "ok"
    except Exception as e:
        status["services"]["storage"] = f"error: {str(e)}"
        status["status"] = "degraded"

    return status


@app.get("/files/{file_path:path}", tags=["Files"])
async def serve_file(file_path: str):
    """
    Serve generated files (images, videos) from storage.
    This proxies files from GCS/S3/local storage to the frontend.
    """
    from studio.services.storage import get_storage_service

    try:
        file_bytes = await get_storage_service().get_file(file_path)
    except Exception as e:
        raise HTTPException(status_code=404, detail=f"File not found: {str(e)}")

    content_type = mimetypes.guess_type(file_path)[0] or "application/octet-stream"
    return StreamingResponse(
        io.BytesIO(file_bytes),
        media_type=content_type,
        headers={
            "Cache-Control": "public, max-age=3600",
            "Access-Control-Allow-Origin": "*"
        }
    )


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": settings.APP_NAME,
        "docs": "/docs",
        "health": "/health",
    }
