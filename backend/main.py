"""
FastAPI Backend for studio media delivery and AI social videos
"""

import logging
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import time

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)

# stdlib loggers (pipeline modules) share the same level
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

logger = structlog.get_logger()

# Import settings
from config import settings
from schemas import HealthResponse


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("application_startup", message="FastAPI application starting up")

    # Validate configuration
    try:
        settings.validate_storage_config()
        logger.info("config_validated", message="Configuration validated successfully")
    except ValueError as e:
        logger.error("config_validation_failed", error=str(e))
        raise

    # Initialize database
    try:
        from database import init_db
        init_db()
        logger.info("database_tables_created", message="Database initialized successfully")
    except Exception as e:
        logger.error("database_init_error", error=str(e))

    if not settings.replicate_token:
        logger.warning("replicate_not_configured", message="AI social video start/poll will fail until REPLICATE_API_TOKEN is set")

    yield

    logger.info("application_shutdown", message="FastAPI application shutting down")
    from redis_client import close_redis_client
    close_redis_client()


# Initialize FastAPI app
app = FastAPI(
    title="Studio Media API",
    description="Media delivery proxy and AI social video generation for studio galleries",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests"""
    start_time = time.time()

    # Log request
    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None
    )

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        # Log response
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=f"{process_time:.3f}s"
        )

        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            "request_failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            process_time=f"{process_time:.3f}s"
        )
        raise


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_type=type(exc).__name__
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
            "details": str(exc) if settings.DEBUG else None
        }
    )


# Health check endpoint
@app.get("/health", tags=["Health"], response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint

    Returns:
        dict: Health status of the API
    """
    return {
        "status": "healthy",
        "service": "studio-media-api",
        "version": "1.0.0"
    }


# Include routers
from routers import media, ai_video

app.include_router(media.router)
app.include_router(ai_video.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Studio Media API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "gallery_asset": "/api/dropbox/assets/{gallery_id}",
            "gallery_download": "/api/dropbox/download/{gallery_id}",
            "ai_source": "/api/ai-source/dropbox",
            "social_video_start": "/api/ai/social-video/start",
            "social_video_poll": "/api/ai/social-video/poll/{prediction_id}"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True,
        log_level="info"
    )
