"""
Packet Pipeline Backend - FastAPI Application
Main entry point for the application
"""
import uuid
import sys
import logging
import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from app.config import settings
from app.routes import packets_router, admin_packets_router, health_router
from app.utils.error_masking import mask_error_message
from app.services.db import init_db, test_connection, close_all_connections, get_pool_status
from app.services.pipeline import get_pipeline


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ],
    force=True
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info(f"Starting Packet Pipeline Backend on port {settings.port}")
    logger.info(f"Environment: {settings.env}")
    logger.info(f"CORS Origins: {settings.cors_origins_list}")
    logger.info(
        f"Retry policy: max_retries={settings.packet_max_retries}, "
        f"backoff={settings.packet_retry_base_seconds}s..{settings.packet_retry_max_seconds}s, "
        f"stale after {settings.packet_stale_generating_minutes} min"
    )

    logger.info("Testing database connection...")
    if test_connection():
        init_db()
        pool_status = get_pool_status()
        logger.info(f"Database ready: {pool_status}")
    else:
        logger.error("Database connection test failed - application may not function correctly")

    worker = None
    if settings.packet_worker_enabled:
        worker = get_pipeline().worker
        try:
            await worker.start()
            if worker.is_running:
                logger.info("Packet worker started successfully")
            else:
                logger.warning("Packet worker did not start")
        except Exception as e:
            logger.error(f"CRITICAL: Failed to start packet worker: {e}", exc_info=True)
            worker = None
    else:
        logger.info("Packet worker is disabled")

    yield

    logger.info("Application shutting down...")
    if worker:
        try:
            await asyncio.wait_for(worker.stop(), timeout=10.0)
            logger.info("Graceful shutdown completed")
        except asyncio.TimeoutError:
            logger.warning("Shutdown timeout - packet worker did not stop in time")
        except Exception as e:
            logger.error(f"Error during graceful shutdown: {e}", exc_info=True)

    close_all_connections()
    logger.info("Shutting down Packet Pipeline Backend")


app = FastAPI(
    title="Packet Pipeline API",
    description="Generation, retry and delivery of personalized client packets",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID", "Content-Disposition"],
)


# Request ID Middleware
@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Add correlation ID to all requests for tracing"""
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    request.state.correlation_id = correlation_id

    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id

    return response


# Security Headers Middleware
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses"""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = "no-store"

    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response


# Pydantic validation error handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors with user-friendly messages"""
    correlation_id = getattr(request.state, 'correlation_id', str(uuid.uuid4()))

    error_messages = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error.get("loc", []))
        msg = error.get("msg", "Validation error")
        error_messages.append(f"{field}: {msg}")

    error_detail = "; ".join(error_messages) if error_messages else "Validation error"

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": error_detail,
            "correlation_id": correlation_id,
        },
    )


# HTTP exception handler for standardized responses
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with standardized format"""
    correlation_id = getattr(request.state, 'correlation_id', str(uuid.uuid4()))

    content = {
        "success": False,
        "error": str(exc.detail) if exc.detail else "An error occurred",
        "correlation_id": correlation_id,
    }
    # Structured details (e.g. generation failures) are passed through as-is
    if isinstance(exc.detail, dict):
        content["error"] = exc.detail.get("message", "An error occurred")
        content["details"] = exc.detail

    return JSONResponse(status_code=exc.status_code, content=content)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions with PII masking"""
    error_message = mask_error_message(str(exc))
    correlation_id = getattr(request.state, 'correlation_id', str(uuid.uuid4()))
    logger.error(f"Unhandled error (correlation_id={correlation_id}): {error_message}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": error_message,
            "correlation_id": correlation_id,
        },
    )


# Include routers
app.include_router(health_router)
app.include_router(packets_router)
app.include_router(admin_packets_router)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Packet Pipeline API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.env == "development",
    )
