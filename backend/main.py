"""
FastAPI Backend for the Ad Video Studio
"""

import logging
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
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

logger = structlog.get_logger()

# Import settings
from config import settings
from errors import AppError, InternalError, RateLimitError, ValidationError, field_errors_from_pydantic
from models import new_id

CORRELATION_HEADER = "X-Correlation-ID"


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

    yield

    logger.info("application_shutdown", message="FastAPI application shutting down")


# Initialize FastAPI app
app = FastAPI(
    title="Ad Video Studio API",
    description="Generate, edit and render short product ad videos",
    version="1.0.0",
    lifespan=lifespan,
    swagger_ui_parameters={
        "persistAuthorization": True,
    }
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[CORRELATION_HEADER, "Retry-After"],
)


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or request.headers.get(CORRELATION_HEADER) or new_id()


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Tag every request with a correlation id and log it"""
    correlation_id = request.headers.get(CORRELATION_HEADER) or new_id()
    request.state.correlation_id = correlation_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

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

        response.headers[CORRELATION_HEADER] = correlation_id
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


def _error_response(request: Request, error: AppError) -> JSONResponse:
    correlation_id = _correlation_id(request)
    headers = {CORRELATION_HEADER: correlation_id}
    if isinstance(error, RateLimitError):
        headers["Retry-After"] = str(error.retry_after)

    return JSONResponse(
        status_code=error.status_code,
        content={**error.to_dict(), "correlationId": correlation_id},
        headers=headers,
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Render domain errors in the uniform error shape"""
    exc.log_error(path=request.url.path, method=request.method)
    return _error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationError("Request validation failed", field_errors_from_pydantic(exc))
    error.log_error(path=request.url.path, method=request.method)
    return _error_response(request, error)


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
    return _error_response(request, InternalError("An unexpected error occurred. Please try again later."))


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint

    Returns:
        dict: Health status of the API
    """
    return {
        "status": "healthy",
        "service": "ad-video-studio",
        "version": "1.0.0"
    }


# Include routers
from routers import projects, render_jobs

app.include_router(projects.router)
app.include_router(render_jobs.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Ad Video Studio API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "projects": "/api/projects",
            "generate": "/api/generate",
            "messages": "/api/projects/{project_id}/messages",
            "checkpoints": "/api/projects/{project_id}/checkpoints",
            "render": "/api/projects/{project_id}/render",
            "render_progress": "/api/render-jobs/{render_job_id}/progress",
            "render_cancel": "/api/render-jobs/{render_job_id}/cancel",
            "render_download": "/api/render-jobs/{render_job_id}/download-url"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
