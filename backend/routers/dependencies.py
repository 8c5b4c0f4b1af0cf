"""
Shared FastAPI dependencies for the API routers

Collaborators are resolved through these functions so tests can swap them
with ``app.dependency_overrides``.
"""

from fastapi import Request

from models import new_id
from services.content_generator import ContentGenerator, get_content_generator
from services.rate_limiter import SlidingWindowRateLimiter, get_rate_limiter
from services.s3_storage import S3StorageService, get_s3_storage_service


def get_correlation_id(request: Request) -> str:
    """Correlation id assigned by the request middleware"""
    correlation_id = getattr(request.state, "correlation_id", None)
    if not correlation_id:
        correlation_id = new_id()
        request.state.correlation_id = correlation_id
    return correlation_id


def get_generator() -> ContentGenerator:
    return get_content_generator()


def get_storage() -> S3StorageService:
    return get_s3_storage_service()


def get_render_queue():
    """Queue the render worker consumes (Redis list)"""
    from redis_client import redis_client

    return redis_client


def get_limiter() -> SlidingWindowRateLimiter:
    return get_rate_limiter()


def get_session_factory():
    """Session factory for work that outlives the request's own session"""
    from database import SessionLocal

    return SessionLocal
