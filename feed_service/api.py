"""
FastAPI Feed Service.

This module provides REST API endpoints for cached, paginated feeds.

Endpoints:
- GET /health: Health check
- GET /feed: Main feed page (auth required)
- GET /feed/following: Following-only feed (auth required, no language weighting)
- GET /feed/categories/{category}: Category feed (anonymous allowed)
- POST /feed/refresh: Drop the caller's main feed batches
- POST /feed/categories/{category}/refresh: Drop the caller's category batches
- GET /cache_stats: Batch cache statistics
- POST /cache_clear: Drop all cached batches

The caller is identified by the X-User-Id header set by the upstream gateway.

Usage:
    uvicorn feed_service.api:app --host 0.0.0.0 --port 8000 --workers 4
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
from contextlib import asynccontextmanager
import logging
import math
import time
import os

import numpy as np
from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from feed_service import __version__
from feed_service.config import FeedConfig, load_config
from feed_service.errors import FeedError
from feed_service.logging_utils import format_request, setup_service_logger
from feed_service.recommender import FeedDataStore, FeedScope, FeedService, PageResponse

# ============================================================================
# Logging Setup
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("feed_service")

# ============================================================================
# Security Configuration
# ============================================================================

ENV = os.getenv("ENV", "development")
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:8000,http://127.0.0.1:3000"
).split(",")

LOG_TO_FILE = os.getenv("LOG_TO_FILE", "true").lower() == "true"

# Rate limiter
FEED_RATE_LIMIT = os.getenv("FEED_RATE_LIMIT", "120/minute")
limiter = Limiter(
    key_func=get_remote_address,
    enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
)


# ============================================================================
# Helper Functions
# ============================================================================

def sanitize_error_message(error: Exception, endpoint: str = "") -> str:
    """
    Sanitize error messages for production.

    In production, don't expose internal error details.
    In development, show full error for debugging.
    """
    if ENV == "production":
        status_code = getattr(error, 'status_code', 500)
        if status_code == 401:
            return "Authentication required"
        elif status_code == 404:
            return "Not found"
        elif status_code == 503 or "not initialized" in str(error).lower():
            return "Service temporarily unavailable"
        else:
            return "An error occurred processing your request"
    else:
        return str(error)


def _to_http_exception(error: Exception, endpoint: str) -> HTTPException:
    """Map FeedError subclasses to their status code; anything else is a 500."""
    if isinstance(error, FeedError):
        if error.status_code >= 500:
            logger.error(f"{endpoint} failed: {error}")
        return HTTPException(
            status_code=error.status_code,
            detail=sanitize_error_message(error, endpoint)
        )

    logger.error(f"Unexpected error in {endpoint}: {error}", exc_info=True)
    return HTTPException(status_code=500, detail=sanitize_error_message(error, endpoint))


def _sanitize_numpy_types(value: Any) -> Any:
    """Convert numpy scalars to Python types and NaN to None, recursively."""
    if isinstance(value, dict):
        return {k: _sanitize_numpy_types(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_numpy_types(v) for v in value]
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, (float, np.floating)):
        return None if math.isnan(value) else float(value)
    return value


def get_feed_service(request: Request) -> FeedService:
    service = getattr(request.app.state, 'feed_service', None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


def _caller(x_user_id: Optional[str]) -> Optional[str]:
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()


def log_request_metrics(
    request: Request,
    endpoint: str,
    user_id: Optional[str],
    latency_ms: float,
    num_items: Optional[int] = None,
    error: Optional[str] = None
) -> None:
    """Append one line per request to the service log file."""
    request_logger = getattr(request.app.state, 'request_logger', None)
    if request_logger is None:
        return
    line = format_request({
        'endpoint': endpoint,
        'user': user_id,
        'items': num_items,
        'latency_ms': latency_ms,
        'error': error,
    })
    if error:
        request_logger.error(line)
    else:
        request_logger.info(line)


# ============================================================================
# Request/Response Models
# ============================================================================

class APIBaseModel(BaseModel):
    """Base model accepting both field names and aliases."""
    model_config = ConfigDict(populate_by_name=True)


class FeedPageResponse(APIBaseModel):
    """One page of a feed."""
    content: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")
    has_next: bool = Field(default=False, alias="hasNext")
    count: int = 0


class HealthResponse(APIBaseModel):
    """Health check response."""
    status: str
    version: str
    num_contents: int
    cached_batches: int
    timestamp: str
    empty_mode: bool


def _page_response(page: PageResponse) -> FeedPageResponse:
    return FeedPageResponse(
        content=_sanitize_numpy_types(page.items),
        next_cursor=page.next_cursor,
        has_next=page.has_next,
        count=page.count,
    )


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Check service health.

    Returns:
        Health status; 'degraded' when no content is loaded
    """
    service = get_feed_service(request)
    num_contents = len(service.store.contents)
    is_empty_mode = num_contents == 0

    return HealthResponse(
        status="degraded" if is_empty_mode else "healthy",
        version=__version__,
        num_contents=num_contents,
        cached_batches=service.cache.size(),
        timestamp=datetime.now().isoformat(),
        empty_mode=is_empty_mode,
    )


@router.get("/feed", response_model=FeedPageResponse)
@limiter.limit(FEED_RATE_LIMIT)
async def main_feed(
    request: Request,
    cursor: Optional[str] = Query(default=None, description="nextCursor from the previous page"),
    limit: Optional[int] = Query(default=None, description="Page size (clamped to 1..100)"),
    language: Optional[str] = Query(default=None, description="Preferred content language"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")
):
    """
    Get a page of the caller's main feed.

    Example:
        GET /feed?limit=20
        X-User-Id: u1

        {"content": [...], "nextCursor": "20", "hasNext": true, "count": 20}
    """
    start = time.perf_counter()
    user_id = _caller(x_user_id)
    service = get_feed_service(request)

    try:
        page = await service.get_main_feed(user_id, language=language, cursor=cursor, limit=limit)
    except Exception as e:
        log_request_metrics(request, "/feed", user_id, (time.perf_counter() - start) * 1000, error=str(e))
        raise _to_http_exception(e, "/feed") from e

    latency_ms = (time.perf_counter() - start) * 1000
    log_request_metrics(request, "/feed", user_id, latency_ms, num_items=page.count)
    return _page_response(page)


@router.get("/feed/following", response_model=FeedPageResponse)
@limiter.limit(FEED_RATE_LIMIT)
async def following_feed(
    request: Request,
    cursor: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")
):
    """Get a page of content from creators the caller follows."""
    start = time.perf_counter()
    user_id = _caller(x_user_id)
    service = get_feed_service(request)

    try:
        page = await service.get_following_feed(user_id, cursor=cursor, limit=limit)
    except Exception as e:
        log_request_metrics(request, "/feed/following", user_id, (time.perf_counter() - start) * 1000, error=str(e))
        raise _to_http_exception(e, "/feed/following") from e

    latency_ms = (time.perf_counter() - start) * 1000
    log_request_metrics(request, "/feed/following", user_id, latency_ms, num_items=page.count)
    return _page_response(page)


@router.get("/feed/categories/{category}", response_model=FeedPageResponse)
@limiter.limit(FEED_RATE_LIMIT)
async def category_feed(
    request: Request,
    category: str,
    cursor: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    language: Optional[str] = Query(default=None),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")
):
    """
    Get a page of a category feed.

    Anonymous callers share one batch per (category, language);
    their liked/saved flags are always false.
    """
    start = time.perf_counter()
    user_id = _caller(x_user_id)
    service = get_feed_service(request)
    endpoint = f"/feed/categories/{category}"

    try:
        page = await service.get_category_feed(
            user_id, category, language=language, cursor=cursor, limit=limit
        )
    except Exception as e:
        log_request_metrics(request, endpoint, user_id, (time.perf_counter() - start) * 1000, error=str(e))
        raise _to_http_exception(e, endpoint) from e

    latency_ms = (time.perf_counter() - start) * 1000
    log_request_metrics(request, endpoint, user_id, latency_ms, num_items=page.count)
    return _page_response(page)


@router.post("/feed/refresh", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(FEED_RATE_LIMIT)
async def refresh_main_feed(
    request: Request,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")
):
    """Invalidate the caller's main feed; the next read recomposes."""
    service = get_feed_service(request)
    try:
        service.refresh(_caller(x_user_id), FeedScope.main())
    except Exception as e:
        raise _to_http_exception(e, "/feed/refresh") from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/feed/categories/{category}/refresh", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(FEED_RATE_LIMIT)
async def refresh_category_feed(
    request: Request,
    category: str,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")
):
    """Invalidate the caller's feed for one category."""
    service = get_feed_service(request)
    try:
        service.refresh_category(_caller(x_user_id), category)
    except Exception as e:
        raise _to_http_exception(e, f"/feed/categories/{category}/refresh") from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/cache_stats")
async def cache_stats(request: Request):
    """Get batch cache and composer statistics."""
    service = getattr(request.app.state, 'feed_service', None)
    if service is None:
        return {"status": "not_initialized"}

    return _sanitize_numpy_types(service.get_stats())


@router.post("/cache_clear")
async def clear_cache(request: Request):
    """Drop all cached batches."""
    service = get_feed_service(request)
    service.cache.clear()
    return {"status": "cleared"}


# ============================================================================
# FastAPI App
# ============================================================================

def create_app(
    config: Optional[FeedConfig] = None,
    store: Optional[FeedDataStore] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Feed configuration (loaded from YAML if None)
        store: Data store (loaded from config.data_dir if None)

    Returns:
        FastAPI app whose lifespan owns the FeedService
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize and cleanup resources."""
        logger.info("Starting Feed Service...")

        feed_config = config or load_config()
        feed_store = store
        if feed_store is None:
            try:
                feed_store = FeedDataStore.from_directory(feed_config.data_dir)
            except Exception as e:
                logger.warning(f"Failed to load feed data from {feed_config.data_dir}: {e}")
                feed_store = FeedDataStore()

        if len(feed_store.contents) == 0:
            logger.warning(
                "SERVICE RUNNING IN EMPTY MODE - No content loaded! "
                f"Mount data under {feed_config.data_dir} and restart"
            )

        app.state.feed_service = FeedService(feed_store, feed_config)
        app.state.request_logger = setup_service_logger('feed') if LOG_TO_FILE else None
        logger.info(
            f"Feed service ready: batch_size={feed_config.batch_size}, "
            f"ttl={feed_config.batch_ttl_seconds}s, ratios={feed_config.strategy_ratios}"
        )

        yield

        # Cleanup
        logger.info("Shutting down Feed Service...")
        await app.state.feed_service.close()
        app.state.feed_service = None

    app = FastAPI(
        title="Feed Service",
        description="Cached, paginated recommendation feeds for short-form content",
        version=__version__,
        lifespan=lifespan
    )

    # Initialize rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # CORS middleware - only allow specific origins in production
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS if ENV == "production" else ["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        # Request ID for tracing
        request_id = request.headers.get("X-Request-ID", f"req_{int(time.time() * 1000)}")
        response.headers["X-Request-ID"] = request_id

        return response

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
