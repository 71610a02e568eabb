"""
Feed Service Package.

This package provides the serving layer for cached, paginated feeds.

Components:
- api: FastAPI application with feed endpoints
- config: FeedConfig and YAML loading
- errors: Exceptions mapped to HTTP status codes
- recommender: Batch composition, caching and paging
    - FeedService: Cursor-paged reads
    - BatchComposer: Strategy mixing (40/30/10/20)
    - BatchCache: TTL cache, single-flight, prefetch

Usage:
    # Start the service
    uvicorn feed_service.api:app --host 0.0.0.0 --port 8000

    # Or programmatically
    from feed_service import FeedService, FeedDataStore, load_config

    config = load_config()
    service = FeedService(FeedDataStore.from_directory(config.data_dir), config)
    page = await service.get_main_feed('u1', limit=20)
"""

from feed_service.config import FeedConfig, load_config
from feed_service.errors import (
    FeedError,
    AuthorizationError,
    UnknownCategoryError,
    FeedUnavailableError
)
from feed_service.recommender import (
    FeedService,
    FeedDataStore,
    FeedScope,
    OwnerKey,
    FeedBatch,
    PageResponse
)

__all__ = [
    'FeedConfig',
    'load_config',
    'FeedError',
    'AuthorizationError',
    'UnknownCategoryError',
    'FeedUnavailableError',
    'FeedService',
    'FeedDataStore',
    'FeedScope',
    'OwnerKey',
    'FeedBatch',
    'PageResponse',
]

__version__ = "1.0.0"
