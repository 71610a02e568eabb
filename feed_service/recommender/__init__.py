"""
Feed Recommender Package.

This package provides batch composition, caching and paging for the
feed service.

Main components:
- scoring: Popularity, language weight and time decay functions
- FeedDataStore: In-process users, interactions and content index
- CandidateSource: Collaborative, popular, recent, random and following
- BatchComposer: Merges sources into one de-duplicated batch
- BatchCache: TTL cache with single-flight composition and prefetch
- FeedService: Cursor-paged reads over cached batches

Example:
    >>> from feed_service.recommender import FeedService, FeedDataStore
    >>> service = FeedService(FeedDataStore.from_directory('data/feed'))
    >>> page = await service.get_main_feed('u1')
"""

from .models import (
    ANONYMOUS_USER,
    FeedScope,
    OwnerKey,
    Candidate,
    ScoredCandidate,
    FeedBatch,
    ConsumptionCursor,
    PageResponse
)
from .scoring import (
    popularity_score,
    language_weight,
    time_decay,
    interaction_weight,
    score
)
from .store import (
    UserDirectory,
    InteractionHistory,
    ContentIndex,
    FeedDataStore
)
from .sources import (
    CandidateSource,
    CollaborativeSource,
    PopularSource,
    RecentSource,
    RandomSource,
    FollowingSource,
    build_sources
)
from .composer import BatchComposer, compute_quotas
from .cache import BatchCache, BatchState
from .feed import FeedService, decode_cursor

__all__ = [
    # Models
    'ANONYMOUS_USER',
    'FeedScope',
    'OwnerKey',
    'Candidate',
    'ScoredCandidate',
    'FeedBatch',
    'ConsumptionCursor',
    'PageResponse',

    # Scoring
    'popularity_score',
    'language_weight',
    'time_decay',
    'interaction_weight',
    'score',

    # Collaborators
    'UserDirectory',
    'InteractionHistory',
    'ContentIndex',
    'FeedDataStore',

    # Sources
    'CandidateSource',
    'CollaborativeSource',
    'PopularSource',
    'RecentSource',
    'RandomSource',
    'FollowingSource',
    'build_sources',

    # Composition, caching & paging
    'BatchComposer',
    'compute_quotas',
    'BatchCache',
    'BatchState',
    'FeedService',
    'decode_cursor',
]
