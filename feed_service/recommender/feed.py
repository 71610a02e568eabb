"""
Feed Service.

Serves cursor-paged feeds out of cached batches:

1. Resolve language (query > user preference > default) and owner key
2. Split the cursor offset into (batch number, position) and get_or_compose
   that batch; batch n covers offsets [n * batch_size, (n + 1) * batch_size)
3. Slice [position, position + limit); a full page has hasNext=true and
   nextCursor=offset+limit, a short page ends the feed
4. Record consumption (may schedule a prefetch of the next batch)
5. Hydrate ids with metadata and liked/saved flags

Example:
    >>> service = FeedService(FeedDataStore.from_directory('data/feed'))
    >>> page = await service.get_main_feed('u1', cursor=None, limit=20)
    >>> page.to_dict()['hasNext']
    True
"""

from typing import Any, Callable, Dict, List, Optional
from concurrent.futures import Executor
import asyncio
import logging
import time

from ..config import FeedConfig
from ..errors import AuthorizationError, FeedError, FeedUnavailableError, UnknownCategoryError
from .cache import BatchCache
from .composer import BatchComposer
from .models import FeedScope, OwnerKey, PageResponse
from .sources import CandidateSource, build_sources
from .store import FeedDataStore

logger = logging.getLogger(__name__)


def decode_cursor(cursor: Optional[Any]) -> int:
    """
    Feed offset encoded in a cursor.

    Lenient: missing, non-numeric and negative cursors all mean offset 0.
    """
    if cursor is None:
        return 0
    try:
        offset = int(str(cursor).strip())
    except (TypeError, ValueError):
        logger.debug(f"Ignoring malformed cursor: {cursor!r}")
        return 0
    return offset if offset > 0 else 0


class FeedService:
    """
    Paged feed reads on top of BatchComposer and BatchCache.

    The cache lives as long as the service instance; the API creates one in
    its lifespan handler and closes it on shutdown.
    """

    def __init__(
        self,
        store: FeedDataStore,
        config: Optional[FeedConfig] = None,
        sources: Optional[Dict[str, CandidateSource]] = None,
        clock: Callable[[], float] = time.time,
        executor: Optional[Executor] = None
    ):
        """
        Initialize feed service.

        Args:
            store: Users, history, content metadata and hydration
            config: Feed configuration
            sources: Candidate sources (built from store if None)
            clock: Wall-clock function shared by composer and cache
            executor: Executor for blocking store calls (None = loop default)
        """
        self.config = config or FeedConfig()
        self.store = store
        self.executor = executor
        self.sources = sources if sources is not None else build_sources(store, self.config)
        self.composer = BatchComposer(self.sources, self.config, clock=clock, executor=executor)
        self.cache = BatchCache(self.composer, self.config, clock=clock)

    # ========================================================================
    # Request helpers
    # ========================================================================

    def resolve_language(
        self,
        user_id: Optional[str],
        scope: FeedScope,
        language: Optional[str] = None
    ) -> Optional[str]:
        """Language for weighting; None for scopes without language weighting."""
        if not scope.language_weighted:
            return None
        if language and language.strip():
            return language.strip().lower()
        if user_id is not None:
            preferred = self.store.get_preferred_language(user_id)
            if preferred:
                return preferred.lower()
        return self.config.default_language

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.default_page_size
        return max(1, min(int(limit), self.config.max_page_size))

    def category_scope(self, category: str) -> FeedScope:
        """Scope for a category name; raises UnknownCategoryError if unknown."""
        name = (category or '').strip().upper()
        if name not in {c.upper() for c in self.config.categories}:
            raise UnknownCategoryError(f"Unknown category: {category}")
        return FeedScope.for_category(name)

    def owner_key(
        self,
        user_id: Optional[str],
        scope: FeedScope,
        language: Optional[str] = None
    ) -> OwnerKey:
        return OwnerKey(user_id, scope, self.resolve_language(user_id, scope, language))

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_page(
        self,
        user_id: Optional[str],
        scope: FeedScope,
        language: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None
    ) -> PageResponse:
        """
        Get one page of a feed.

        Args:
            user_id: Caller (None for anonymous)
            scope: Feed scope
            language: Explicit language (falls back to user preference)
            cursor: Opaque cursor from a previous page (None = start)
            limit: Page size, clamped to [1, max_page_size]

        Returns:
            PageResponse with hydrated items

        Raises:
            AuthorizationError: Scope requires a user and none was given
            FeedUnavailableError: Hydration failed (batch stays cached)
        """
        if scope.requires_user and user_id is None:
            raise AuthorizationError(f"Authentication required for {scope} feed")

        cfg = self.config
        offset = decode_cursor(cursor)
        limit = self.clamp_limit(limit)
        key = self.owner_key(user_id, scope, language)

        # Cursors past batch n continue into batch n + 1
        sequence, position = divmod(offset, cfg.batch_size)
        if sequence >= cfg.max_batches_per_owner:
            logger.debug(f"Cursor {offset} is past the last batch for {key}")
            return PageResponse(items=[], next_cursor=None, has_next=False)

        batch = await self.cache.get_or_compose(key, sequence)
        content_ids = list(batch.content_ids[position:position + limit])

        next_offset = offset + limit
        has_next = (
            len(content_ids) == limit
            and next_offset // cfg.batch_size < cfg.max_batches_per_owner
        )
        next_cursor = str(next_offset) if has_next else None

        if content_ids:
            self.cache.maybe_prefetch_next(
                key, position + len(content_ids), sequence=sequence, batch_id=batch.batch_id
            )

        items = await self._hydrate(user_id, content_ids)
        logger.debug(
            f"Page {key} #{sequence}: offset={offset}, limit={limit}, "
            f"returned={len(items)}, has_next={has_next}"
        )
        return PageResponse(items=items, next_cursor=next_cursor, has_next=has_next)

    async def _hydrate(self, user_id: Optional[str], content_ids: List[str]) -> List[Dict[str, Any]]:
        if not content_ids:
            return []

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                self.executor, self.store.get_feed_items, user_id, content_ids
            )
        except FeedError:
            raise
        except Exception as e:
            logger.error(f"Hydration failed for {len(content_ids)} items: {e}", exc_info=True)
            raise FeedUnavailableError("Content metadata is temporarily unavailable") from e

    async def get_main_feed(
        self,
        user_id: Optional[str],
        language: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None
    ) -> PageResponse:
        return await self.get_page(user_id, FeedScope.main(), language, cursor, limit)

    async def get_following_feed(
        self,
        user_id: Optional[str],
        cursor: Optional[str] = None,
        limit: Optional[int] = None
    ) -> PageResponse:
        return await self.get_page(user_id, FeedScope.following(), None, cursor, limit)

    async def get_category_feed(
        self,
        user_id: Optional[str],
        category: str,
        language: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None
    ) -> PageResponse:
        scope = self.category_scope(category)
        return await self.get_page(user_id, scope, language, cursor, limit)

    # ========================================================================
    # Refresh & lifecycle
    # ========================================================================

    def refresh(self, user_id: Optional[str], scope: FeedScope) -> int:
        """
        Drop the caller's cached batches for a scope (all languages).

        Returns:
            Number of owner keys invalidated
        """
        if user_id is None:
            raise AuthorizationError("Authentication required to refresh a feed")
        removed = self.cache.invalidate_scope(user_id, scope)
        logger.info(f"Refreshed {scope} feed for user={user_id}: {removed} batch(es) dropped")
        return removed

    def refresh_category(self, user_id: Optional[str], category: str) -> int:
        return self.refresh(user_id, self.category_scope(category))

    def get_stats(self) -> Dict[str, Any]:
        return {
            'cache': self.cache.get_stats(),
            'composer': {
                'compositions': self.composer.compositions,
                'source_failures': self.composer.source_failures,
            },
        }

    async def close(self) -> None:
        await self.cache.close()
        logger.info("Feed service closed")
