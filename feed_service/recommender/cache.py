"""
Batch Cache for composed feeds.

Holds, per OwnerKey (user + scope + language), a short sequence of
FeedBatches: batch 0 is served for cursors [0, batch_size), batch 1 for
[batch_size, 2 * batch_size) and so on. Each batch carries its own
consumption cursor.

Key Features:
- TTL per batch, checked lazily on read (no sweeper)
- A cached batch is never replaced while it is fresh; every reader of the
  same owner key and sequence sees the same ids in the same order
- Single-flight composition: concurrent misses share one composition task
- Background prefetch of batch n + 1 once half of batch n has been consumed;
  a reader reaching batch n + 1 joins the prefetch if it is still running
- Batch n + 1 is composed excluding the ids of batch n
- LRU bound on the number of owner keys

Usage:
    cache = BatchCache(composer, config)
    batch = await cache.get_or_compose(owner_key)
    cache.maybe_prefetch_next(owner_key, consumed_count=140)
    next_batch = await cache.get_or_compose(owner_key, sequence=1)
"""

from typing import Any, Callable, Dict, FrozenSet, Optional, Set, Tuple
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import logging
import math
import time

from ..config import FeedConfig
from .composer import BatchComposer
from .models import ConsumptionCursor, FeedBatch, FeedScope, OwnerKey

logger = logging.getLogger(__name__)


SlotKey = Tuple[OwnerKey, int]


class BatchState(str, Enum):
    """Lifecycle of one batch slot of an owner key."""
    EMPTY = 'empty'
    COMPOSING = 'composing'
    READY = 'ready'
    STALE = 'stale'


@dataclass
class _BatchSlot:
    batch: FeedBatch
    cursor: ConsumptionCursor
    prefetched: bool = False
    prefetch_scheduled: bool = False


@dataclass
class _CacheEntry:
    slots: Dict[int, _BatchSlot] = field(default_factory=dict)


class BatchCache:
    """
    Per-owner-key batch cache.

    All state is touched from the event loop only; no locks are needed.
    """

    def __init__(
        self,
        composer: BatchComposer,
        config: Optional[FeedConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize batch cache.

        Args:
            composer: Composer used for misses and prefetches
            config: Feed configuration (TTL, prefetch threshold, size bounds)
            clock: Wall-clock function; must match the composer's clock
        """
        self.composer = composer
        self.config = config or FeedConfig()
        self.clock = clock

        self._entries: 'OrderedDict[OwnerKey, _CacheEntry]' = OrderedDict()
        self._inflight: Dict[SlotKey, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

        # Statistics
        self.hits = 0
        self.misses = 0
        self.compositions = 0
        self.prefetches = 0
        self.prefetch_failures = 0
        self.prefetch_hits = 0
        self.invalidations = 0
        self.evictions = 0

    # ========================================================================
    # Reads
    # ========================================================================

    def _slot(self, owner_key: OwnerKey, sequence: int) -> Optional[_BatchSlot]:
        entry = self._entries.get(owner_key)
        return entry.slots.get(sequence) if entry is not None else None

    def state(self, owner_key: OwnerKey, sequence: int = 0) -> BatchState:
        """Current lifecycle state of one batch slot."""
        if (owner_key, sequence) in self._inflight:
            return BatchState.COMPOSING
        slot = self._slot(owner_key, sequence)
        if slot is None:
            return BatchState.EMPTY
        if slot.batch.is_expired(self.clock()):
            return BatchState.STALE
        return BatchState.READY

    def peek(self, owner_key: OwnerKey, sequence: int = 0) -> Optional[FeedBatch]:
        """Cached batch without touching statistics or LRU order."""
        slot = self._slot(owner_key, sequence)
        return slot.batch if slot is not None else None

    def cursor(self, owner_key: OwnerKey, sequence: int = 0) -> Optional[ConsumptionCursor]:
        slot = self._slot(owner_key, sequence)
        return slot.cursor if slot is not None else None

    async def get_or_compose(self, owner_key: OwnerKey, sequence: int = 0) -> FeedBatch:
        """
        Return the cached batch, composing one if needed.

        A fresh batch is returned as is, however far readers have consumed
        it. A missing or expired batch is composed through the single-flight
        path, which also picks up a prefetch that is still running.

        Args:
            owner_key: (user, scope, language)
            sequence: Batch number within the owner's feed (0 = first)

        Returns:
            FeedBatch for the owner key and sequence
        """
        slot = self._slot(owner_key, sequence)
        if slot is not None and not slot.batch.is_expired(self.clock()):
            self._entries.move_to_end(owner_key)
            self.hits += 1
            if slot.prefetched:
                slot.prefetched = False
                self.prefetch_hits += 1
            return slot.batch

        self.misses += 1
        task = self._inflight.get((owner_key, sequence))
        if task is not None:
            logger.debug(f"Joining in-flight composition for {owner_key} #{sequence}")
        else:
            task = self._start_composition(owner_key, sequence)
        # Shielded: a cancelled reader must not cancel the shared composition
        return await asyncio.shield(task)

    # ========================================================================
    # Composition
    # ========================================================================

    def _start_composition(
        self,
        owner_key: OwnerKey,
        sequence: int,
        prefetched: bool = False
    ) -> asyncio.Task:
        task = asyncio.ensure_future(self._compose_and_store(owner_key, sequence, prefetched))
        self._inflight[(owner_key, sequence)] = task
        return task

    async def _compose_and_store(
        self,
        owner_key: OwnerKey,
        sequence: int,
        prefetched: bool
    ) -> FeedBatch:
        this_task = asyncio.current_task()
        slot_key = (owner_key, sequence)
        try:
            self.compositions += 1
            batch = await self.composer.compose(
                owner_key.user_id, owner_key.scope, owner_key.language,
                exclude_ids=self._previous_ids(owner_key, sequence)
            )
            # Invalidated while composing: hand the batch to waiters, don't cache it
            if self._inflight.get(slot_key) is this_task:
                self._store(owner_key, sequence, batch, prefetched)
            return batch
        finally:
            if self._inflight.get(slot_key) is this_task:
                del self._inflight[slot_key]

    def _previous_ids(self, owner_key: OwnerKey, sequence: int) -> FrozenSet[str]:
        previous = self._slot(owner_key, sequence - 1) if sequence > 0 else None
        return frozenset(previous.batch.content_ids) if previous is not None else frozenset()

    def _store(
        self,
        owner_key: OwnerKey,
        sequence: int,
        batch: FeedBatch,
        prefetched: bool = False
    ) -> None:
        entry = self._entries.get(owner_key)
        if entry is None:
            entry = self._entries[owner_key] = _CacheEntry()

        now = self.clock()
        for stale in [n for n, s in entry.slots.items() if s.batch.is_expired(now)]:
            del entry.slots[stale]

        entry.slots[sequence] = _BatchSlot(
            batch=batch,
            cursor=ConsumptionCursor(owner_key=owner_key, batch_id=batch.batch_id),
            prefetched=prefetched,
        )
        self._entries.move_to_end(owner_key)

        while len(self._entries) > self.config.max_cached_owners:
            self._entries.popitem(last=False)
            self.evictions += 1

    # ========================================================================
    # Prefetch
    # ========================================================================

    def prefetch_threshold(self, batch: FeedBatch) -> int:
        """Consumed count that triggers the prefetch of the next batch."""
        return min(
            self.config.prefetch_at,
            max(1, int(math.ceil(len(batch) * self.config.prefetch_threshold)))
        )

    def maybe_prefetch_next(
        self,
        owner_key: OwnerKey,
        consumed_count: int,
        sequence: int = 0,
        batch_id: Optional[str] = None
    ) -> bool:
        """
        Record consumption and schedule the next batch when due.

        Must be called from the event loop. Never blocks and never raises
        because of the prefetch itself.

        Args:
            owner_key: Owner key of the batch that was read
            consumed_count: Items of this batch consumed so far
            sequence: Batch number that was read
            batch_id: Batch the count refers to; ignored if it was replaced

        Returns:
            True if a prefetch was scheduled by this call
        """
        slot = self._slot(owner_key, sequence)
        if slot is None:
            return False
        if batch_id is not None and slot.batch.batch_id != batch_id:
            return False

        consumed = slot.cursor.advance(consumed_count)
        if slot.prefetch_scheduled or len(slot.batch) == 0:
            return False
        if consumed < self.prefetch_threshold(slot.batch):
            return False

        slot.prefetch_scheduled = True
        following = sequence + 1
        if following >= self.config.max_batches_per_owner:
            return False
        if (owner_key, following) in self._inflight:
            return False
        if self.state(owner_key, following) == BatchState.READY:
            return False

        composition = self._start_composition(owner_key, following, prefetched=True)
        task = asyncio.ensure_future(self._prefetch(owner_key, following, composition))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        self.prefetches += 1

        logger.debug(f"Prefetch of {owner_key} #{following} scheduled at consumed={consumed}")
        return True

    async def _prefetch(self, owner_key: OwnerKey, sequence: int, composition: asyncio.Task) -> None:
        try:
            await asyncio.shield(composition)
        except asyncio.CancelledError:
            composition.cancel()
            raise
        except Exception as e:
            self.prefetch_failures += 1
            logger.warning(f"Prefetch failed for {owner_key} #{sequence}: {e}", exc_info=True)

    # ========================================================================
    # Invalidation
    # ========================================================================

    def invalidate(self, owner_key: OwnerKey) -> bool:
        """
        Drop every batch and cursor of an owner key.

        A composition in flight keeps running for the readers already
        waiting on it but its result is not cached.

        Returns:
            True if anything was removed
        """
        entry = self._entries.pop(owner_key, None)
        inflight = [slot_key for slot_key in self._inflight if slot_key[0] == owner_key]
        for slot_key in inflight:
            del self._inflight[slot_key]

        removed = entry is not None or bool(inflight)
        if removed:
            self.invalidations += 1
            logger.info(f"Invalidated feed batches {owner_key}")
        return removed

    def invalidate_scope(self, user_id: Optional[str], scope: FeedScope) -> int:
        """Invalidate every language variant of (user, scope)."""
        keys = {
            key for key in [*self._entries, *(k for k, _ in self._inflight)]
            if key.user_id == user_id and key.scope == scope
        }
        return sum(1 for key in keys if self.invalidate(key))

    def clear(self) -> None:
        """Drop all batches; running compositions finish uncached."""
        self._entries.clear()
        self._inflight.clear()
        logger.info("Batch cache cleared")

    async def close(self) -> None:
        """Cancel background prefetch tasks (service shutdown)."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    # ========================================================================
    # Statistics
    # ========================================================================

    def size(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total = self.hits + self.misses
        return {
            'size': len(self._entries),
            'max_size': self.config.max_cached_owners,
            'batches': sum(len(entry.slots) for entry in self._entries.values()),
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': self.hits / total if total > 0 else 0,
            'compositions': self.compositions,
            'inflight': len(self._inflight),
            'prefetches': self.prefetches,
            'prefetch_failures': self.prefetch_failures,
            'prefetch_hits': self.prefetch_hits,
            'invalidations': self.invalidations,
            'evictions': self.evictions,
            'ttl_seconds': self.config.batch_ttl_seconds,
        }
