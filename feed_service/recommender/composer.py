"""
Batch Composer.

Merges the output of the candidate sources into one ordered,
de-duplicated batch:

1. Split the target size into per-strategy quotas (40/30/10/20 by default)
2. Fetch every ranked strategy concurrently, each with quota * buffer_factor
3. Rank each strategy's candidates by final score (raw * language weight)
4. Merge in strategy priority order, first-seen wins, at most quota each
5. Sample the random strategy excluding everything already chosen
6. Redistribute any shortfall over strategies with leftovers, then refill
   from the random strategy with an expanding exclude set

The resulting order is the serving order; pages are plain slices of it.

Example:
    >>> composer = BatchComposer(build_sources(store, config), config)
    >>> batch = await composer.compose('u1', FeedScope.main(), 'ko')
    >>> len(batch), batch.strategy_counts
    (250, {'collaborative': 100, 'popular': 75, 'recent': 25, 'random': 50})
"""

from typing import Callable, Deque, Dict, Iterable, List, Optional, Set
from collections import deque
from concurrent.futures import Executor
import asyncio
import logging
import math
import time

from ..config import FeedConfig, STRATEGY_ORDER
from .models import Candidate, FeedBatch, FeedScope, OwnerKey, ScoredCandidate
from .scoring import score
from .sources import CandidateSource

logger = logging.getLogger(__name__)


RANDOM_STRATEGY = 'random'
FOLLOWING_STRATEGY = 'following'


def compute_quotas(target_size: int, ratios: Dict[str, float]) -> Dict[str, int]:
    """
    Split target_size over strategies proportionally to their ratios.

    Quotas are rounded; the rounding remainder is added to the first
    strategy so the quotas always sum to target_size.

    Args:
        target_size: Total number of items
        ratios: Strategy name -> weight, in priority order

    Returns:
        Strategy name -> quota (same order as ratios)

    Example:
        >>> compute_quotas(250, {'collaborative': .4, 'popular': .3, 'recent': .1, 'random': .2})
        {'collaborative': 100, 'popular': 75, 'recent': 25, 'random': 50}
    """
    total = sum(ratios.values())
    if target_size <= 0 or total <= 0:
        return {name: 0 for name in ratios}

    quotas = {name: int(round(target_size * r / total)) for name, r in ratios.items()}
    remainder = target_size - sum(quotas.values())
    if remainder:
        first = next(name for name, r in ratios.items() if r > 0)
        quotas[first] = max(0, quotas[first] + remainder)
    return quotas


class BatchComposer:
    """
    Composes FeedBatches from candidate sources.

    Sources are blocking callables (pandas lookups), so each fetch runs on
    an executor thread with a per-source timeout. A failing or slow source
    only loses its own share of the batch.
    """

    def __init__(
        self,
        sources: Dict[str, CandidateSource],
        config: Optional[FeedConfig] = None,
        clock: Callable[[], float] = time.time,
        executor: Optional[Executor] = None
    ):
        """
        Initialize composer.

        Args:
            sources: Strategy name -> candidate source
            config: Feed configuration
            clock: Wall-clock function stamped on composed batches
            executor: Executor for source fetches (None = loop default)
        """
        self.sources = sources
        self.config = config or FeedConfig()
        self.clock = clock
        self.executor = executor

        self.compositions = 0
        self.source_failures = 0

    def strategy_mix(self, scope: FeedScope) -> Dict[str, float]:
        """Strategy ratios for a scope, in merge priority order."""
        if scope.kind == FeedScope.FOLLOWING:
            return {FOLLOWING_STRATEGY: 1.0}
        ratios = self.config.strategy_ratios
        return {name: float(ratios.get(name, 0.0)) for name in STRATEGY_ORDER}

    async def compose(
        self,
        user_id: Optional[str],
        scope: FeedScope,
        language: Optional[str],
        target_size: Optional[int] = None,
        exclude_ids: Optional[Iterable[str]] = None
    ) -> FeedBatch:
        """
        Compose a new batch.

        Args:
            user_id: User ID (None for anonymous category feeds)
            scope: Feed scope
            language: Preferred language used for weighting (None disables)
            target_size: Batch size (defaults to config.batch_size)
            exclude_ids: Content IDs that must not appear (e.g. the previous
                batch of the same owner)

        Returns:
            FeedBatch with at most target_size unique content ids
        """
        start = time.perf_counter()
        cfg = self.config
        target = cfg.batch_size if target_size is None else target_size
        owner_key = OwnerKey(user_id, scope, language)
        preferred = language if scope.language_weighted else None

        mix = self.strategy_mix(scope)
        quotas = compute_quotas(target, mix)

        excluded = set(exclude_ids or ())
        chosen: List[str] = []
        seen: Set[str] = set(excluded)
        counts: Dict[str, int] = {name: 0 for name in mix}
        leftovers: Dict[str, Deque[ScoredCandidate]] = {}

        # First pass: ranked strategies fan out together
        ranked_names = [name for name in mix if name != RANDOM_STRATEGY]
        fetched = await asyncio.gather(*[
            self._fetch(name, user_id, scope, set(excluded), self._buffered(quotas[name]))
            for name in ranked_names
        ])
        for name, candidates in zip(ranked_names, fetched):
            queue = deque(self._rank(candidates, preferred))
            counts[name] += self._take(queue, quotas[name], chosen, seen)
            leftovers[name] = queue

        # Random samples from whatever the ranked strategies left
        if RANDOM_STRATEGY in mix:
            candidates = await self._fetch(
                RANDOM_STRATEGY, user_id, scope, set(seen),
                self._buffered(quotas[RANDOM_STRATEGY])
            )
            queue = deque(self._rank(candidates, preferred))
            counts[RANDOM_STRATEGY] += self._take(queue, quotas[RANDOM_STRATEGY], chosen, seen)
            leftovers[RANDOM_STRATEGY] = queue

        # Shortfall: spread over strategies that still hold candidates
        self._redistribute(target, mix, leftovers, counts, chosen, seen)

        if len(chosen) < target and RANDOM_STRATEGY in mix:
            counts[RANDOM_STRATEGY] += await self._refill_random(
                target, user_id, scope, preferred, chosen, seen
            )

        ttl = cfg.batch_ttl_seconds if chosen else cfg.empty_batch_ttl_seconds
        batch = FeedBatch(
            owner_key=owner_key,
            content_ids=tuple(chosen),
            created_at=self.clock(),
            ttl_seconds=ttl,
            strategy_counts={name: n for name, n in counts.items() if n},
        )
        self.compositions += 1

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Composed batch for {owner_key}: size={len(batch)}/{target}, "
            f"strategies={batch.strategy_counts}, latency={elapsed_ms:.1f}ms"
        )
        return batch

    # ========================================================================
    # Helpers
    # ========================================================================

    def _buffered(self, quota: int) -> int:
        return int(math.ceil(round(quota * self.config.buffer_factor, 6))) if quota > 0 else 0

    async def _fetch(
        self,
        name: str,
        user_id: Optional[str],
        scope: FeedScope,
        exclude_ids: Set[str],
        limit: int
    ) -> List[Candidate]:
        """Run one source off the event loop; failures yield an empty list."""
        source = self.sources.get(name)
        if source is None or limit <= 0:
            return []

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor, source.fetch, user_id, scope, exclude_ids, limit
                ),
                timeout=self.config.adapter_timeout_seconds
            )
        except asyncio.TimeoutError:
            self.source_failures += 1
            logger.warning(
                f"Source '{name}' timed out after {self.config.adapter_timeout_seconds}s "
                f"(user={user_id}, scope={scope})"
            )
        except Exception as e:
            self.source_failures += 1
            logger.warning(
                f"Source '{name}' failed (user={user_id}, scope={scope}): {e}",
                exc_info=True
            )
        return []

    def _rank(
        self,
        candidates: List[Candidate],
        preferred_language: Optional[str]
    ) -> List[ScoredCandidate]:
        """Apply language weighting and sort best first (stable on ties)."""
        cfg = self.config
        scored = [
            ScoredCandidate(
                candidate=c,
                final_score=score(
                    c.raw_score,
                    preferred_language,
                    c.language,
                    match_weight=cfg.language_weight_match,
                    mismatch_weight=cfg.language_weight_mismatch
                )
            )
            for c in candidates
        ]
        return sorted(scored, key=lambda s: s.final_score, reverse=True)

    @staticmethod
    def _take(
        queue: Deque[ScoredCandidate],
        n: int,
        chosen: List[str],
        seen: Set[str]
    ) -> int:
        """Move up to n unseen ids from the front of queue into chosen."""
        taken = 0
        while queue and taken < n:
            cid = queue.popleft().content_id
            if cid in seen:
                continue
            seen.add(cid)
            chosen.append(cid)
            taken += 1
        return taken

    def _redistribute(
        self,
        target: int,
        mix: Dict[str, float],
        leftovers: Dict[str, Deque[ScoredCandidate]],
        counts: Dict[str, int],
        chosen: List[str],
        seen: Set[str]
    ) -> None:
        active = [name for name in mix if leftovers.get(name)]
        while len(chosen) < target and active:
            weights = {name: mix[name] for name in active}
            if sum(weights.values()) <= 0:
                weights = {name: 1.0 for name in active}
            shares = compute_quotas(target - len(chosen), weights)

            for name in active:
                counts[name] += self._take(leftovers[name], shares[name], chosen, seen)

            # A strategy that could not fill its share is drained
            active = [name for name in active if leftovers[name]]

    async def _refill_random(
        self,
        target: int,
        user_id: Optional[str],
        scope: FeedScope,
        preferred_language: Optional[str],
        chosen: List[str],
        seen: Set[str]
    ) -> int:
        added = 0
        for _ in range(self.config.random_refill_rounds):
            missing = target - len(chosen)
            if missing <= 0:
                break
            candidates = await self._fetch(
                RANDOM_STRATEGY, user_id, scope, set(seen), self._buffered(missing)
            )
            taken = self._take(deque(self._rank(candidates, preferred_language)), missing, chosen, seen)
            if taken == 0:
                break
            added += taken
        return added
