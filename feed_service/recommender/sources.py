"""
Candidate Sources for Feed Composition.

Each source is an independent retrieval strategy returning ranked
candidates for a user and scope:

1. Collaborative: item-based co-interaction ("people who liked this also liked")
2. Popular: weighted interaction counts with age decay
3. Recent: newest content first
4. Random: uniform sample for diversity
5. Following: newest content from followed creators (following scope only)

Every source drops content the user viewed recently and content blocked by
the user (directly or through a blocked creator).

Example:
    >>> from feed_service.recommender.sources import build_sources
    >>> sources = build_sources(store, config)
    >>> sources['popular'].fetch('u1', FeedScope.main(), set(), limit=30)
"""

from typing import Callable, Dict, List, Optional, Set
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
import logging
import threading

import numpy as np
import pandas as pd

from ..config import FeedConfig
from .models import Candidate, FeedScope
from .scoring import POPULARITY_WEIGHTS, interaction_weight, popularity_score, time_decay
from .store import ContentIndex, InteractionHistory, UserDirectory

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _age_decay(created_at: pd.Series, now: datetime, rate: float) -> np.ndarray:
    """time_decay over a created_at column; missing timestamps decay to 1.0."""
    return np.array([
        time_decay(None if pd.isna(ts) else ts.to_pydatetime(), now, rate)
        for ts in created_at
    ], dtype=float)


# ============================================================================
# Base Class
# ============================================================================

class CandidateSource(ABC):
    """
    Base class for candidate sources.

    Subclasses implement _fetch() over a frame that is already restricted to
    the scope and stripped of excluded, recently viewed and blocked content.
    """

    name: str = 'base'

    def __init__(
        self,
        users: UserDirectory,
        history: InteractionHistory,
        contents: ContentIndex,
        config: Optional[FeedConfig] = None,
        now_fn: Callable[[], datetime] = _utcnow
    ):
        self.users = users
        self.history = history
        self.contents = contents
        self.config = config or FeedConfig()
        self.now_fn = now_fn

    def fetch(
        self,
        user_id: Optional[str],
        scope: FeedScope,
        exclude_ids: Optional[Set[str]],
        limit: int
    ) -> List[Candidate]:
        """
        Retrieve up to `limit` ranked candidates.

        Args:
            user_id: User ID (None for anonymous readers)
            scope: Feed scope (category scopes restrict the content set)
            exclude_ids: Content IDs to skip
            limit: Maximum number of candidates

        Returns:
            Candidates ordered best first
        """
        if limit <= 0:
            return []

        frame = self._scope_frame(user_id, scope, exclude_ids or set())
        if frame.empty:
            return []

        candidates = self._fetch(user_id, scope, frame, limit)
        logger.debug(
            f"{self.name}: {len(candidates)} candidates for user={user_id}, scope={scope}"
        )
        return candidates[:limit]

    @abstractmethod
    def _fetch(
        self,
        user_id: Optional[str],
        scope: FeedScope,
        frame: pd.DataFrame,
        limit: int
    ) -> List[Candidate]:
        ...

    def _scope_frame(
        self,
        user_id: Optional[str],
        scope: FeedScope,
        exclude_ids: Set[str]
    ) -> pd.DataFrame:
        frame = self.contents.get_candidates(scope.category)
        if frame.empty:
            return frame

        excluded = set(exclude_ids)
        blocked: Set[str] = set()
        if user_id is not None:
            excluded |= self.history.get_recently_viewed(user_id, self.config.recently_viewed_window)
            blocked = self.users.get_blocked_ids(user_id)

        mask = ~frame['content_id'].isin(excluded | blocked)
        if blocked:
            mask &= ~frame['creator_id'].astype(str).isin(blocked)
        return frame[mask]

    def _to_candidates(self, frame: pd.DataFrame, scores: pd.Series) -> List[Candidate]:
        return [
            Candidate(
                content_id=cid,
                source_strategy=self.name,
                raw_score=float(s),
                language=lang if isinstance(lang, str) else None
            )
            for cid, s, lang in zip(frame['content_id'], scores, frame['language'])
        ]


# ============================================================================
# Strategies
# ============================================================================

class CollaborativeSource(CandidateSource):
    """
    Item-based collaborative filtering.

    Seeds are the user's own interactions; users who interacted with a seed
    vote for the other content they interacted with (LIKE 1.0, SAVE 1.5,
    SHARE 2.0). Votes are decayed by content age. Users without history
    (and anonymous readers) get an empty list.
    """

    name = 'collaborative'

    def _fetch(self, user_id, scope, frame, limit):
        if user_id is None:
            return []

        cfg = self.config
        seeds = self.history.get_user_interactions(user_id, cfg.cf_max_seed_items)
        if not seeds:
            logger.debug(f"No interactions found for user {user_id}")
            return []

        seed_ids = {cid for cid, _ in seeds}

        similar_users: List[str] = []
        seen_users: Set[str] = {str(user_id)}
        for cid in seed_ids:
            for other in self.history.get_users_by_content(cid, cfg.cf_max_similar_users_per_item):
                if other not in seen_users:
                    seen_users.add(other)
                    similar_users.append(other)

        if not similar_users:
            logger.debug(f"No similar users found for user {user_id}")
            return []

        votes: Dict[str, float] = defaultdict(float)
        for other in similar_users:
            for cid, kind in self.history.get_user_interactions(other, cfg.cf_max_items_per_similar_user):
                if cid not in seed_ids:
                    votes[cid] += interaction_weight(kind)

        votes = {cid: v for cid, v in votes.items() if v > 0}
        if not votes:
            return []

        scored = frame[frame['content_id'].isin(list(votes))]
        if scored.empty:
            return []

        decay = _age_decay(scored['created_at'], self.now_fn(), cfg.collaborative_decay_rate)
        scores = scored['content_id'].map(votes).to_numpy(dtype=float) * decay
        scored = scored.assign(_score=scores).sort_values('_score', ascending=False, kind='mergesort')
        scored = scored.head(limit)
        return self._to_candidates(scored, scored['_score'])


class PopularSource(CandidateSource):
    """Top content by view*1 + like*5 + comment*3 + save*7 + share*10, age-decayed."""

    name = 'popular'

    def _fetch(self, user_id, scope, frame, limit):
        counts = frame[list(POPULARITY_WEIGHTS)].to_dict('records')
        base = np.array([popularity_score(c) for c in counts], dtype=float)
        decay = _age_decay(frame['created_at'], self.now_fn(), self.config.popular_decay_rate)
        ranked = frame.assign(_score=base * decay).sort_values(
            ['_score', 'created_at'], ascending=[False, False], kind='mergesort'
        ).head(limit)
        return self._to_candidates(ranked, ranked['_score'])


class RecentSource(CandidateSource):
    """Newest content first; raw score is the age decay (1.0 for brand new)."""

    name = 'recent'

    def _fetch(self, user_id, scope, frame, limit):
        ranked = frame.sort_values(
            'created_at', ascending=False, kind='mergesort', na_position='last'
        ).head(limit)
        decay = _age_decay(ranked['created_at'], self.now_fn(), self.config.recent_decay_rate)
        return self._to_candidates(ranked, pd.Series(decay, index=ranked.index))


class RandomSource(CandidateSource):
    """
    Uniform random sample within scope.

    Callers pass the ids already chosen in the current composition pass as
    exclude_ids so the sample is drawn from the remaining content only.
    """

    name = 'random'

    def __init__(self, *args, seed: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._rng = np.random.default_rng(seed if seed is not None else self.config.random_seed)
        # numpy Generators are not thread-safe
        self._rng_lock = threading.Lock()

    def _fetch(self, user_id, scope, frame, limit):
        size = min(limit, len(frame))
        with self._rng_lock:
            picks = self._rng.choice(len(frame), size=size, replace=False)
            scores = self._rng.random(size)
        sampled = frame.iloc[picks]
        return self._to_candidates(sampled, pd.Series(scores, index=sampled.index))


class FollowingSource(CandidateSource):
    """Newest content from creators the user follows."""

    name = 'following'

    def _fetch(self, user_id, scope, frame, limit):
        if user_id is None:
            return []
        followees = {
            f for f in self.users.get_followees(user_id)
            if not self.users.is_blocked(user_id, f)
        }
        if not followees:
            return []

        ranked = frame[frame['creator_id'].astype(str).isin(followees)].sort_values(
            'created_at', ascending=False, kind='mergesort', na_position='last'
        ).head(limit)
        decay = _age_decay(ranked['created_at'], self.now_fn(), self.config.recent_decay_rate)
        return self._to_candidates(ranked, pd.Series(decay, index=ranked.index))


# ============================================================================
# Factory
# ============================================================================

SOURCE_CLASSES = {
    cls.name: cls
    for cls in (CollaborativeSource, PopularSource, RecentSource, RandomSource, FollowingSource)
}


def build_sources(
    store,
    config: Optional[FeedConfig] = None,
    now_fn: Callable[[], datetime] = _utcnow
) -> Dict[str, CandidateSource]:
    """
    Build all candidate sources over a single store implementing
    UserDirectory, InteractionHistory and ContentIndex.
    """
    config = config or FeedConfig()
    return {
        name: cls(store, store, store, config=config, now_fn=now_fn)
        for name, cls in SOURCE_CLASSES.items()
    }
