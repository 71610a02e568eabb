"""
Data classes shared by the feed recommender components.

- FeedScope / OwnerKey: identify a cached batch (user + scope + language)
- Candidate / ScoredCandidate: ephemeral output of candidate sources
- FeedBatch: composed, immutable ordered list of content ids
- ConsumptionCursor: how far a client has paged through a batch
- PageResponse: one page of a feed
"""

from typing import Any, Dict, List, NamedTuple, Optional, Tuple
from dataclasses import dataclass, field
import uuid


ANONYMOUS_USER = 'anonymous'


# ============================================================================
# Scope & Owner Key
# ============================================================================

@dataclass(frozen=True)
class FeedScope:
    """Feed context: main, following, or a specific category."""
    kind: str
    category: Optional[str] = None

    MAIN = 'main'
    FOLLOWING = 'following'
    CATEGORY = 'category'

    @classmethod
    def main(cls) -> 'FeedScope':
        return cls(cls.MAIN)

    @classmethod
    def following(cls) -> 'FeedScope':
        return cls(cls.FOLLOWING)

    @classmethod
    def for_category(cls, category: str) -> 'FeedScope':
        return cls(cls.CATEGORY, category.upper())

    @property
    def requires_user(self) -> bool:
        return self.kind in (self.MAIN, self.FOLLOWING)

    @property
    def language_weighted(self) -> bool:
        return self.kind != self.FOLLOWING

    @property
    def key(self) -> str:
        if self.kind == self.CATEGORY:
            return f"{self.CATEGORY}:{self.category}"
        return self.kind

    def __str__(self) -> str:
        return self.key


class OwnerKey(NamedTuple):
    """Cache key of a batch: (user, scope, language)."""
    user_id: Optional[str]
    scope: FeedScope
    language: Optional[str]

    def __str__(self) -> str:
        return f"feed:{self.scope.key}:{self.user_id or ANONYMOUS_USER}:lang:{self.language or '-'}"


# ============================================================================
# Candidates
# ============================================================================

@dataclass(frozen=True)
class Candidate:
    """Content id proposed by one candidate source."""
    content_id: str
    source_strategy: str
    raw_score: float = 0.0
    language: Optional[str] = None


@dataclass(frozen=True)
class ScoredCandidate:
    """Candidate with the language-weighted final score."""
    candidate: Candidate
    final_score: float

    @property
    def content_id(self) -> str:
        return self.candidate.content_id

    @property
    def source_strategy(self) -> str:
        return self.candidate.source_strategy


# ============================================================================
# Batches & Paging
# ============================================================================

@dataclass(frozen=True)
class FeedBatch:
    """Composed feed batch; served in order, never re-sorted at read time."""
    owner_key: OwnerKey
    content_ids: Tuple[str, ...]
    created_at: float
    ttl_seconds: float
    strategy_counts: Dict[str, int] = field(default_factory=dict)
    batch_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __len__(self) -> int:
        return len(self.content_ids)

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class ConsumptionCursor:
    """Number of batch items a client has paged through."""
    owner_key: OwnerKey
    batch_id: str
    consumed_count: int = 0

    def advance(self, consumed_count: int) -> int:
        self.consumed_count = max(self.consumed_count, consumed_count)
        return self.consumed_count


@dataclass
class PageResponse:
    """One page of a feed."""
    items: List[Dict[str, Any]]
    next_cursor: Optional[str]
    has_next: bool

    @property
    def count(self) -> int:
        return len(self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'content': self.items,
            'nextCursor': self.next_cursor,
            'hasNext': self.has_next,
            'count': self.count,
        }
