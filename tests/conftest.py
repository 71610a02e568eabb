"""Shared fixtures for the feed service tests."""

import os

# Must be set before feed_service.api is imported
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOG_TO_FILE"] = "false"

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import threading
import time

import pytest

from feed_service.config import FeedConfig
from feed_service.recommender import Candidate, FeedDataStore


NOW = datetime(2026, 1, 10, tzinfo=timezone.utc)


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticSource:
    """
    Candidate source serving a fixed ranked list.

    Records the number of calls and the last exclude set it was given.
    """

    def __init__(
        self,
        name: str,
        ids: List[str],
        languages: Optional[Dict[str, str]] = None,
        raw_scores: Optional[Dict[str, float]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0
    ):
        self.name = name
        self.ids = list(ids)
        self.languages = languages or {}
        self.raw_scores = raw_scores or {}
        self.error = error
        self.delay = delay
        self.calls = 0
        self.last_exclude = None
        self._lock = threading.Lock()

    def fetch(self, user_id, scope, exclude_ids, limit):
        with self._lock:
            self.calls += 1
            self.last_exclude = set(exclude_ids or ())
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error

        exclude = exclude_ids or set()
        picked = [cid for cid in self.ids if cid not in exclude][:limit]
        return [
            Candidate(
                content_id=cid,
                source_strategy=self.name,
                # Descending scores keep the list order after ranking
                raw_score=self.raw_scores.get(cid, float(len(self.ids) - i)),
                language=self.languages.get(cid)
            )
            for i, cid in enumerate(picked)
        ]


def make_sources(supply: Optional[Dict[str, int]] = None) -> Dict[str, StaticSource]:
    """Sources with disjoint id ranges; supply maps strategy -> number of ids."""
    supply = supply or {}
    return {
        name: StaticSource(name, [f"{name}-{i}" for i in range(supply.get(name, 400))])
        for name in ('collaborative', 'popular', 'recent', 'random', 'following')
    }


def content_record(cid: str, created_at: datetime, **kwargs) -> Dict:
    record = {
        'content_id': cid,
        'creator_id': kwargs.pop('creator_id', 'cr1'),
        'title': kwargs.pop('title', f"Video {cid}"),
        'thumbnail_url': f"https://cdn.example.com/{cid}.jpg",
        'language': kwargs.pop('language', 'en'),
        'category': kwargs.pop('category', 'SCIENCE'),
        'created_at': created_at.isoformat(),
    }
    for kind in ('view', 'like', 'comment', 'save', 'share'):
        record[f"{kind}_count"] = kwargs.pop(kind, 0)
    record.update(kwargs)
    return record


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return FeedConfig(random_seed=7, adapter_timeout_seconds=1.0)


@pytest.fixture
def small_store():
    """
    Six contents, four users.

    u1 viewed c5, liked c1 and follows cr2; u2 co-liked c1 with c2 and
    shared c3; u3 saved c1 and liked c4; u4 blocked c3 and creator cr1.
    """
    contents = [
        content_record('c1', NOW - timedelta(days=1), creator_id='cr1', language='ko',
                       category='SCIENCE', view=100, like=10),
        content_record('c2', NOW - timedelta(days=2), creator_id='cr1', language='en',
                       category='SCIENCE', view=10),
        content_record('c3', NOW - timedelta(days=3), creator_id='cr2', language='ko',
                       category='ART', like=50),
        content_record('c4', NOW - timedelta(days=4), creator_id='cr2', language='en',
                       category='ART', share=1),
        content_record('c5', NOW - timedelta(days=5), creator_id='cr3', language='en',
                       category='FUN'),
        content_record('c6', NOW - timedelta(days=6), creator_id='cr3', language='ko',
                       category='FUN', save=2),
    ]

    def at(hours):
        return (NOW - timedelta(hours=hours)).isoformat()

    interactions = [
        {'user_id': 'u1', 'content_id': 'c5', 'interaction_type': 'view', 'created_at': at(1)},
        {'user_id': 'u1', 'content_id': 'c1', 'interaction_type': 'like', 'created_at': at(2)},
        {'user_id': 'u2', 'content_id': 'c1', 'interaction_type': 'like', 'created_at': at(3)},
        {'user_id': 'u2', 'content_id': 'c2', 'interaction_type': 'like', 'created_at': at(4)},
        {'user_id': 'u2', 'content_id': 'c3', 'interaction_type': 'share', 'created_at': at(5)},
        {'user_id': 'u3', 'content_id': 'c1', 'interaction_type': 'save', 'created_at': at(6)},
        {'user_id': 'u3', 'content_id': 'c4', 'interaction_type': 'like', 'created_at': at(7)},
    ]
    users = [
        {'user_id': 'u1', 'preferred_language': 'ko'},
        {'user_id': 'u2', 'preferred_language': 'en'},
    ]
    follows = [{'follower_id': 'u1', 'followee_id': 'cr2'}]
    blocks = [
        {'user_id': 'u4', 'target_id': 'c3'},
        {'user_id': 'u4', 'target_id': 'cr1'},
    ]
    return FeedDataStore(
        contents=contents,
        interactions=interactions,
        users=users,
        follows=follows,
        blocks=blocks
    )


@pytest.fixture
def catalog_store():
    """300 SCIENCE contents (alternating ko/en); u1 prefers ko and liked c-000."""
    contents = [
        content_record(
            f"c-{i:03d}",
            NOW - timedelta(hours=i),
            creator_id=f"cr{i % 10}",
            language='ko' if i % 2 == 0 else 'en',
            view=i % 17,
            like=i % 5
        )
        for i in range(300)
    ]
    interactions = [
        {'user_id': 'u1', 'content_id': 'c-000', 'interaction_type': 'like',
         'created_at': NOW.isoformat()},
        {'user_id': 'u1', 'content_id': 'c-001', 'interaction_type': 'save',
         'created_at': NOW.isoformat()},
    ]
    users = [{'user_id': 'u1', 'preferred_language': 'ko'}]
    return FeedDataStore(contents=contents, interactions=interactions, users=users)
