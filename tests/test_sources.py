"""Tests for candidate sources over FeedDataStore."""

from datetime import timedelta

import pytest

from conftest import NOW
from feed_service.config import FeedConfig
from feed_service.recommender import FeedScope, popularity_score, time_decay
from feed_service.recommender.sources import (
    CollaborativeSource,
    FollowingSource,
    PopularSource,
    RandomSource,
    RecentSource,
    build_sources,
)


@pytest.fixture
def sources(small_store):
    return build_sources(small_store, FeedConfig(random_seed=3), now_fn=lambda: NOW)


def ids(candidates):
    return [c.content_id for c in candidates]


class TestPopularSource:

    def test_ranked_by_decayed_popularity(self, sources):
        result = sources['popular'].fetch(None, FeedScope.main(), set(), limit=10)
        # c3: 250*e^-0.15, c1: 150*e^-0.05, c6: 14*e^-0.3, c2: 10*e^-0.1, c4: 10*e^-0.2
        assert ids(result) == ['c3', 'c1', 'c6', 'c2', 'c4', 'c5']
        assert all(c.source_strategy == 'popular' for c in result)

    def test_raw_score_is_popularity_times_decay(self, sources):
        result = sources['popular'].fetch(None, FeedScope.main(), set(), limit=1)
        expected = popularity_score({'like': 50}) * time_decay(NOW - timedelta(days=3), NOW, rate=0.05)
        assert result[0].content_id == 'c3'
        assert result[0].raw_score == pytest.approx(expected)

    def test_limit(self, sources):
        assert ids(sources['popular'].fetch(None, FeedScope.main(), set(), limit=2)) == ['c3', 'c1']
        assert sources['popular'].fetch(None, FeedScope.main(), set(), limit=0) == []

    def test_category_scope(self, sources):
        result = sources['popular'].fetch(None, FeedScope.for_category('art'), set(), limit=10)
        assert ids(result) == ['c3', 'c4']

    def test_exclude_ids(self, sources):
        result = sources['popular'].fetch(None, FeedScope.main(), {'c3', 'c1'}, limit=10)
        assert 'c3' not in ids(result)
        assert 'c1' not in ids(result)

    def test_recently_viewed_excluded(self, sources):
        # u1 viewed c5
        assert 'c5' not in ids(sources['popular'].fetch('u1', FeedScope.main(), set(), limit=10))

    def test_blocked_content_and_creators_excluded(self, sources):
        # u4 blocked c3 and every content of cr1 (c1, c2)
        result = sources['popular'].fetch('u4', FeedScope.main(), set(), limit=10)
        assert ids(result) == ['c6', 'c4', 'c5']

    def test_candidates_carry_language(self, sources):
        result = sources['popular'].fetch(None, FeedScope.main(), set(), limit=1)
        assert result[0].language == 'ko'


class TestRecentSource:

    def test_newest_first(self, sources):
        result = sources['recent'].fetch(None, FeedScope.main(), set(), limit=10)
        assert ids(result) == ['c1', 'c2', 'c3', 'c4', 'c5', 'c6']
        assert result[0].raw_score > result[-1].raw_score

    def test_category_scope(self, sources):
        result = sources['recent'].fetch(None, FeedScope.for_category('FUN'), set(), limit=10)
        assert ids(result) == ['c5', 'c6']


class TestCollaborativeSource:

    def test_item_based_votes(self, sources):
        # u1 liked c1; u2 (like c2, share c3) and u3 (like c4) also engaged with c1
        result = sources['collaborative'].fetch('u1', FeedScope.main(), set(), limit=10)
        assert ids(result) == ['c3', 'c2', 'c4']
        assert 'c1' not in ids(result)

    def test_anonymous_user_gets_nothing(self, sources):
        assert sources['collaborative'].fetch(None, FeedScope.main(), set(), limit=10) == []

    def test_user_without_history_gets_nothing(self, sources):
        assert sources['collaborative'].fetch('nobody', FeedScope.main(), set(), limit=10) == []

    def test_respects_scope(self, sources):
        result = sources['collaborative'].fetch('u1', FeedScope.for_category('ART'), set(), limit=10)
        assert ids(result) == ['c3', 'c4']


class TestRandomSource:

    def test_sample_excludes_chosen_ids(self, sources):
        result = sources['random'].fetch(None, FeedScope.main(), {'c1', 'c2'}, limit=10)
        assert sorted(ids(result)) == ['c3', 'c4', 'c5', 'c6']

    def test_no_duplicates_and_limit(self, sources):
        result = sources['random'].fetch(None, FeedScope.main(), set(), limit=3)
        assert len(result) == 3
        assert len(set(ids(result))) == 3

    def test_seeded_samples_are_reproducible(self, small_store):
        a = RandomSource(small_store, small_store, small_store, seed=11)
        b = RandomSource(small_store, small_store, small_store, seed=11)
        assert ids(a.fetch(None, FeedScope.main(), set(), 4)) == ids(b.fetch(None, FeedScope.main(), set(), 4))


class TestFollowingSource:

    def test_followed_creators_only(self, sources):
        # u1 follows cr2 (c3, c4)
        result = sources['following'].fetch('u1', FeedScope.following(), set(), limit=10)
        assert ids(result) == ['c3', 'c4']

    def test_no_followees(self, sources):
        assert sources['following'].fetch('u2', FeedScope.following(), set(), limit=10) == []

    def test_blocked_followee_skipped(self, small_store, monkeypatch):
        checked = []
        original = small_store.is_blocked

        def is_blocked(user_id, target_id):
            checked.append((user_id, target_id))
            return target_id == 'cr2' or original(user_id, target_id)

        monkeypatch.setattr(small_store, 'is_blocked', is_blocked)
        source = FollowingSource(small_store, small_store, small_store, now_fn=lambda: NOW)

        assert source.fetch('u1', FeedScope.following(), set(), limit=10) == []
        assert checked == [('u1', 'cr2')]


def test_build_sources(small_store):
    sources = build_sources(small_store)
    assert set(sources) == {'collaborative', 'popular', 'recent', 'random', 'following'}
    assert isinstance(sources['collaborative'], CollaborativeSource)
    assert isinstance(sources['popular'], PopularSource)
    assert isinstance(sources['recent'], RecentSource)
    assert isinstance(sources['following'], FollowingSource)


def test_empty_store_yields_no_candidates():
    from feed_service.recommender import FeedDataStore

    sources = build_sources(FeedDataStore())
    for name, source in sources.items():
        assert source.fetch('u1', FeedScope.main(), set(), limit=10) == [], name
