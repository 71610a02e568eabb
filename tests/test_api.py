"""Tests for the FastAPI endpoints."""

import pytest
from fastapi.testclient import TestClient

from feed_service import api
from feed_service.config import FeedConfig
from feed_service.recommender import FeedDataStore


USER = {"X-User-Id": "u1"}


@pytest.fixture
def client(catalog_store):
    app = api.create_app(config=FeedConfig(random_seed=5), store=catalog_store)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def empty_client():
    app = api.create_app(config=FeedConfig(), store=FeedDataStore())
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:

    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["num_contents"] == 300
        assert body["empty_mode"] is False

    def test_empty_mode(self, empty_client):
        body = empty_client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["empty_mode"] is True

    def test_security_headers(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"] == "req-42"


class TestMainFeed:

    def test_requires_user(self, client):
        assert client.get("/feed").status_code == 401
        assert client.get("/feed", headers={"X-User-Id": "  "}).status_code == 401

    def test_page_shape(self, client):
        response = client.get("/feed", headers=USER)
        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"content", "nextCursor", "hasNext", "count"}
        assert body["count"] == 20
        assert len(body["content"]) == 20
        assert body["hasNext"] is True
        assert body["nextCursor"] == "20"

    def test_cursor_paging(self, client):
        seen = []
        cursor = None
        for _ in range(5):
            params = {"limit": 50}
            if cursor:
                params["cursor"] = cursor
            body = client.get("/feed", params=params, headers=USER).json()
            assert body["count"] == 50
            assert body["hasNext"] is True
            seen.extend(item["content_id"] for item in body["content"])
            cursor = body["nextCursor"]

        assert len(seen) == 250
        assert len(set(seen)) == 250
        assert cursor == "250"

        # A full last page continues into the next batch without repeats
        body = client.get("/feed", params={"limit": 50, "cursor": cursor}, headers=USER).json()
        assert body["count"] > 0
        assert not {item["content_id"] for item in body["content"]} & set(seen)

    def test_shared_category_feed_pages_stay_stable(self, client):
        first = client.get("/feed/categories/science", params={"limit": 100}).json()
        cursor = None
        while True:
            params = {"limit": 100}
            if cursor:
                params["cursor"] = cursor
            body = client.get("/feed/categories/science", params=params).json()
            if not body["hasNext"]:
                break
            cursor = body["nextCursor"]

        second = client.get(
            "/feed/categories/science", params={"limit": 100, "cursor": first["nextCursor"]}
        ).json()
        first_ids = {item["content_id"] for item in first["content"]}
        assert second["count"] == 100
        assert not first_ids & {item["content_id"] for item in second["content"]}

    def test_invalid_cursor_is_lenient(self, client):
        first = client.get("/feed", params={"limit": 5}, headers=USER).json()
        bad = client.get("/feed", params={"limit": 5, "cursor": "xyz"}, headers=USER).json()
        assert bad["content"] == first["content"]

    def test_limit_clamped(self, client):
        body = client.get("/feed", params={"limit": 500}, headers=USER).json()
        assert body["count"] == 100

    def test_language_query(self, client):
        response = client.get("/feed", params={"language": "en"}, headers=USER)
        assert response.status_code == 200


class TestFollowingFeed:

    def test_requires_user(self, client):
        assert client.get("/feed/following").status_code == 401

    def test_empty_when_following_nobody(self, client):
        body = client.get("/feed/following", headers=USER).json()
        assert body == {"content": [], "nextCursor": None, "hasNext": False, "count": 0}


class TestCategoryFeed:

    def test_anonymous_allowed(self, client):
        response = client.get("/feed/categories/science", params={"limit": 10})
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 10
        assert all(item["is_liked"] is False for item in body["content"])

    def test_unknown_category(self, client):
        assert client.get("/feed/categories/unknown").status_code == 404

    def test_empty_platform(self, empty_client):
        body = empty_client.get("/feed/categories/SCIENCE").json()
        assert body == {"content": [], "nextCursor": None, "hasNext": False, "count": 0}


class TestRefresh:

    def test_refresh_main_feed(self, client):
        first = client.get("/feed", params={"limit": 100}, headers=USER).json()
        response = client.post("/feed/refresh", headers=USER)
        assert response.status_code == 204
        assert response.content == b""

        stats = client.get("/cache_stats").json()
        assert stats["cache"]["invalidations"] == 1

        client.get("/feed", params={"limit": 100}, headers=USER)
        stats = client.get("/cache_stats").json()
        assert stats["composer"]["compositions"] == 2
        assert first["count"] == 100

    def test_refresh_requires_user(self, client):
        assert client.post("/feed/refresh").status_code == 401

    def test_refresh_category(self, client):
        client.get("/feed/categories/art", headers=USER)
        response = client.post("/feed/categories/art/refresh", headers=USER)
        assert response.status_code == 204

    def test_refresh_unknown_category(self, client):
        assert client.post("/feed/categories/nope/refresh", headers=USER).status_code == 404


class TestCacheEndpoints:

    def test_cache_stats(self, client):
        client.get("/feed", headers=USER)
        client.get("/feed", headers=USER)
        stats = client.get("/cache_stats").json()
        assert stats["cache"]["size"] == 1
        assert stats["cache"]["hits"] == 1
        assert stats["cache"]["misses"] == 1

    def test_cache_clear(self, client):
        client.get("/feed", headers=USER)
        assert client.post("/cache_clear").json() == {"status": "cleared"}
        assert client.get("/cache_stats").json()["cache"]["size"] == 0


class TestErrorSanitizing:

    def test_production_hides_details(self, client, monkeypatch):
        monkeypatch.setattr(api, "ENV", "production")
        response = client.get("/feed/categories/unknown")
        assert response.status_code == 404
        assert response.json()["detail"] == "Not found"

    def test_development_shows_details(self, client):
        response = client.get("/feed/categories/unknown")
        assert "unknown" in response.json()["detail"].lower()

    def test_hydration_outage_is_503(self, client, catalog_store, monkeypatch):
        def broken(user_id, content_ids):
            raise OSError("metadata store down")

        monkeypatch.setattr(catalog_store, "get_feed_items", broken)
        assert client.get("/feed", headers=USER).status_code == 503
