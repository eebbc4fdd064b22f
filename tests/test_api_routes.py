"""
tests/test_api_routes.py - FastAPI Route Integration Tests
===========================================================
Public, inbound and admin routes against a runtime on in-memory SQLite.

The lifespan hook is not entered; the test runtime is handed straight to
``create_app`` and its workers are never started.
"""

from __future__ import annotations

from unittest.mock import patch

import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import add_definition, make_user
from jerkyrank.api.deps import JWT_ALGORITHM, JWT_SECRET
from jerkyrank.api.main import create_app
from jerkyrank.errors import ConflictError, EngagementError, TransientStoreError


@pytest.fixture
def client(runtime):
    """A TestClient bound to the shared test runtime."""
    return TestClient(create_app(runtime), raise_server_exceptions=False)


@pytest.fixture
def non_admin_token():
    return jwt.encode(
        {"sub": "67890", "username": "RegularUser", "is_admin": False},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_reports_components(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert {"store", "cache", "queue", "ingestor"} <= set(body)

    def test_engine_not_started(self):
        resp = TestClient(create_app(None), raise_server_exceptions=False).get("/api/health")
        assert resp.status_code == 503


# ===========================================================================
# Leaderboard
# ===========================================================================
class TestLeaderboardRoutes:
    @pytest.fixture
    def ranked(self, runtime, db_engine):
        make_user(db_engine, 1, first_name="Ann", last_name="Lee")
        make_user(db_engine, 2, handle="bob")
        runtime.record_ranking(1, "beef-original", rank=1)
        runtime.record_ranking(1, "beef-teriyaki", rank=2)
        runtime.record_ranking(2, "beef-original", rank=1)

    def test_top_entries(self, client, ranked):
        resp = client.get("/api/leaderboard/all_time")
        assert resp.status_code == 200
        body = resp.json()
        assert body["period"] == "all_time"
        assert [(e["rank"], e["display_name"]) for e in body["entries"]] == [
            (1, "Ann L."), (2, "@bob"),
        ]

    def test_limit(self, client, ranked):
        resp = client.get("/api/leaderboard/week", params={"limit": 1})
        assert [e["user_id"] for e in resp.json()["entries"]] == [1]

    def test_limit_capped(self, client):
        assert client.get("/api/leaderboard/week", params={"limit": 501}).status_code == 422

    def test_unknown_period(self, client):
        resp = client.get("/api/leaderboard/yearly")
        assert resp.status_code == 422
        assert "yearly" in resp.json()["detail"]

    def test_position(self, client, ranked):
        resp = client.get("/api/leaderboard/all_time/position/2")
        assert resp.status_code == 200
        body = resp.json()
        assert (body["rank"], body["total_users"], body["percentile"]) == (2, 2, 50.0)

    def test_unranked_position(self, client, db_engine):
        make_user(db_engine, 3)
        body = client.get("/api/leaderboard/month/position/3").json()
        assert body["rank"] is None
        assert body["score"] == 0


# ===========================================================================
# Per-user reads
# ===========================================================================
class TestUserRoutes:
    def test_closest_achievement(self, client, runtime, db_engine):
        add_definition(db_engine, "rank_5", {"type": "rank_count", "value": 5})
        make_user(db_engine, 1)
        runtime.record_ranking(1, "beef-original", rank=1)

        resp = client.get("/api/users/1/closest-achievement")
        assert resp.status_code == 200
        closest = resp.json()["achievement"]
        assert closest["code"] == "rank_5"
        assert closest["action_text"] == "Rank 4 more products"

    def test_closest_none(self, client, db_engine):
        make_user(db_engine, 1)
        resp = client.get("/api/users/1/closest-achievement", params={"category": "social"})
        assert resp.json() == {"achievement": None}

    def test_closest_unknown_user(self, client):
        assert client.get("/api/users/404/closest-achievement").status_code == 404

    def test_achievement_list(self, client, db_engine):
        add_definition(db_engine, "rank_5", {"type": "rank_count", "value": 5})
        add_definition(db_engine, "searcher", {"type": "search_count", "value": 3})
        make_user(db_engine, 1)

        body = client.get("/api/users/1/achievements").json()
        assert (body["earned"], body["total"]) == (0, 2)
        assert {a["code"] for a in body["achievements"]} == {"rank_5", "searcher"}

    def test_scores(self, client, runtime, db_engine):
        make_user(db_engine, 1)
        runtime.record_ranking(1, "beef-original", rank=1)
        body = client.get("/api/users/1/scores").json()
        assert body["user_id"] == 1
        assert body["counters"]["all_time"]["rankings"] == 1

    def test_scores_missing(self, client):
        assert client.get("/api/users/404/scores").status_code == 404

    def test_activity_summary(self, client, runtime, db_engine):
        make_user(db_engine, 1)
        runtime.ingest_activity(1, "search", {"query": "spicy"}, immediate=True)
        body = client.get("/api/users/1/activity-summary", params={"days": 30}).json()
        assert body["days"] == 30
        assert body["counts"]["search"] == 1

    def test_activity_summary_window_bounds(self, client):
        assert client.get("/api/users/1/activity-summary", params={"days": 0}).status_code == 422


# ===========================================================================
# Profile updates
# ===========================================================================
class TestProfileRoute:
    def test_changed_fields(self, client, db_engine):
        make_user(db_engine, 1, first_name="Ann")
        resp = client.patch("/api/users/1/profile", json={"first_name": "Ann", "last_name": "Lee"})
        assert resp.status_code == 200
        assert resp.json() == {"user_id": 1, "changed": ["last_name"]}

    def test_empty_body(self, client, db_engine):
        make_user(db_engine, 1)
        assert client.patch("/api/users/1/profile", json={}).status_code == 400

    def test_unknown_user(self, client):
        assert client.patch("/api/users/404/profile", json={"handle": "x"}).status_code == 404


# ===========================================================================
# Inbound events
# ===========================================================================
class TestInboundRoutes:
    def test_activity_buffered(self, client, runtime, db_engine):
        make_user(db_engine, 1)
        resp = client.post("/api/activity", json={"user_id": 1, "event_type": "search"})
        assert resp.status_code == 202
        assert resp.json() == {"accepted": True, "written": 0}
        assert runtime.ingestor.pending == 1

    def test_activity_immediate(self, client, db_engine):
        make_user(db_engine, 1)
        resp = client.post(
            "/api/activity",
            json={"user_id": 1, "event_type": "product_view", "immediate": True},
        )
        assert resp.json()["written"] == 1

    def test_activity_unknown_type(self, client):
        resp = client.post("/api/activity", json={"user_id": 1, "event_type": "like"})
        assert resp.status_code == 422

    def test_activity_unknown_user(self, client):
        resp = client.post("/api/activity", json={"user_id": 404, "event_type": "search"})
        assert resp.status_code == 404

    def test_ranking_created(self, client, db_engine):
        make_user(db_engine, 1)
        resp = client.post(
            "/api/rankings", json={"user_id": 1, "product_id": "beef-original", "rank": 1},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["created"] is True
        assert body["streak"] == 1

    def test_ranking_bad_rank(self, client, db_engine):
        make_user(db_engine, 1)
        resp = client.post(
            "/api/rankings", json={"user_id": 1, "product_id": "beef-original", "rank": 0},
        )
        assert resp.status_code == 422

    def test_login(self, client, db_engine):
        make_user(db_engine, 1)
        resp = client.post("/api/logins/1")
        assert resp.json() == {"user_id": 1, "streak": 1}

    def test_login_unknown_user(self, client):
        assert client.post("/api/logins/404").status_code == 404

    def test_order_webhook_replay(self, client, db_engine):
        make_user(db_engine, 1)
        order = {
            "user_id": 1,
            "order_id": "5001",
            "items": [{"productId": "beef-original", "quantity": 2}],
        }
        first = client.post("/api/webhooks/orders", json=order)
        replay = client.post("/api/webhooks/orders", json=order)
        assert first.status_code == replay.status_code == 202
        assert first.json()["written"] == 1
        assert replay.json()["written"] == 0


# ===========================================================================
# Error mapping
# ===========================================================================
class TestErrorMapping:
    @pytest.mark.parametrize("exc,expected", [
        (ConflictError("duplicate"), 409),
        (TransientStoreError("db away"), 503),
        (EngagementError("unexpected"), 500),
    ])
    def test_status_codes(self, client, runtime, exc, expected):
        with patch.object(runtime, "get_scores", side_effect=exc):
            resp = client.get("/api/users/1/scores")
        assert resp.status_code == expected

    def test_internal_error_detail_hidden(self, client, runtime):
        with patch.object(runtime, "get_scores", side_effect=EngagementError("secret detail")):
            resp = client.get("/api/users/1/scores")
        assert resp.json() == {"detail": "Internal error"}


# ===========================================================================
# Auth guards - admin endpoints reject unauthenticated/non-admin callers
# ===========================================================================
class TestAdminAuthGuards:
    ADMIN_ENDPOINTS = [
        ("delete", "/api/admin/users/1/achievements"),
        ("delete", "/api/admin/achievements"),
        ("post", "/api/admin/scores/reset/week"),
        ("post", "/api/admin/scores/1/recalculate"),
        ("get", "/api/admin/engine/stats"),
    ]

    @pytest.mark.parametrize("method,endpoint", ADMIN_ENDPOINTS)
    def test_no_token_returns_401(self, client, method, endpoint):
        resp = client.request(method.upper(), endpoint)
        assert resp.status_code == 401

    @pytest.mark.parametrize("method,endpoint", ADMIN_ENDPOINTS)
    def test_bad_token_returns_401(self, client, method, endpoint):
        resp = client.request(method.upper(), endpoint, headers=_auth("not-a-jwt"))
        assert resp.status_code == 401

    @pytest.mark.parametrize("method,endpoint", ADMIN_ENDPOINTS)
    def test_non_admin_returns_403(self, client, non_admin_token, method, endpoint):
        resp = client.request(method.upper(), endpoint, headers=_auth(non_admin_token))
        assert resp.status_code == 403


# ===========================================================================
# Admin operations
# ===========================================================================
class TestAdminRoutes:
    def test_clear_user_achievements(self, client, runtime, db_engine, admin_token):
        add_definition(db_engine, "first_rank", {"type": "rank_count", "value": 1}, points=10)
        make_user(db_engine, 1)
        runtime.record_ranking(1, "beef-original", rank=1)
        runtime.queue.classify(1, "ranking_saved")

        resp = client.delete("/api/admin/users/1/achievements", headers=_auth(admin_token))
        assert resp.status_code == 200
        body = resp.json()
        assert body["user_id"] == 1
        assert body["achievements_deleted"] == 1
        assert runtime.list_achievements(1)[0].earned is False

    def test_clear_unknown_user(self, client, admin_token):
        resp = client.delete("/api/admin/users/404/achievements", headers=_auth(admin_token))
        assert resp.status_code == 404

    def test_clear_all(self, client, runtime, db_engine, admin_token):
        add_definition(db_engine, "first_rank", {"type": "rank_count", "value": 1}, points=10)
        make_user(db_engine, 99999)
        for user_id in (1, 2):
            make_user(db_engine, user_id)
            runtime.record_ranking(user_id, "beef-original", rank=1)
            runtime.queue.classify(user_id, "ranking_saved")

        resp = client.delete("/api/admin/achievements", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["users_affected"] == 2
        assert runtime.get_scores(1).counter("achievements") == 0

    def test_reset_week(self, client, runtime, db_engine, admin_token):
        make_user(db_engine, 1)
        runtime.record_ranking(1, "beef-original", rank=1)
        resp = client.post("/api/admin/scores/reset/week", headers=_auth(admin_token))
        assert resp.json() == {"period": "week", "rows_reset": 1}
        assert runtime.get_scores(1).score("week") == 0

    def test_reset_all_time_rejected(self, client, admin_token):
        resp = client.post("/api/admin/scores/reset/all_time", headers=_auth(admin_token))
        assert resp.status_code == 422

    def test_recalculate(self, client, runtime, db_engine, admin_token):
        make_user(db_engine, 1)
        runtime.record_ranking(1, "beef-original", rank=1)
        resp = client.post("/api/admin/scores/1/recalculate", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["counters"]["all_time"]["rankings"] == 1

    def test_engine_stats(self, client, admin_token):
        resp = client.get("/api/admin/engine/stats", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert set(resp.json()) == {"cache", "queue", "ingestor", "webhook_ingestor"}
