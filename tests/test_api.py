"""HTTP surface: auth, error mapping and lazy finalization through the routes."""

import functools

import jwt
import pytest
from fastapi.testclient import TestClient

from progress_backend import config
from progress_backend.progress import submit_progress
from progress_backend.server import app
from tests.helpers import utc

INTERNAL_TOKEN = "internal-test-token"


def _bearer(user_id: str, name: str = "Tester") -> dict:
    token = jwt.encode({"user_id": user_id, "name": name}, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(config, "DB_BACKEND", "memory")
    monkeypatch.setattr(config, "FINALIZATION_SCHEDULER_ENABLED", False)
    monkeypatch.setattr(config, "INTERNAL_API_TOKEN", INTERNAL_TOKEN)
    with TestClient(app) as test_client:
        yield test_client


def _seed(client, *args, **kwargs):
    """Write a record with an explicit clock, bypassing the route's ``now``."""
    return client.portal.call(functools.partial(submit_progress, app.state.db, *args, **kwargs))



def _user(client, user_id):
    return client.portal.call(functools.partial(app.state.db.users.find_one, {"id": user_id}, {"_id": 0}))

class TestBasics:
    def test_root(self, client):
        assert client.get("/api/").status_code == 200

    def test_health(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "healthy"
        assert body["db"] == "ok"
        assert body["storage"] == "memory"
        assert body["scheduler_running"] is False


class TestAuth:
    def test_missing_token(self, client):
        assert client.get("/api/progress/status").status_code in (401, 403)

    def test_bad_signature(self, client):
        token = jwt.encode({"user_id": "u1"}, "not-the-secret", algorithm="HS256")
        response = client.get("/api/progress/status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_token_without_subject(self, client):
        token = jwt.encode({"name": "Nobody"}, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
        response = client.get("/api/progress/status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_repeat_requests_do_not_rewrite_user(self, client):
        client.get("/api/progress/status", headers=_bearer("u1", "Alex"))
        first = _user(client, "u1")
        client.get("/api/progress/status", headers=_bearer("u1", "Alex"))
        client.get("/api/progress/status", headers=_bearer("u1", ""))
        assert _user(client, "u1") == first

    def test_renamed_user_is_updated(self, client):
        client.get("/api/progress/status", headers=_bearer("u1", "Alex"))
        client.get("/api/progress/status", headers=_bearer("u1", "Sam"))
        user = _user(client, "u1")
        assert user["name"] == "Sam"
        assert user["updated_at"] >= user["created_at"]


class TestProgressRoutes:
    def test_submissions_accumulate(self, client):
        headers = _bearer("u1")
        first = client.post("/api/progress", json={"points_earned": 30, "questions_answered": 3, "correct_answers": 3}, headers=headers)
        second = client.post("/api/progress", json={"points_earned": 20, "level": 2}, headers=headers)

        assert first.status_code == 200
        assert first.json()["applied"] is True
        body = second.json()
        assert body["record"]["points_earned"] == 50
        assert body["record"]["level"] == 2
        assert body["record"]["finalized"] is False

    def test_negative_points_rejected(self, client):
        response = client.post("/api/progress", json={"points_earned": -5}, headers=_bearer("u1"))
        assert response.status_code == 422

    def test_more_correct_than_answered_rejected(self, client):
        response = client.post(
            "/api/progress", json={"questions_answered": 1, "correct_answers": 2}, headers=_bearer("u1")
        )
        assert response.status_code == 422
        assert "correct_answers" in response.json()["detail"]

    def test_status_reports_temporary_record(self, client):
        headers = _bearer("u1")
        client.post("/api/progress", json={"points_earned": 10, "time_zone": "Asia/Kolkata"}, headers=headers)

        body = client.get("/api/progress/status", headers=headers).json()
        assert body["status"] == "temporary"
        assert body["timezone"] == "Asia/Kolkata"
        assert body["seconds_until_finalize"] > 0

    def test_recent_repairs_old_records(self, client):
        _seed(client, "u1", 40, time_zone="UTC", now=utc(2024, 1, 15, 12))
        response = client.get("/api/progress/recent", headers=_bearer("u1"))
        assert response.status_code == 200

        stats = client.get(
            "/api/admin/finalization/stats", headers={"Authorization": f"Bearer {INTERNAL_TOKEN}"}
        ).json()
        assert stats["overdue_records"] == 0
        assert stats["finalized_records"] == 1

    def test_invalid_days(self, client):
        response = client.get("/api/progress/recent", params={"days": 0}, headers=_bearer("u1"))
        assert response.status_code == 422


class TestLeaderboardRoutes:
    def test_reads_finalize_overdue_records(self, client):
        for user_id, points in (("alice", 150), ("bob", 200), ("carol", 90)):
            _seed(client, user_id, points, time_zone="UTC", now=utc(2024, 1, 15, 12))

        response = client.get("/api/leaderboard", params={"date": "2024-01-15"}, headers=_bearer("alice", "Alice"))
        assert response.status_code == 200
        body = response.json()
        assert [(e["rank"], e["user_id"], e["points"]) for e in body["entries"]] == [
            (1, "bob", 200),
            (2, "alice", 150),
            (3, "carol", 90),
        ]
        assert body["entries"][1]["display_name"] == "Alice"
        assert body["entries"][1]["is_current_user"] is True

    def test_current_day_is_not_ranked_yet(self, client):
        headers = _bearer("u1")
        client.post("/api/progress", json={"points_earned": 10}, headers=headers)

        body = client.get("/api/leaderboard", headers=headers).json()
        assert body["entries"] == []
        assert body["message"]

    def test_invalid_date(self, client):
        response = client.get("/api/leaderboard", params={"date": "yesterday"}, headers=_bearer("u1"))
        assert response.status_code == 422

    def test_global(self, client):
        _seed(client, "alice", 150, time_zone="UTC", now=utc(2024, 1, 15, 12))
        _seed(client, "alice", 100, time_zone="UTC", now=utc(2024, 1, 16, 12))
        body = client.get("/api/leaderboard/global", headers=_bearer("bob")).json()
        assert body["entries"][0]["points"] == 250


class TestRewardRoutes:
    def test_claim_flow(self, client):
        headers = _bearer("u1")
        client.post("/api/progress", json={"points_earned": 1100}, headers=headers)

        overview = client.get("/api/rewards/opportunities", headers=headers).json()
        assert [o["points_milestone"] for o in overview["opportunities"]] == [1000, 500]
        assert overview["next_milestone"] == 1500

        claim = client.post("/api/rewards/select", json={"points_milestone": 500, "reward_id": "diamond_sword"}, headers=headers)
        assert claim.status_code == 200
        assert claim.json()["is_used"] is True

        again = client.post("/api/rewards/select", json={"points_milestone": 500, "reward_id": "bow"}, headers=headers)
        assert again.status_code == 409

        inventory = client.get("/api/inventory", headers=headers).json()
        assert [i["selected_reward_id"] for i in inventory] == ["diamond_sword"]

    def test_sync_returns_new_opportunities_once(self, client):
        headers = _bearer("u1")
        client.post("/api/progress", json={"points_earned": 600}, headers=headers)

        assert len(client.post("/api/rewards/sync", headers=headers).json()["created"]) == 1
        assert client.post("/api/rewards/sync", headers=headers).json()["created"] == []


class TestAchievementRoutes:
    def test_check_and_mark_seen(self, client):
        headers = _bearer("u1")
        client.post("/api/progress", json={"points_earned": 600}, headers=headers)

        (badge,) = client.post("/api/achievements/check", headers=headers).json()
        assert badge["name"] == "Novice Miner"

        assert client.patch(f"/api/achievements/{badge['id']}/mark-seen", headers=headers).status_code == 200
        assert client.patch("/api/achievements/missing/mark-seen", headers=headers).status_code == 404
        assert client.get("/api/achievements", headers=headers).json()[0]["is_new"] is False


class TestAdminRoutes:
    def test_wrong_token_forbidden(self, client):
        response = client.get("/api/admin/finalization/stats", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 403

    def test_unconfigured_token(self, client, monkeypatch):
        monkeypatch.setattr(config, "INTERNAL_API_TOKEN", "")
        response = client.get("/api/admin/finalization/stats", headers={"Authorization": "Bearer anything"})
        assert response.status_code == 503

    def test_manual_run(self, client):
        _seed(client, "u1", 40, time_zone="UTC", now=utc(2024, 1, 15, 12))
        headers = {"Authorization": f"Bearer {INTERNAL_TOKEN}"}

        body = client.post("/api/admin/finalization/run", params={"older_than_hours": 24}, headers=headers).json()
        assert body["finalized"] == 1
        assert body["older_than_hours"] == 24

        again = client.post("/api/admin/finalization/run", headers=headers).json()
        assert again["finalized"] == 0
