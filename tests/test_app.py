"""
Tests for the HTTP adapter.
"""

from fastapi.testclient import TestClient

from ielts_core.app import create_api_app
from ielts_core.config import Settings
from ielts_core.services import build_services

from conftest import LISTENING_KEY, LISTENING_TEST_ID, READING_TEST_ID, WRITING_TEST_ID, qid

FREE = {"X-User-Id": "free-user"}
PREMIUM = {"X-User-Id": "premium-user"}


def start(client, headers, module="listening", test_id=LISTENING_TEST_ID):
    return client.post(f"/{module}/tests/{test_id}/start", headers=headers)


def all_listening_answers():
    return [
        {"question_id": qid(LISTENING_TEST_ID, n), "user_answer": answer}
        for n, answer in LISTENING_KEY.items()
    ]


class TestStartEndpoint:
    """Tests for POST /{module}/tests/{test_id}/start."""

    def test_start_success(self, client, user_headers):
        response = start(client, user_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["time_limit_seconds"] == 1800
        assert data["deadline"] == "2024-01-01T12:30:00"
        questions = [q for s in data["test_content"]["sections"] for q in s["questions"]]
        assert all("correct_answer" not in q for q in questions)

    def test_missing_user_header(self, client):
        response = start(client, {})

        assert response.status_code == 401

    def test_unknown_module(self, client, user_headers):
        response = client.post(f"/speaking/tests/{LISTENING_TEST_ID}/start", headers=user_headers)

        assert response.status_code == 422

    def test_unknown_test(self, client, user_headers):
        response = start(client, user_headers, test_id="missing")

        assert response.status_code == 404
        assert response.json()["error"] == "TEST_NOT_FOUND"

    def test_unknown_user(self, client):
        response = start(client, {"X-User-Id": "ghost"})

        assert response.status_code == 404
        assert response.json() == {"error": "NOT_FOUND", "message": "User not found", "user_id": "ghost"}

    def test_conflict(self, client, user_headers):
        first = start(client, user_headers).json()

        response = start(client, user_headers, "reading", READING_TEST_ID)

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "SESSION_CONFLICT"
        assert body["module"] == "LISTENING"
        assert body["attempt_id"] == first["attempt_id"]
        assert body["test_id"] == LISTENING_TEST_ID

    def test_free_quota(self, client):
        attempt_id = start(client, FREE, "reading", READING_TEST_ID).json()["attempt_id"]
        client.post(f"/reading/attempts/{attempt_id}/submit", headers=FREE)

        response = start(client, FREE, "reading", READING_TEST_ID)

        assert response.status_code == 403
        assert response.json()["error"] == "QUOTA_EXCEEDED"
        assert response.json()["retry_at"] is None

    def test_premium_cooldown(self, client):
        attempt_id = start(client, PREMIUM).json()["attempt_id"]
        client.post(f"/listening/attempts/{attempt_id}/submit", headers=PREMIUM)

        response = start(client, PREMIUM)

        assert response.status_code == 429
        body = response.json()
        assert body["retry_at"] == "2024-01-02T12:00:00"
        assert body["hours_remaining"] == 24


class TestAttemptEndpoints:
    def test_full_listening_flow(self, client, user_headers):
        attempt_id = start(client, user_headers).json()["attempt_id"]

        progress = client.patch(
            f"/listening/attempts/{attempt_id}/progress",
            json={"current_section": 2, "audio_time_spent": 750},
            headers=user_headers,
        )
        assert progress.status_code == 200
        assert progress.json()["attempt"]["progress"]["current_section"] == 2

        saved = client.put(
            f"/listening/attempts/{attempt_id}/answers/{qid(LISTENING_TEST_ID, 1)}",
            json={"user_answer": "Rose Cottage", "time_spent": 4},
            headers=user_headers,
        )
        assert saved.status_code == 200
        assert saved.json()["time_spent"] == 4

        stats = client.get(f"/listening/attempts/{attempt_id}/stats", headers=user_headers).json()
        assert stats["answered"] == 1
        assert stats["audio_utilization"] == 50.0

        submitted = client.post(
            f"/listening/attempts/{attempt_id}/submit",
            json={"answers": all_listening_answers()},
            headers=user_headers,
        )
        assert submitted.status_code == 200
        body = submitted.json()
        assert body["result"]["correct_answers"] == 10
        assert body["result"]["band_score"] == 4.0
        assert body["analytics"]["total_tests"] == 1

        again = client.post(f"/listening/attempts/{attempt_id}/submit", headers=user_headers)
        assert again.status_code == 409
        assert again.json()["error"] == "ALREADY_SUBMITTED"

        result = client.get(f"/listening/attempts/{attempt_id}/result", headers=user_headers)
        assert result.status_code == 200
        assert result.json()["attempt_id"] == attempt_id

    def test_unknown_question(self, client, user_headers):
        attempt_id = start(client, user_headers).json()["attempt_id"]

        response = client.put(
            f"/listening/attempts/{attempt_id}/answers/bogus",
            json={"user_answer": "x"},
            headers=user_headers,
        )

        assert response.status_code == 404

    def test_expired_submit(self, client, user_headers, clock):
        attempt_id = start(client, user_headers).json()["attempt_id"]
        clock.advance(minutes=31)

        response = client.post(f"/listening/attempts/{attempt_id}/submit", headers=user_headers)

        assert response.status_code == 410
        assert response.json()["error"] == "EXPIRED"

    def test_not_active_after_abandon(self, client, user_headers):
        attempt_id = start(client, user_headers).json()["attempt_id"]
        abandoned = client.post(f"/listening/attempts/{attempt_id}/abandon", headers=user_headers)
        assert abandoned.json() == {"success": True, "abandoned": True}

        response = client.patch(
            f"/listening/attempts/{attempt_id}/progress",
            json={"current_section": 3},
            headers=user_headers,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "NOT_ACTIVE"

    def test_attempts_are_private(self, client, user_headers):
        attempt_id = start(client, user_headers).json()["attempt_id"]

        response = client.get(f"/listening/attempts/{attempt_id}/stats", headers=PREMIUM)

        assert response.status_code == 404

    def test_writing_submit(self, client, user_headers):
        attempt_id = start(client, user_headers, "writing", WRITING_TEST_ID).json()["attempt_id"]

        response = client.post(
            f"/writing/attempts/{attempt_id}/submit",
            json={"answers": [
                {"question_id": qid(WRITING_TEST_ID, 1), "user_answer": "word " * 150},
                {"question_id": qid(WRITING_TEST_ID, 2), "user_answer": "word " * 250},
            ]},
            headers=user_headers,
        )

        assert response.status_code == 200
        assert response.json()["result"]["task_bands"] == {"task1": 5.5, "task2": 5.5}
        assert response.json()["result"]["band_score"] == 5.5

    def test_active_attempt(self, client, user_headers):
        assert client.get("/reading/attempts/active", headers=user_headers).json() == {"attempt": None}
        attempt_id = start(client, user_headers, "reading", READING_TEST_ID).json()["attempt_id"]

        body = client.get("/reading/attempts/active", headers=user_headers).json()

        assert body["attempt"]["attempt_id"] == attempt_id


class TestSessionEndpoints:
    def test_active_session(self, client, user_headers, clock):
        assert client.get("/sessions/active", headers=user_headers).json() == {
            "has_active_session": False,
            "session": None,
        }
        attempt_id = start(client, user_headers).json()["attempt_id"]
        clock.advance(seconds=90)

        body = client.get("/sessions/active", headers=user_headers).json()

        assert body["has_active_session"] is True
        assert body["session"]["module_attempt_id"] == attempt_id
        assert body["session"]["time_remaining"] == 1710
        assert body["session"]["state"] == "Active"

    def test_history_and_force_end(self, client, user_headers):
        start(client, user_headers)

        ended = client.post("/sessions/force-end", json={"user_id": "enterprise-user", "reason": "support"})
        assert ended.json() == {"success": True, "ended_sessions": 1}

        history = client.get("/sessions/history?page=1&limit=5", headers=user_headers).json()
        assert history["pagination"]["total"] == 1
        assert history["sessions"][0]["status"] == "EXPIRED"
        assert history["sessions"][0]["state"] == "Terminal"

    def test_quota_status(self, client):
        body = client.get("/reading/quota", headers=FREE).json()

        assert body == {
            "allowed": True,
            "tier": "FREE",
            "reason": "",
            "retry_at": None,
            "remaining_tests": 1,
            "completed_tests": 0,
        }


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestCatalogEndpoint:
    """Tests for GET /{module}/tests."""

    def test_lists_active_tests_without_content(self, client, store):
        retired = store.get_test(LISTENING_TEST_ID)
        retired.id = "listening-retired"
        retired.is_active = False
        store.add_test(retired)

        response = client.get("/listening/tests")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        summary = body["tests"][0]
        assert summary["id"] == LISTENING_TEST_ID
        assert summary["total_questions"] == 10
        assert summary["time_limit_seconds"] == 1800
        assert summary["sections"] == 2
        assert "questions" not in summary

    def test_each_module_has_its_own_catalog(self, client):
        body = client.get("/writing/tests").json()

        assert [t["id"] for t in body["tests"]] == [WRITING_TEST_ID]


def test_default_services_accept_demo_learners():
    client = TestClient(create_api_app(build_services(Settings())))

    catalog = client.get("/reading/tests").json()
    test_id = catalog["tests"][0]["id"]
    response = client.post(f"/reading/tests/{test_id}/start", headers=FREE)

    assert response.status_code == 201
    assert client.get("/reading/quota", headers=PREMIUM).json()["tier"] == "PREMIUM"
