from fastapi.testclient import TestClient

from ecotrace_api.app.core.config import settings
from ecotrace_api.app.main import app
from ecotrace_api.app.services.dashboard_service import DashboardService


def record(client, user_id="u1", carbon_kg=0.01, **fields):
    payload = {"user_id": user_id, "type": "commit", "carbon_kg": carbon_kg, **fields}
    response = client.post("/api/activities/", json=payload)
    assert response.status_code == 201
    return response.json()


def test_health(client):
    body = client.get("/health").json()

    assert body["status"] == "OK"
    assert body["version"] == settings.api_version
    assert body["uptime"] >= 0


def test_users(client):
    created = client.post("/api/users/", json={"id": "u1", "username": "octocat"})
    duplicate = client.post("/api/users/", json={"id": "u1", "username": "octocat"})

    assert created.status_code == 201
    assert duplicate.status_code == 409
    assert client.get("/api/users/u1").json()["username"] == "octocat"
    assert [u["id"] for u in client.get("/api/users/").json()] == ["u1"]
    assert client.get("/api/users/nobody").status_code == 404


def test_activity_lifecycle(client):
    activity = record(client)

    assert client.get(f"/api/activities/{activity['id']}").json()["carbon_kg"] == 0.01
    assert client.delete(f"/api/activities/{activity['id']}").status_code == 204
    assert client.get(f"/api/activities/{activity['id']}").status_code == 404
    assert client.delete(f"/api/activities/{activity['id']}").status_code == 404


def test_activity_without_footprint_is_calculated(client):
    response = client.post(
        "/api/activities/",
        json={"user_id": "u1", "type": "commit", "commit": {"sha": "abc", "additions": 100, "deletions": 50, "changed_files": 3}},
    )

    assert response.status_code == 201
    assert response.json()["carbon_kg"] > 0
    assert response.json()["calculation_confidence"] == "medium"


def test_dashboard_views(client):
    record(client, carbon_kg=0.02)
    record(client, carbon_kg=0.04)

    carbon = client.get("/api/dashboard/carbon/u1", params={"period": "all_time"})
    activities = client.get("/api/dashboard/activities/u1", params={"type": "commit", "limit": 1})
    stats = client.get("/api/dashboard/stats/u1")
    trends = client.get("/api/dashboard/trends/u1", params={"days": 7})
    leaderboard = client.get("/api/dashboard/leaderboard", params={"period": "all_time", "user_id": "u1"})

    assert carbon.headers["cache-control"] == "no-cache"
    assert carbon.json()["data"]["current_period"]["carbon_kg"] == 0.06
    assert activities.json()["data"]["has_more"] is True
    assert stats.json()["data"]["total_activities"] == 2
    assert len(trends.json()["data"]["data_points"]) == 7
    assert leaderboard.json()["data"]["user_position"]["rank"] == 1


def test_leaderboard_follows_new_and_deleted_activities(client):
    record(client, user_id="u1")
    first = client.get("/api/dashboard/leaderboard", params={"period": "weekly"}).json()["data"]
    second_activity = record(client, user_id="u2")
    second = client.get("/api/dashboard/leaderboard", params={"period": "weekly", "user_id": "u2"}).json()["data"]
    client.delete(f"/api/activities/{second_activity['id']}")
    third = client.get("/api/dashboard/leaderboard", params={"period": "weekly"}).json()["data"]

    assert first["total_participants"] == 1
    assert second["total_participants"] == 2
    assert second["user_position"]["user_id"] == "u2"
    assert third["total_participants"] == 1


def test_dashboard_rejects_bad_parameters(client):
    assert client.get("/api/dashboard/carbon/u1", params={"period": "hourly"}).status_code == 422
    assert client.get("/api/dashboard/activities/u1", params={"type": "meeting"}).status_code == 422
    assert client.get("/api/dashboard/activities/u1", params={"since": "last week"}).status_code == 400
    assert client.get("/api/dashboard/trends/u1", params={"granularity": "yearly"}).status_code == 422
    assert client.get("/api/dashboard/trends/u1", params={"days": 400}).status_code == 422
    assert client.get("/api/dashboard/leaderboard", params={"limit": 501}).status_code == 422


def test_broadcast_test_reaches_websocket(client):
    with client.websocket_connect("/ws?channels=user.u1.carbon") as websocket:
        subscribed = websocket.receive_json()
        assert subscribed["type"] == "subscribed"
        assert subscribed["channels"] == ["user.u1.carbon"]

        status = client.get("/websocket/status").json()
        assert status["websocket"]["channels"] == {"user.u1.carbon": 1}

        response = client.post(
            "/api/dashboard/broadcast/test/u1",
            json={"type": "carbon_updated", "data": {"carbon_kg": 0.5}},
        )
        assert response.json()["success"] is True

        event = websocket.receive_json()
        assert event["type"] == "carbon_updated"
        assert event["data"]["carbon_kg"] == 0.5


def test_websocket_rejects_malformed_messages(client):
    with client.websocket_connect("/ws?channels=global.system") as websocket:
        assert websocket.receive_json()["type"] == "subscribed"

        websocket.send_text("{not json")
        assert websocket.receive_json()["type"] == "error"
        websocket.send_json(["subscribe"])
        assert websocket.receive_json()["type"] == "error"
        websocket.send_json({"action": "subscribe", "channels": 42})
        assert websocket.receive_json()["type"] == "error"

        websocket.send_json({"action": "subscribe", "channels": ["global.stats"]})
        resubscribed = websocket.receive_json()
        assert resubscribed["channels"] == ["global.stats", "global.system"]


def test_websocket_requires_channels(client):
    with client.websocket_connect("/ws") as websocket:
        assert websocket.receive_json()["type"] == "error"


def test_broadcast_test_rejects_unknown_type_and_production(client, monkeypatch):
    unknown = client.post("/api/dashboard/broadcast/test/u1", json={"type": "party", "data": {}})
    assert unknown.status_code == 400

    monkeypatch.setattr(settings, "environment", "production")
    hidden = client.post("/api/dashboard/broadcast/test/u1", json={"type": "carbon_updated"})
    assert hidden.status_code == 404


def test_performance_groups_by_route(client):
    client.get("/api/dashboard/carbon/u1")
    client.get("/api/dashboard/carbon/u2")

    metrics = client.get("/api/dashboard/performance").json()["data"]

    endpoint = metrics["endpoints"]["GET /api/dashboard/carbon/{user_id}"]
    assert endpoint["count"] == 2
    assert endpoint["errors"] == 0
    assert metrics["total_requests"] >= 2


def test_performance_keeps_prefixed_routes_apart(client):
    client.get("/health")
    client.get("/api/calculation/health")
    client.get("/api/calculation/health")

    endpoints = client.get("/api/dashboard/performance").json()["data"]["endpoints"]

    assert endpoints["GET /health"]["count"] == 1
    assert endpoints["GET /api/calculation/health"]["count"] == 2
    assert "GET /carbon/{user_id}" not in endpoints


def test_unhandled_errors_return_500(monkeypatch):
    async def broken(cls, user_id, period="weekly"):
        raise RuntimeError("database on fire")

    monkeypatch.setattr(DashboardService, "get_user_carbon_data", classmethod(broken))
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/api/dashboard/carbon/u1")

    assert response.status_code == 500
    assert response.json()["error"] == "Internal server error"
    assert response.json()["message"] == "database on fire"
