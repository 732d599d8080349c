"""Tests for the HTTP API."""

import pytest

from content_engine.api import EngineLoopThread, create_app


@pytest.fixture
def loop_thread():
    thread = EngineLoopThread()
    thread.start()
    yield thread
    thread.shutdown()


@pytest.fixture
def client(engine, loop_thread):
    app = create_app(engine, loop_thread.loop)
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client
    loop_thread.submit(engine.stop())


def test_resolve_action(client, fetch_fn):
    response = client.post(
        "/actions",
        json={"action": "resolve", "data": {"content_type": "news", "keywords": ["startup"]}},
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["result"]["provenance"] == "fresh"
    fetch_fn.assert_awaited_once()


def test_failed_action_returns_400(client):
    response = client.post("/actions", json={"action": "execute_job", "data": {"job_id": "missing"}})

    assert response.status_code == 400
    assert response.get_json()["error"] == "Unknown job: missing"


def test_missing_action_returns_400(client):
    response = client.post("/actions", json={"data": {}})

    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_unknown_route_is_404(client):
    assert client.get("/nowhere").status_code == 404


def test_stats(client):
    client.post("/actions", json={"action": "resolve", "data": {"content_type": "funding", "keywords": ["seed"]}})

    response = client.get("/stats")

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["stats"]["fresh"] == 1
    assert body["local_entries"] == 1


def test_metrics_exposition(client):
    client.post("/actions", json={"action": "monitor_quotas"})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert b"content_engine_quota_used" in response.data
