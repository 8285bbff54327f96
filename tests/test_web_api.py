"""Тесты HTTP API: публикация, планирование, админка, метрики."""
import pytest
from fastapi.testclient import TestClient

import config
from tests.conftest import in_minutes
from web_api import create_app

ADMIN = {"X-Admin-Secret": "admin-secret"}


@pytest.fixture
def client(core, monkeypatch):
    monkeypatch.setattr(config, "WEB_API_SECRET", "")
    monkeypatch.setattr(config, "ADMIN_SECRET", "admin-secret")
    return TestClient(create_app(core))


def schedule_body(**fields):
    when = in_minutes(30)
    body = {
        "type": "custom",
        "channel": "C1",
        "text": "Напоминание",
        "date": when.strftime("%Y-%m-%d"),
        "time": when.strftime("%H:%M"),
    }
    body.update(fields)
    return body


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["active_tasks_count"] == 0
    assert "timestamp" in data


def test_metrics(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "channel_scheduler_active_tasks" in response.text


def test_schedule_and_list(client, core):
    response = client.post("/schedule", json=schedule_body(repeat="daily"))
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["next_run_at"] is not None
    assert core.engine.job_ids() == [data["id"]]

    listing = client.get("/admin/tasks", headers=ADMIN).json()
    assert listing["active_count"] == 1
    assert listing["tasks"][0]["id"] == data["id"]
    assert listing["tasks"][0]["next_run_at"] is not None

    assert client.get("/admin/tasks", params={"channel": "C2"}, headers=ADMIN).json()["tasks"] == []


def test_schedule_rejects_past_one_time(client, core):
    response = client.post("/schedule", json=schedule_body(date="2020-01-01", time="10:00"))
    assert response.status_code == 422
    assert core.store.list_all() == []


def test_schedule_rejects_unknown_repeat(client):
    response = client.post("/schedule", json=schedule_body(repeat="hourly"))
    assert response.status_code == 422


def test_admin_requires_secret(client):
    assert client.get("/admin/tasks").status_code == 403
    assert client.get("/admin/tasks", headers={"X-Admin-Secret": "wrong"}).status_code == 403


def test_api_secret(client, monkeypatch):
    monkeypatch.setattr(config, "WEB_API_SECRET", "s3cret")
    assert client.post("/schedule", json=schedule_body()).status_code == 403
    response = client.post("/schedule", json=schedule_body(), headers={"x-secret": "s3cret"})
    assert response.status_code == 200


def test_admin_delete(client, core):
    task_id = client.post("/schedule", json=schedule_body()).json()["id"]
    assert client.post(f"/admin/delete/{task_id}", headers=ADMIN).json() == {"ok": True}
    assert core.store.get(task_id) is None
    assert client.post(f"/admin/delete/{task_id}", headers=ADMIN).status_code == 404


def test_export_csv(client):
    client.post("/schedule", json=schedule_body(title="Планёрка"))
    response = client.get("/admin/export.csv", headers=ADMIN)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0].startswith("ID,Type,Channel")
    assert "Планёрка" in lines[1]


def test_publish_now(client, messenger):
    response = client.post("/publish", json={"channel": "C1", "text": "Срочно"})
    assert response.status_code == 200
    assert len(messenger.sent) == 1
    assert messenger.sent[0][1].body == "Срочно"


def test_publish_failure_returns_502(client, messenger):
    messenger.fail_channels.add("C1")
    response = client.post("/publish", json={"channel": "C1", "text": "Срочно"})
    assert response.status_code == 502


def test_publish_existing_task(client, messenger):
    task_id = client.post("/schedule", json=schedule_body(repeat="weekly")).json()["id"]
    response = client.post(f"/publish/{task_id}")
    assert response.json() == {"ok": True, "id": task_id}
    assert len(messenger.sent) == 1
    assert client.post("/publish/missing").status_code == 404
