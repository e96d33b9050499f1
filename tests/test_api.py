# tests/test_api.py
"""HTTP surface with the service layer mocked out"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

import main
from core.exceptions import InvalidTaskStateError, TaskNotFoundError
from main import app
from models.simulation import ActionResult, ConversationConcluded
from tests.factories import ACCOUNT_ID, REQUEST_ID, make_conversation, make_task


@pytest.fixture
def services(monkeypatch):
    orchestrator = AsyncMock()
    simulation_service = AsyncMock()
    monkeypatch.setattr(main, "orchestrator", orchestrator)
    monkeypatch.setattr(main, "simulation_service", simulation_service)
    return orchestrator, simulation_service


@pytest.fixture
def client():
    """Test client for API endpoints"""
    return TestClient(app)


def test_root_endpoint(client):
    response = client.get("/")

    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "Conversation Simulator API"
    assert data["version"] == main.VERSION


def test_health_without_infrastructure(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "degraded"
    assert "timestamp" in data
    assert data["responder"] == "stopped"


def test_webhook_unavailable_before_startup(client, monkeypatch):
    monkeypatch.setattr(main, "orchestrator", None)

    response = client.post(f"/webhook/{ACCOUNT_ID}/content-event", json={})

    assert response.status_code == 503


# ==========================================
# WEBHOOKS
# ==========================================

def test_content_event_webhook(client, services):
    orchestrator, _ = services
    orchestrator.process_content_event.return_value = make_conversation()

    response = client.post(f"/webhook/{ACCOUNT_ID}/content-event", json={"body": {"changes": []}})

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "processed": True}
    orchestrator.process_content_event.assert_awaited_once_with(ACCOUNT_ID, {"body": {"changes": []}})


def test_content_event_webhook_never_fails_the_platform(client, services):
    orchestrator, _ = services
    orchestrator.process_content_event.side_effect = RuntimeError("redis down")

    response = client.post(f"/webhook/{ACCOUNT_ID}/content-event", json={"body": {}})

    assert response.status_code == 200
    assert response.json()["status"] == "error"


def test_content_event_rejects_invalid_json(client, services):
    response = client.post(
        f"/webhook/{ACCOUNT_ID}/content-event",
        content="not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400


def test_state_change_webhook(client, services):
    orchestrator, _ = services
    orchestrator.handle_state_change.return_value = [ConversationConcluded(ACCOUNT_ID, REQUEST_ID, "conv-1")]

    response = client.post(f"/webhook/{ACCOUNT_ID}/state", json={"body": {"changes": []}})

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "concluded": ["conv-1"]}


# ==========================================
# TASKS
# ==========================================

def test_create_task(client, services):
    _, simulation_service = services
    simulation_service.create_task.return_value = make_task()

    response = client.post(f"/simulation/{ACCOUNT_ID}/tasks", json={
        "max_conversations": 3,
        "concurrent_conversations": 2,
        "consumer_message_delay_range": {"min": 2, "max": 6},
    })

    assert response.status_code == 200
    assert response.json()["request_id"] == REQUEST_ID
    values = simulation_service.create_task.await_args.args[1]
    assert values["max_conversations"] == 3
    assert values["consumer_message_delay_range"] == {"min": 2, "max": 6}


def test_create_task_body_validation(client, services):
    response = client.post(f"/simulation/{ACCOUNT_ID}/tasks", json={"max_conversations": 0})

    assert response.status_code == 422


def test_create_task_value_error(client, services):
    _, simulation_service = services
    simulation_service.create_task.side_effect = ValueError("max_turns must be at least 1")

    response = client.post(f"/simulation/{ACCOUNT_ID}/tasks", json={})

    assert response.status_code == 400
    assert response.json()["detail"] == "max_turns must be at least 1"


def test_get_missing_task(client, services):
    _, simulation_service = services
    simulation_service.get_task.side_effect = TaskNotFoundError("Task missing not found")

    response = client.get(f"/simulation/{ACCOUNT_ID}/tasks/missing")

    assert response.status_code == 404


def test_stop_task(client, services):
    _, simulation_service = services
    simulation_service.stop_task.return_value = make_task(status="CANCELLED")

    response = client.post(f"/simulation/{ACCOUNT_ID}/tasks/{REQUEST_ID}/stop")

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"


# ==========================================
# CONVERSATIONS
# ==========================================

def test_pause_closed_conversation_conflicts(client, services):
    orchestrator, _ = services
    orchestrator.pause_conversation.side_effect = InvalidTaskStateError("Conversation conv-1 is CLOSED")

    response = client.post(f"/simulation/{ACCOUNT_ID}/conversations/conv-1/pause")

    assert response.status_code == 409


def test_stop_conversation(client, services):
    orchestrator, _ = services
    orchestrator.stop_conversation.return_value = ActionResult.failure("bad gateway")

    response = client.post(f"/simulation/{ACCOUNT_ID}/conversations/conv-1/stop")

    assert response.status_code == 200
    assert response.json() == {"status": "error", "error": "bad gateway"}
