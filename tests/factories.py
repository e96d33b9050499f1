# tests/factories.py
"""Record and webhook payload builders used across the test suite"""

from typing import Any, Dict, List, Optional

from models.simulation import (
    RemoteStatus,
    SimulationConversation,
    Task,
    TaskStatus,
)

ACCOUNT_ID = "12345678"
REQUEST_ID = "task_12345678_test"


def make_task(**overrides) -> Task:
    values: Dict[str, Any] = {
        "account_id": ACCOUNT_ID,
        "request_id": REQUEST_ID,
        "max_conversations": 3,
        "concurrent_conversations": 2,
        "status": TaskStatus.IN_PROGRESS,
        "skill_id": 42,
    }
    values.update(overrides)
    return Task(**values)


def make_conversation(conversation_id: str = "conv-1", **overrides) -> SimulationConversation:
    values: Dict[str, Any] = {
        "id": conversation_id,
        "account_id": ACCOUNT_ID,
        "request_id": REQUEST_ID,
        "dialog_id": conversation_id,
        "consumer_token": "consumer-token",
        "status": RemoteStatus.OPEN,
    }
    values.update(overrides)
    return SimulationConversation(**values)


def agent_change(
    conversation_id: str = "conv-1",
    message: Optional[str] = "Hi, how can I help you today?",
    originator_role: str = "ASSIGNED_AGENT",
    participant_role: str = "ASSIGNED_AGENT",
    audience: str = "ALL",
    event_type: str = "ContentEvent",
    **event_fields,
) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": event_type}
    if message is not None:
        event["message"] = message
    event.update(event_fields)
    return {
        "conversationId": conversation_id,
        "dialogId": conversation_id,
        "messageAudience": audience,
        "role": participant_role,
        "originatorMetadata": {"id": "agent-1", "role": originator_role},
        "event": event,
    }


def content_event(*changes: Dict[str, Any]) -> Dict[str, Any]:
    return {"kind": "notification", "body": {"changes": list(changes)}}


def state_change(
    conversation_id: str = "conv-1",
    stage: str = "OPEN",
    dialogs: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    return {
        "kind": "notification",
        "body": {
            "changes": [
                {
                    "type": "UPSERT",
                    "result": {
                        "convId": conversation_id,
                        "conversationDetails": {
                            "stage": stage,
                            "dialogs": dialogs or [],
                        },
                    },
                }
            ]
        },
    }
