# ===== models/simulation.py =====
"""
Task and conversation records shared by the orchestrator, the tracker and
the storage layers. Records are stored as plain dicts in both redis and
mongo; to_dict() flattens enums to their string values.
"""

import time
from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import List, Dict, Optional, Any


class TaskStatus(str, Enum):
    """Lifecycle of a simulation task"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    AGENT_ANALYSIS = "AGENT_ANALYSIS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"


TERMINAL_TASK_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.CANCELLED,
    TaskStatus.ERROR,
})


class ConversationState(str, Enum):
    """Internal simulation lifecycle of a conversation"""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ANALYSING = "ANALYSING"
    CLOSED = "CLOSED"


class RemoteStatus(str, Enum):
    """Conversation status/stage as reported by the messaging platform"""
    OPEN = "OPEN"
    CLOSE = "CLOSE"


class DialogType(str, Enum):
    MAIN = "MAIN"
    POST_SURVEY = "POST_SURVEY"


class ParticipantRole(str, Enum):
    CONSUMER = "CONSUMER"
    ASSIGNED_AGENT = "ASSIGNED_AGENT"
    AGENT = "AGENT"
    MANAGER = "MANAGER"
    CONTROLLER = "CONTROLLER"


class NextAction(str, Enum):
    """Decision produced by the task tracker"""
    CONCLUDE = "CONCLUDE"
    QUEUE = "QUEUE"
    NONE = "NONE"


# Controller and bot roles never drive a consumer reply
AGENT_ROLES = (
    ParticipantRole.ASSIGNED_AGENT,
    ParticipantRole.AGENT,
    ParticipantRole.MANAGER,
)

AUDIENCE_ALL = "ALL"
RICH_CONTENT_EVENT = "RichContentEvent"

CLOSED_CONVERSATION_MESSAGE = "(system message: conversation is now closed)"
END_CONVERSATION_MARKER = "::END_CONVERSATION"


def now_ms() -> int:
    return int(time.time() * 1000)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class Task:
    """One bounded simulation run for an account"""
    account_id: str
    request_id: str

    # Configuration
    max_conversations: int = 1
    concurrent_conversations: int = 1
    use_delays: bool = True
    use_fake_names: bool = True
    max_turns: Optional[int] = None
    consumer_message_delay_range: Optional[Dict[str, int]] = None
    name: Optional[str] = None
    skill_id: Optional[int] = None
    brand_id: Optional[str] = None
    scenario: Optional[str] = None
    persona: Optional[str] = None
    created_by: Optional[str] = None

    # Mutable state
    status: TaskStatus = TaskStatus.PENDING
    completed_conversations: int = 0
    completed_conv_ids: List[str] = field(default_factory=list)
    conversation_ids: List[str] = field(default_factory=list)
    in_flight_conversations: int = 0
    total_conversations: int = 0
    error_reason: Optional[str] = None

    # Analysis output
    assessment: Optional[str] = None
    overall_score: Optional[float] = None

    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        values = _known_fields(cls, data)
        if values.get("status") is not None:
            values["status"] = TaskStatus(values["status"])
        return cls(**values)


@dataclass
class SimulationConversation:
    """One synthetic customer conversation on the messaging platform"""
    id: str
    account_id: str
    request_id: str
    dialog_id: Optional[str] = None
    dialog_type: DialogType = DialogType.MAIN

    state: ConversationState = ConversationState.ACTIVE
    status: RemoteStatus = RemoteStatus.OPEN
    stage: RemoteStatus = RemoteStatus.OPEN
    active: bool = True

    # Turn tracking
    agent_turns: int = 0
    customer_turns: int = 0
    agent_messages_sent_count: int = 0
    agent_messages: List[str] = field(default_factory=list)
    last_agent_message_time: Optional[int] = None
    messages: List[Dict[str, Any]] = field(default_factory=list)

    # Reply scheduling
    pending_consumer: bool = False
    pending_consumer_respond_time: Optional[int] = None
    queued: bool = False

    # Consumer identity
    consumer_token: Optional[str] = None
    consumer_id: Optional[str] = None
    ext_consumer_id: Optional[str] = None
    consumer_name: Optional[str] = None
    skill_id: Optional[int] = None
    scenario: Optional[str] = None
    persona: Optional[str] = None

    assessment: Optional[Dict[str, Any]] = None
    llm_error_count: int = 0

    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def is_post_survey(self) -> bool:
        return self.dialog_type == DialogType.POST_SURVEY

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationConversation":
        values = _known_fields(cls, data)
        if values.get("state") is not None:
            values["state"] = ConversationState(values["state"])
        for key in ("status", "stage"):
            if values.get(key) is not None:
                values[key] = RemoteStatus(values[key])
        if values.get("dialog_type") is not None:
            values["dialog_type"] = DialogType(values["dialog_type"])
        return cls(**values)


@dataclass
class TaskProgress:
    """Capacity metrics for a task, computed from its conversation records"""
    pending_conversations: int
    completed_conversations: int
    inflight_conversations: int
    remaining_conversations: int
    max_additional_conversations: int
    conversations_to_queue: int
    excess_conversations: int
    is_complete: bool
    total_conversation_records: int
    max_conversations: int

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))


@dataclass
class ConversationConcluded:
    """Emitted by the orchestrator once a conversation has been finalised"""
    account_id: str
    request_id: str
    conversation_id: str
    duplicate: bool = False


@dataclass
class ActionResult:
    """Outcome of a best-effort operation that never raises"""
    ok: bool
    error: Optional[str] = None
    detail: Any = None

    @classmethod
    def success(cls, detail: Any = None) -> "ActionResult":
        return cls(ok=True, detail=detail)

    @classmethod
    def failure(cls, error: str, detail: Any = None) -> "ActionResult":
        return cls(ok=False, error=error, detail=detail)
