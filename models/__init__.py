from .simulation import (
    TaskStatus,
    ConversationState,
    RemoteStatus,
    DialogType,
    ParticipantRole,
    NextAction,
    Task,
    SimulationConversation,
    TaskProgress,
    ConversationConcluded,
    ActionResult,
)

__all__ = [
    "TaskStatus",
    "ConversationState",
    "RemoteStatus",
    "DialogType",
    "ParticipantRole",
    "NextAction",
    "Task",
    "SimulationConversation",
    "TaskProgress",
    "ConversationConcluded",
    "ActionResult",
]
