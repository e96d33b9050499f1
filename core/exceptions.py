# core/exceptions.py
"""
Error taxonomy for the simulator.

Fatal conditions raise one of these; best-effort paths return an
ActionResult instead and only log.
"""

from typing import Optional


class SimulationError(Exception):
    """Base class for simulator failures"""

    def __init__(
        self,
        message: str,
        account_id: Optional[str] = None,
        request_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.account_id = account_id
        self.request_id = request_id
        self.conversation_id = conversation_id


class MissingIdentifierError(SimulationError):
    """A required identifier or token was not supplied"""


class ConversationLimitExceeded(SimulationError):
    """The task already has as many conversations in flight as it is allowed"""


class TaskNotFoundError(SimulationError):
    pass


class ConversationNotFoundError(SimulationError):
    pass


class InvalidTaskStateError(SimulationError):
    """Operation requested against a task or conversation in the wrong state"""


class PlatformError(SimulationError):
    """Non-success response from the messaging platform"""

    def __init__(self, message: str, status_code: Optional[int] = None, **context):
        super().__init__(message, **context)
        self.status_code = status_code


class PlatformUnavailableError(PlatformError):
    """Transient platform failure, safe to retry"""


class AnalysisError(SimulationError):
    pass
