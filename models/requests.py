# ===== models/requests.py =====
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class DelayRange(BaseModel):
    min: int = Field(default=0, ge=0, description="Minimum consumer reply delay in seconds")
    max: int = Field(default=0, ge=0, description="Maximum consumer reply delay in seconds")


class TaskRequest(BaseModel):
    """Body of a task submission"""
    name: Optional[str] = None
    max_conversations: int = Field(default=1, ge=1, description="Conversations to run in total")
    concurrent_conversations: int = Field(default=1, ge=1, description="Conversations open at the same time")
    use_delays: bool = True
    use_fake_names: bool = True
    max_turns: Optional[int] = Field(default=None, ge=1)
    consumer_message_delay_range: Optional[DelayRange] = None
    skill_id: Optional[int] = None
    brand_id: Optional[str] = None
    scenario: Optional[str] = None
    persona: Optional[str] = None
    created_by: Optional[str] = None

    def to_task_values(self) -> Dict[str, Any]:
        return self.model_dump()
