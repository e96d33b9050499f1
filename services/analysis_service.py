# services/analysis_service.py
"""
Analysis handoff.

Scores finished conversations and summarises a concluded task with an
OpenAI chat model. Without an API key the service still completes the
bookkeeping and records a placeholder assessment.
"""

import json
from statistics import mean
from typing import Dict, List, Optional, Any

from loguru import logger
from openai import AsyncOpenAI

from config import settings
from core.exceptions import AnalysisError
from models.simulation import (
    Task,
    TaskStatus,
    SimulationConversation,
    ConversationState,
    RemoteStatus,
)
from utils.helpers import extract_json

ASSESSMENT_ERROR = {"score": "-", "assessment": "Error creating assessment"}

CONVERSATION_PROMPT = """You are a contact-centre quality analyst reviewing a conversation between a
customer and a live agent. The customer was simulated with the scenario and persona given below.

Score the agent from 1 (poor) to 10 (excellent) on empathy, accuracy, resolution and efficiency.
Respond with JSON only: {"score": <integer 1-10>, "assessment": "<two or three sentences>"}"""

TASK_PROMPT = """You are summarising a batch of simulated customer conversations handled by live agents.
Given the per-conversation assessments, write a short overall evaluation of agent performance with
the main strengths and the main areas to improve. Respond with JSON only:
{"assessment": "<one paragraph>"}"""


def build_transcript(conversation: SimulationConversation) -> str:
    lines = []
    for message in conversation.messages:
        role = "Customer" if message.get("role") == "consumer" else "Agent"
        lines.append(f"{role}: {message.get('text', '')}")
    return "\n".join(lines)


class AnalysisService:
    """LLM scoring for conversations and tasks"""

    def __init__(self, database, cache, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.database = database
        self.cache = cache
        self.model = model or settings.openai_model
        self.client = client

        if self.client is None and settings.openai_api_key:
            self.client = AsyncOpenAI(api_key=settings.openai_api_key)

        if self.client:
            logger.info("✅ Analysis service initialized")
        else:
            logger.warning("⚠️ Analysis service running without an LLM client")

    async def _complete_json(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=settings.analysis_temperature,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content
        parsed = extract_json(content)
        if not parsed:
            raise AnalysisError(f"Model returned non-JSON content: {str(content)[:200]}")
        return parsed

    # ==========================================
    # CONVERSATIONS
    # ==========================================

    async def assess_conversation(self, conversation: SimulationConversation, task: Optional[Task]) -> Dict[str, Any]:
        if not self.client:
            return {"score": "-", "assessment": "Assessment skipped: no LLM client configured"}

        transcript = build_transcript(conversation)
        if not transcript:
            return {"score": "-", "assessment": "No messages were exchanged"}

        user_prompt = (
            f"Scenario: {conversation.scenario or (task.scenario if task else '') or 'general enquiry'}\n"
            f"Persona: {conversation.persona or (task.persona if task else '') or 'average customer'}\n\n"
            f"Transcript:\n{transcript}"
        )
        result = await self._complete_json(CONVERSATION_PROMPT, user_prompt)

        if "assessment" not in result:
            raise AnalysisError("Assessment missing from model response", conversation_id=conversation.id)

        return {"score": result.get("score", "-"), "assessment": str(result["assessment"])}

    async def conclude_conversation(self, account_id: str, request_id: str, conversation_id: str) -> Optional[Dict[str, Any]]:
        """
        Conversation-level conclusion: release the task's in-flight slot,
        score the transcript and close the record.
        """
        try:
            await self.cache.decrement_task_conversation_count(request_id)

            task = await self.database.get_task(account_id, request_id)
            if task:
                await self.database.update_task(account_id, request_id, {
                    "in_flight_conversations": max(0, task.in_flight_conversations - 1),
                })

            conversation = await self.database.get_conversation(account_id, conversation_id)
            if not conversation:
                logger.warning(f"⚠️ Nothing to assess for conversation {conversation_id}")
                return None

            try:
                assessment = await self.assess_conversation(conversation, task)
            except Exception as e:
                logger.error(f"❌ Assessment failed for conversation {conversation_id}: {e}")
                assessment = dict(ASSESSMENT_ERROR)

            await self.database.update_conversation(account_id, conversation_id, {
                "assessment": assessment,
                "active": False,
                "status": RemoteStatus.CLOSE,
                "state": ConversationState.CLOSED,
            })

            logger.info(f"📊 Conversation {conversation_id} assessed: {assessment.get('score')}")
            return assessment

        except Exception as e:
            logger.error(f"❌ Error concluding conversation {conversation_id} for account {account_id}: {e}")
            return None

    # ==========================================
    # TASKS
    # ==========================================

    @staticmethod
    def average_score(conversations: List[SimulationConversation]) -> Optional[float]:
        scores = []
        for conversation in conversations:
            score = (conversation.assessment or {}).get("score")
            try:
                scores.append(float(score))
            except (TypeError, ValueError):
                continue
        return round(mean(scores), 2) if scores else None

    async def _summarise_task(self, task: Task, conversations: List[SimulationConversation], overall: Optional[float]) -> str:
        if not self.client:
            return (
                f"{len(conversations)} conversations concluded; "
                f"average score {overall if overall is not None else 'n/a'}"
            )

        assessments = [
            {"conversation_id": c.id, **(c.assessment or {})}
            for c in conversations
        ]
        user_prompt = (
            f"Task: {task.name or task.request_id}\n"
            f"Scenario: {task.scenario or 'mixed'}\n"
            f"Average score: {overall}\n\n"
            f"Assessments:\n{json.dumps(assessments, indent=2)}"
        )
        result = await self._complete_json(TASK_PROMPT, user_prompt)
        return str(result.get("assessment", ""))

    async def conclude_task(self, account_id: str, task: Task) -> Task:
        """Aggregate conversation assessments and mark the task COMPLETED"""
        try:
            conversations = await self.database.get_conversations_by_request_id(account_id, task.request_id)
            overall = self.average_score(conversations)
            summary = await self._summarise_task(task, conversations, overall)

            updated = await self.database.update_task(account_id, task.request_id, {
                "status": TaskStatus.COMPLETED,
                "assessment": summary,
                "overall_score": overall,
            })
            logger.info(f"🏁 Task {task.request_id} completed with overall score {overall}")
            return updated

        except Exception as e:
            logger.exception(f"❌ Error concluding task {task.request_id} for account {account_id}: {e}")
            await self.database.update_task(account_id, task.request_id, {
                "status": TaskStatus.ERROR,
                "error_reason": f"Analysis failed: {e}",
            })
            raise AnalysisError(
                f"Error concluding task {task.request_id}",
                account_id=account_id,
                request_id=task.request_id,
            ) from e
