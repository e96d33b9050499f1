# services/consumer_agent.py
"""
Synthetic consumer.
Writes the customer's next message given the scenario, the persona and
the conversation so far.
"""

from typing import Dict, List, Optional

from loguru import logger
from openai import AsyncOpenAI

from config import settings
from models.simulation import Task, SimulationConversation, END_CONVERSATION_MARKER
from utils.helpers import secure_randint

FALLBACK_REPLIES = [
    "Thanks, could you explain that a bit more?",
    "Okay, what do I need to do next?",
    "I see. Is there anything else I should know?",
    "That makes sense. How long will that take?",
    "Alright, can you confirm that for me?",
]


class ConsumerAgent:
    """LLM-backed synthetic customer"""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.model = model or settings.openai_model
        self.client = client

        if self.client is None and settings.openai_api_key:
            self.client = AsyncOpenAI(api_key=settings.openai_api_key)

        if not self.client:
            logger.warning("⚠️ Consumer agent using canned replies - no OpenAI key")

    def _system_prompt(self, conversation: SimulationConversation, task: Optional[Task]) -> str:
        scenario = conversation.scenario or (task.scenario if task else None) or "You need help with a recent order."
        persona = conversation.persona or (task.persona if task else None) or "A polite, busy customer."
        name = conversation.consumer_name or "the customer"

        return f"""You are {name}, a customer chatting with a support agent over web messaging.

Scenario: {scenario}
Persona: {persona}

Rules:
- Reply with one short chat message, as the customer, in plain text
- Stay in character and never reveal you are simulated
- If the agent offers options, pick one of them
- When your issue is resolved or the agent says goodbye, add {END_CONVERSATION_MARKER} at the end of your message"""

    @staticmethod
    def _history(conversation: SimulationConversation) -> List[Dict[str, str]]:
        history = []
        for message in conversation.messages[-30:]:
            role = "assistant" if message.get("role") == "consumer" else "user"
            history.append({"role": role, "content": message.get("text", "")})
        return history

    def _fallback_reply(self, conversation: SimulationConversation, task: Optional[Task]) -> str:
        max_turns = (task.max_turns if task and task.max_turns else settings.default_max_turns)
        if conversation.customer_turns + 1 >= max_turns:
            return f"Thanks for your help, that's everything. {END_CONVERSATION_MARKER}"
        return FALLBACK_REPLIES[secure_randint(0, len(FALLBACK_REPLIES))]

    async def generate_reply(self, conversation: SimulationConversation, task: Optional[Task], agent_text: str) -> str:
        """Next customer message; raises on LLM failure"""
        if not self.client:
            return self._fallback_reply(conversation, task)

        messages = [{"role": "system", "content": self._system_prompt(conversation, task)}]
        messages.extend(self._history(conversation))
        messages.append({"role": "user", "content": agent_text})

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=200,
            temperature=settings.consumer_temperature,
        )
        reply = (response.choices[0].message.content or "").strip()
        if not reply:
            raise ValueError("Empty reply from model")
        return reply
