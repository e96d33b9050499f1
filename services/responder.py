# services/responder.py
"""
Responder sweep.

Scans active conversations on a fixed tick and publishes the synthetic
consumer's reply once its due time has passed. Post-survey dialogs that
stall are closed after a timeout.
"""

import asyncio
from typing import Optional, Set

from loguru import logger

from config import settings
from models.simulation import (
    CLOSED_CONVERSATION_MESSAGE,
    END_CONVERSATION_MARKER,
    ConversationState,
    SimulationConversation,
    Task,
    now_ms,
)

MAX_LLM_STRIKES = 3
GIVE_UP_REPLY = "Sorry, I have to go now. Thanks for your help."


def should_respond(conversation: SimulationConversation, now: int) -> bool:
    if not conversation.pending_consumer or not conversation.pending_consumer_respond_time:
        return False
    if conversation.pending_consumer_respond_time > now:
        return False
    if not conversation.agent_messages:
        return False
    return conversation.agent_messages[-1] != CLOSED_CONVERSATION_MESSAGE


def survey_timed_out(conversation: SimulationConversation, now: int, timeout_ms: int) -> bool:
    return conversation.is_post_survey and now - conversation.updated_at > timeout_ms


class ResponderService:
    """Periodic sweep that turns due agent messages into consumer replies"""

    def __init__(
        self,
        database,
        cache,
        orchestrator,
        consumer_agent,
        interval_ms: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        max_backoff_ms: Optional[int] = None,
        post_survey_timeout_ms: Optional[int] = None,
    ):
        self.database = database
        self.cache = cache
        self.orchestrator = orchestrator
        self.consumer_agent = consumer_agent
        self.interval_ms = interval_ms or settings.responder_interval_ms
        self.max_backoff_ms = max_backoff_ms or settings.responder_max_backoff_ms
        self.post_survey_timeout_ms = post_survey_timeout_ms or settings.post_survey_timeout_ms
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.responder_max_concurrency)
        self._in_progress: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self.is_running = False

    # ==========================================
    # LIFECYCLE
    # ==========================================

    async def start(self):
        if self.is_running:
            return
        self.is_running = True
        self._task = asyncio.create_task(self.run())
        logger.info(f"🔁 Responder sweep started (every {self.interval_ms}ms)")

    async def stop(self):
        self.is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("🛑 Responder sweep stopped")

    async def run(self):
        delay_ms = self.interval_ms

        while self.is_running:
            try:
                await self.sweep_once()
                delay_ms = self.interval_ms
            except Exception as e:
                delay_ms = min(delay_ms * 2, self.max_backoff_ms)
                logger.error(f"❌ Responder sweep error, backing off {delay_ms}ms: {e}")

            await asyncio.sleep(delay_ms / 1000)

    # ==========================================
    # SWEEP
    # ==========================================

    async def sweep_once(self) -> int:
        """One pass over active conversations; returns how many were acted on"""
        conversations = await self.cache.get_all_active_conversations()
        if not conversations:
            return 0

        now = now_ms()
        results = await asyncio.gather(*(self._guarded(c, now) for c in conversations))
        handled = sum(1 for r in results if r)
        if handled:
            logger.debug(f"Responder handled {handled}/{len(conversations)} conversations")
        return handled

    async def _guarded(self, conversation: SimulationConversation, now: int) -> bool:
        if conversation.id in self._in_progress:
            return False

        async with self._semaphore:
            self._in_progress.add(conversation.id)
            try:
                return await self.process_conversation(conversation, now)
            except Exception as e:
                logger.error(f"❌ Responder failed on conversation {conversation.id}: {e}")
                return False
            finally:
                self._in_progress.discard(conversation.id)

    async def process_conversation(self, conversation: SimulationConversation, now: int) -> bool:
        if conversation.state != ConversationState.ACTIVE:
            return False

        if survey_timed_out(conversation, now, self.post_survey_timeout_ms):
            logger.info(f"⏱️ Post-survey on {conversation.id} timed out, closing")
            result = await self.orchestrator.end_conversation(conversation)
            return result.ok

        if not should_respond(conversation, now):
            return False

        task = await self.database.get_task(conversation.account_id, conversation.request_id)
        if not task or task.is_terminal:
            return False

        return await self.respond(conversation, task)

    async def _generate(self, conversation: SimulationConversation, task: Task, agent_text: str) -> Optional[str]:
        try:
            return await self.consumer_agent.generate_reply(conversation, task, agent_text)
        except Exception as e:
            strikes = conversation.llm_error_count + 1
            logger.error(f"❌ Consumer reply generation failed on {conversation.id} (strike {strikes}): {e}")

            await self.database.update_conversation(conversation.account_id, conversation.id, {
                "llm_error_count": strikes,
            })
            if strikes < MAX_LLM_STRIKES:
                return None
            return f"{GIVE_UP_REPLY} {END_CONVERSATION_MARKER}"

    async def respond(self, conversation: SimulationConversation, task: Task) -> bool:
        agent_messages = list(conversation.agent_messages)
        reply = await self._generate(conversation, task, "\n".join(agent_messages))
        if reply is None:
            return False

        ends_conversation = END_CONVERSATION_MARKER in reply
        text = reply.replace(END_CONVERSATION_MARKER, "").strip()

        if text:
            result = await self.orchestrator.publish_consumer_message(
                conversation.account_id,
                conversation.consumer_token,
                text,
                conversation.id,
                conversation.dialog_id,
            )
            if not result.ok:
                return False
        else:
            await self.database.update_conversation(conversation.account_id, conversation.id, {
                "agent_messages": [],
                "pending_consumer": False,
                "queued": False,
            })

        sent_at = now_ms()
        transcript = list(conversation.messages)
        transcript.extend({"role": "agent", "text": m, "time": sent_at} for m in agent_messages)
        if text:
            transcript.append({"role": "consumer", "text": text, "time": sent_at})

        updated = await self.database.update_conversation(conversation.account_id, conversation.id, {
            "messages": transcript,
            "customer_turns": conversation.customer_turns + (1 if text else 0),
        })

        if ends_conversation:
            logger.info(f"👋 Synthetic consumer ended conversation {conversation.id}")
            await self.orchestrator.end_conversation(updated or conversation)

        return True
