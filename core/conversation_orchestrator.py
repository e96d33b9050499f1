# core/conversation_orchestrator.py
"""
Conversation Lifecycle Orchestrator

Owns the per-conversation state machine:

    (none) -> ACTIVE -> (PAUSED <-> ACTIVE) -> ANALYSING -> CLOSED

Inbound platform webhooks (agent content events, conversation state
changes) drive the transitions. Consumer replies are never sent from here
directly: a content event stamps a due time on the record and the
responder sweep publishes once it is due.

Error policy:
- malformed or irrelevant events are discarded with a debug log
- missing identifiers on create/close raise MissingIdentifierError
- publish, close and conclude failures are logged and returned as a
  failed ActionResult
"""

import json
from typing import Dict, List, Optional, Any

from loguru import logger

from config import settings
from core.exceptions import (
    ConversationLimitExceeded,
    ConversationNotFoundError,
    InvalidTaskStateError,
    MissingIdentifierError,
    PlatformError,
)
from models.simulation import (
    AGENT_ROLES,
    AUDIENCE_ALL,
    RICH_CONTENT_EVENT,
    ActionResult,
    ConversationConcluded,
    ConversationState,
    DialogType,
    ParticipantRole,
    RemoteStatus,
    SimulationConversation,
    Task,
    TaskStatus,
    now_ms,
)
from utils.helpers import format_time_sent, rich_to_plain, secure_randint
from utils.identity import generate_person
from utils.validators import validate_delay_range


def _dialog_type(value: Optional[str]) -> DialogType:
    try:
        return DialogType(value)
    except ValueError:
        return DialogType.MAIN


def _remote_status(value: Optional[str], default: RemoteStatus = RemoteStatus.OPEN) -> RemoteStatus:
    try:
        return RemoteStatus(value)
    except ValueError:
        return default


class ConversationOrchestrator:
    """State machine driver for synthetic conversations"""

    def __init__(self, database, cache, gateway, analysis, tracker=None):
        self.database = database
        self.cache = cache
        self.gateway = gateway
        self.analysis = analysis
        # Consumes ConversationConcluded events; wired after construction
        self.tracker = tracker

    # ==========================================
    # AGENT CONTENT EVENTS
    # ==========================================

    @staticmethod
    def find_last_agent_change(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        changes = ((payload or {}).get("body") or {}).get("changes") or []
        agent_roles = {role.value for role in AGENT_ROLES}

        for change in reversed(changes):
            role = (change.get("originatorMetadata") or {}).get("role")
            if role in agent_roles:
                return change
        return None

    @staticmethod
    def is_valid_agent_change(change: Optional[Dict[str, Any]]) -> bool:
        if not change:
            return False

        event = change.get("event") or {}
        has_content = bool(event.get("message")) or (
            event.get("type") == RICH_CONTENT_EVENT and bool(event.get("content"))
        )
        if not has_content:
            return False

        if change.get("messageAudience") != AUDIENCE_ALL:
            return False

        if change.get("role") == ParticipantRole.CONTROLLER.value:
            return False

        return True

    @staticmethod
    def compute_agent_turns(conversation: SimulationConversation) -> int:
        """Consecutive agent messages between consumer replies count as one turn"""
        if not conversation.agent_messages:
            return conversation.agent_turns + 1
        return conversation.agent_turns

    @staticmethod
    def render_agent_message(event: Dict[str, Any], sent_at: int) -> str:
        if event.get("type") == RICH_CONTENT_EVENT:
            text = "[Rich Content Message]:\n" + json.dumps(event, indent=2)
        else:
            text = rich_to_plain(event)
        return f"{text}{format_time_sent(sent_at)}"

    @staticmethod
    def compute_consumer_delay(
        is_post_survey: bool,
        delay_range: Optional[Dict[str, Any]],
        use_delays: bool = True,
    ) -> int:
        """Reply delay in milliseconds; survey answers and undelayed tasks go out on the next sweep"""
        if is_post_survey or not use_delays:
            return 0

        valid_range = validate_delay_range(delay_range)
        if valid_range:
            seconds = secure_randint(valid_range["min"], valid_range["max"] + 1)
        else:
            seconds = settings.default_consumer_delay_seconds

        return seconds * 1000

    async def process_content_event(self, account_id: str, payload: Dict[str, Any]) -> Optional[SimulationConversation]:
        """
        Buffer an agent message and schedule the consumer reply.
        Returns the updated conversation, or None when the event was discarded
        or the turn limit closed the conversation.
        """
        change = self.find_last_agent_change(payload)
        if not self.is_valid_agent_change(change):
            logger.debug(f"Discarding content event for account {account_id}: no valid agent change")
            return None

        conversation_id = change.get("conversationId")
        if not conversation_id:
            return None

        conversation = await self.database.get_conversation(account_id, conversation_id, hide_logging=True)
        if not conversation:
            return None

        if conversation.state == ConversationState.PAUSED:
            logger.debug(f"Conversation {conversation_id} is paused, ignoring agent message")
            return None

        is_post_survey = conversation.is_post_survey
        if not conversation.active and not is_post_survey:
            return None

        task = await self.database.get_task(account_id, conversation.request_id)
        if not task:
            logger.error(f"❌ Task {conversation.request_id} not found for conversation {conversation_id}")
            return None

        if task.is_terminal:
            return None

        agent_turns = self.compute_agent_turns(conversation)
        sent_count = conversation.agent_messages_sent_count + 1
        max_turns = task.max_turns or settings.default_max_turns

        if agent_turns > max_turns and not is_post_survey:
            logger.info(f"🔚 Conversation {conversation_id} reached {max_turns} agent turns, closing")
            await self.close_conversation(
                account_id,
                conversation.consumer_token,
                conversation.id,
                conversation.dialog_id,
            )
            return None

        now = now_ms()
        agent_messages = list(conversation.agent_messages)
        agent_messages.append(self.render_agent_message(change.get("event") or {}, now))

        delay = self.compute_consumer_delay(is_post_survey, task.consumer_message_delay_range, task.use_delays)

        update: Dict[str, Any] = {
            "agent_messages": agent_messages,
            "agent_turns": agent_turns,
            "agent_messages_sent_count": sent_count,
            "last_agent_message_time": now,
            "pending_consumer": True,
            "pending_consumer_respond_time": now + delay,
            "queued": True,
        }
        if conversation.dialog_id:
            update["dialog_id"] = conversation.dialog_id
            update["dialog_type"] = conversation.dialog_type
        if is_post_survey:
            update["active"] = True

        logger.info(f"💬 Agent message on {conversation_id} (turn {agent_turns}), reply due in {delay}ms")
        return await self.database.update_conversation(account_id, conversation_id, update)

    # ==========================================
    # CONSUMER MESSAGES
    # ==========================================

    async def publish_consumer_message(
        self,
        account_id: str,
        consumer_token: Optional[str],
        message: str,
        conversation_id: str,
        dialog_id: Optional[str] = None,
    ) -> ActionResult:
        """Send the synthetic consumer's reply; platform failures are logged, not raised"""
        if not message:
            raise MissingIdentifierError("message is required", account_id=account_id, conversation_id=conversation_id)
        if not conversation_id:
            raise MissingIdentifierError("conversation_id is required", account_id=account_id)

        try:
            conversation = await self.database.get_conversation(account_id, conversation_id)
            if not conversation:
                return ActionResult.failure("conversation not found")

            if conversation.status == RemoteStatus.CLOSE:
                return ActionResult.failure("conversation is closed")

            target_dialog = conversation.dialog_id or dialog_id or conversation_id
            app_token = await self.gateway.get_app_token(account_id)
            if not app_token:
                raise MissingIdentifierError("app token unavailable", account_id=account_id)

            ack = await self.gateway.publish_message(
                account_id,
                app_token,
                consumer_token or conversation.consumer_token,
                conversation_id,
                target_dialog,
                message,
            )

            await self.database.update_conversation(account_id, conversation_id, {
                "agent_messages": [],
                "pending_consumer": False,
                "queued": False,
            })

            logger.info(f"📤 Consumer message published on {conversation_id}")
            return ActionResult.success(ack)

        except Exception as e:
            logger.error(f"❌ Failed to publish consumer message for account {account_id}, conversation {conversation_id}: {e}")
            return ActionResult.failure(str(e))

    # ==========================================
    # CREATION
    # ==========================================

    async def get_consumer_jwt(self, account_id: str, ext_consumer_id: Optional[str] = None) -> Dict[str, Optional[str]]:
        app_token = await self.gateway.get_app_token(account_id)
        if not app_token:
            raise MissingIdentifierError("app token unavailable", account_id=account_id)
        return await self.gateway.register_consumer(account_id, app_token, ext_consumer_id)

    async def create_conversation(self, task: Task) -> str:
        """Open a new remote conversation for the task and record it as ACTIVE"""
        account_id, request_id = task.account_id, task.request_id
        if not account_id or not request_id:
            raise MissingIdentifierError("account_id and request_id are required", account_id=account_id, request_id=request_id)

        details = await self.cache.get_active_conversation_details(account_id, request_id)
        limit = await self.cache.get_max_conversation_limit(request_id)
        current = details["request"]

        if current >= limit:
            reason = f"Conversation limit exceeded: {current} of {limit} conversations already in flight"
            await self.database.update_task(account_id, request_id, {
                "status": TaskStatus.ERROR,
                "error_reason": reason,
            })
            logger.error(f"❌ {reason} for task {request_id}")
            raise ConversationLimitExceeded(reason, account_id=account_id, request_id=request_id)

        person = generate_person() if task.use_fake_names else None
        consumer = await self.get_consumer_jwt(account_id, person.ext_consumer_id if person else None)

        app_token = await self.gateway.get_app_token(account_id)
        if not app_token:
            raise MissingIdentifierError("app token unavailable", account_id=account_id)

        profile = {
            "brand_id": task.brand_id,
            "scenario": task.scenario,
            "persona": task.persona,
        }
        if person:
            profile.update({
                "first_name": person.first_name,
                "last_name": person.last_name,
                "email": person.email,
            })

        conversation_id = await self.gateway.create_conversation(
            account_id, app_token, consumer["consumer_token"], task.skill_id, profile
        )
        if not conversation_id:
            raise PlatformError("Platform did not return a conversation id", account_id=account_id, request_id=request_id)

        await self.cache.increment_task_conversation_count(request_id)

        conversation = SimulationConversation(
            id=conversation_id,
            account_id=account_id,
            request_id=request_id,
            consumer_token=consumer["consumer_token"],
            consumer_id=consumer.get("lp_consumer_id"),
            ext_consumer_id=consumer.get("ext_consumer_id"),
            consumer_name=person.full_name if person else None,
            skill_id=task.skill_id,
            scenario=task.scenario,
            persona=task.persona,
        )
        await self.database.set_conversation(conversation)

        latest = await self.database.get_task(account_id, request_id) or task
        await self.database.update_task(account_id, request_id, {
            "in_flight_conversations": latest.in_flight_conversations + 1,
            "total_conversations": latest.total_conversations + 1,
            "conversation_ids": latest.conversation_ids + [conversation_id],
        })

        logger.info(f"✅ Conversation {conversation_id} created for task {request_id}")
        return conversation_id

    # ==========================================
    # CLOSING
    # ==========================================

    async def close_conversation(
        self,
        account_id: str,
        consumer_token: Optional[str],
        conversation_id: str,
        dialog_id: Optional[str] = None,
    ) -> ActionResult:
        """
        Close the whole conversation, or only the given dialog (which moves
        the conversation on to its post-conversation survey).
        """
        if not account_id:
            raise MissingIdentifierError("account_id is required", conversation_id=conversation_id)
        if not consumer_token:
            raise MissingIdentifierError("consumer token is required", account_id=account_id, conversation_id=conversation_id)
        if not conversation_id:
            raise MissingIdentifierError("conversation_id is required", account_id=account_id)

        try:
            app_token = await self.gateway.get_app_token(account_id)
        except PlatformError as e:
            logger.error(f"❌ Could not obtain app token to close {conversation_id}: {e}")
            return ActionResult.failure(str(e))

        if not app_token:
            raise MissingIdentifierError("app token unavailable", account_id=account_id, conversation_id=conversation_id)

        try:
            ack = await self.gateway.close_conversation(account_id, app_token, consumer_token, conversation_id, dialog_id)
            logger.info(f"🔒 Close requested for {conversation_id}" + (f" (dialog {dialog_id})" if dialog_id else ""))
            return ActionResult.success(ack)
        except Exception as e:
            logger.error(f"❌ Failed to close conversation {conversation_id} for account {account_id}: {e}")
            return ActionResult.failure(str(e))

    async def end_conversation(self, conversation: SimulationConversation) -> ActionResult:
        """Consumer-initiated end: close the main dialog, or the whole conversation once in the survey"""
        dialog_id = None if conversation.is_post_survey else conversation.dialog_id
        return await self.close_conversation(
            conversation.account_id,
            conversation.consumer_token,
            conversation.id,
            dialog_id,
        )

    async def stop_conversation(self, account_id: str, conversation_id: str) -> ActionResult:
        conversation = await self.database.get_conversation(account_id, conversation_id)
        if not conversation:
            raise ConversationNotFoundError(
                f"No conversation {conversation_id} for account {account_id}",
                account_id=account_id,
                conversation_id=conversation_id,
            )

        logger.info(f"🛑 Stopping conversation {conversation_id} for account {account_id}")
        return await self.close_conversation(
            account_id,
            conversation.consumer_token,
            conversation.id,
            conversation.dialog_id,
        )

    # ==========================================
    # PAUSE / RESUME
    # ==========================================

    async def _set_state(self, account_id: str, conversation_id: str, state: ConversationState) -> SimulationConversation:
        conversation = await self.database.get_conversation(account_id, conversation_id)
        if not conversation:
            raise ConversationNotFoundError(
                f"No conversation {conversation_id} for account {account_id}",
                account_id=account_id,
                conversation_id=conversation_id,
            )

        if conversation.state in (ConversationState.ANALYSING, ConversationState.CLOSED):
            raise InvalidTaskStateError(
                f"Conversation {conversation_id} is {conversation.state.value}",
                account_id=account_id,
                conversation_id=conversation_id,
            )

        return await self.database.update_conversation(account_id, conversation_id, {"state": state})

    async def pause_conversation(self, account_id: str, conversation_id: str) -> SimulationConversation:
        conversation = await self._set_state(account_id, conversation_id, ConversationState.PAUSED)
        logger.info(f"⏸️ Conversation {conversation_id} paused")
        return conversation

    async def resume_conversation(self, account_id: str, conversation_id: str) -> SimulationConversation:
        conversation = await self._set_state(account_id, conversation_id, ConversationState.ACTIVE)
        logger.info(f"▶️ Conversation {conversation_id} resumed")
        return conversation

    # ==========================================
    # CONCLUSION
    # ==========================================

    async def conclude_conversation(self, account_id: str, conversation_id: str) -> ActionResult:
        """
        Idempotent finalisation. The conversation id is added to the task's
        completed set at most once; a repeat, or a task that already ended,
        reports a duplicate event.
        """
        try:
            conversation = await self.database.get_conversation(account_id, conversation_id)
            if not conversation:
                return ActionResult.failure("conversation not found")

            request_id = conversation.request_id
            task = await self.database.get_task(account_id, request_id)
            if not task:
                return ActionResult.failure("task not found")

            if task.is_terminal:
                logger.info(f"ℹ️ Task {request_id} is {task.status.value}, skipping conclusion of {conversation_id}")
                return ActionResult.success(ConversationConcluded(account_id, request_id, conversation_id, duplicate=True))

            await self.database.update_conversation(account_id, conversation_id, {"state": ConversationState.ANALYSING})

            if conversation_id in task.completed_conv_ids:
                logger.info(f"ℹ️ Conversation {conversation_id} already concluded for task {request_id}")
                return ActionResult.success(ConversationConcluded(account_id, request_id, conversation_id, duplicate=True))

            completed_ids = task.completed_conv_ids + [conversation_id]
            await self.database.update_task(account_id, request_id, {
                "completed_conv_ids": completed_ids,
                "completed_conversations": len(completed_ids),
            })

            await self.analysis.conclude_conversation(account_id, request_id, conversation_id)

            logger.info(f"✅ Conversation {conversation_id} concluded ({len(completed_ids)}/{task.max_conversations})")
            return ActionResult.success(ConversationConcluded(account_id, request_id, conversation_id))

        except Exception as e:
            logger.error(f"❌ Error concluding conversation {conversation_id} for account {account_id}: {e}")
            return ActionResult.failure(str(e))

    # ==========================================
    # REMOTE STATE CHANGES
    # ==========================================

    async def handle_state_change(self, account_id: str, payload: Dict[str, Any]) -> List[ConversationConcluded]:
        """Apply a batch of remote conversation state changes"""
        changes = ((payload or {}).get("body") or {}).get("changes") or []
        concluded = []

        for change in changes:
            result = change.get("result") or {}
            conversation_id = result.get("convId")
            if not conversation_id:
                continue

            try:
                conversation = await self.database.get_conversation(account_id, conversation_id, hide_logging=True)
                if not conversation:
                    continue

                details = result.get("conversationDetails") or {}

                if details.get("stage") == RemoteStatus.CLOSE.value:
                    event = await self._on_remote_close(account_id, conversation)
                    concluded.append(event)
                else:
                    await self._on_dialog_change(account_id, conversation, details)

            except Exception as e:
                logger.error(f"❌ Failed to apply state change for {conversation_id} on account {account_id}: {e}")

        return concluded

    async def _on_remote_close(self, account_id: str, conversation: SimulationConversation) -> ConversationConcluded:
        outcome = await self.conclude_conversation(account_id, conversation.id)

        await self.cache.update_conversation(account_id, conversation.id, {
            "status": RemoteStatus.CLOSE,
            "stage": RemoteStatus.CLOSE,
            "active": False,
        })

        if outcome.ok:
            event = outcome.detail
        else:
            event = ConversationConcluded(account_id, conversation.request_id, conversation.id)

        if self.tracker:
            await self.tracker.on_conversation_concluded(event)

        return event

    async def _on_dialog_change(self, account_id: str, conversation: SimulationConversation, details: Dict[str, Any]) -> None:
        dialogs = details.get("dialogs") or []
        open_dialog = next((d for d in dialogs if d.get("state") == RemoteStatus.OPEN.value), None)

        if not open_dialog or not open_dialog.get("dialogId"):
            return
        if open_dialog["dialogId"] == conversation.dialog_id:
            return

        dialog_type = _dialog_type(open_dialog.get("dialogType"))
        update: Dict[str, Any] = {
            "dialog_id": open_dialog["dialogId"],
            "dialog_type": dialog_type,
            "stage": _remote_status(details.get("stage")),
        }
        if dialog_type == DialogType.POST_SURVEY:
            update["active"] = True

        await self.database.update_conversation(account_id, conversation.id, update)
        logger.info(f"🔀 Conversation {conversation.id} moved to {dialog_type.value} dialog {open_dialog['dialogId']}")
