# core/simulation_service.py
"""
Simulation task management: submission, spawning conversations up to the
task's concurrency, stopping and manual conclusion.
"""

import asyncio
from typing import Dict, List, Optional, Any

from loguru import logger

from config import settings
from core.exceptions import ConversationLimitExceeded, SimulationError, TaskNotFoundError
from models.simulation import (
    ConversationState,
    RemoteStatus,
    Task,
    TaskStatus,
)
from utils.helpers import generate_request_id
from utils.validators import validate_task_request


class SimulationService:
    """Entry point for task-level operations"""

    def __init__(self, database, cache, orchestrator, tracker, spawn_interval_ms: Optional[int] = None):
        self.database = database
        self.cache = cache
        self.orchestrator = orchestrator
        self.tracker = tracker
        self.spawn_interval_ms = (
            settings.conversation_spawn_interval_ms if spawn_interval_ms is None else spawn_interval_ms
        )
        self._task_locks: Dict[str, asyncio.Lock] = {}

    # ==========================================
    # SUBMISSION
    # ==========================================

    async def create_task(self, account_id: str, request: Dict[str, Any]) -> Task:
        """Persist a new task and queue its first batch of conversations"""
        values = validate_task_request(request)
        task = Task(account_id=account_id, request_id=generate_request_id(account_id), **values)

        await self.cache.set_max_conversation_limit(
            task.request_id, min(task.max_conversations, settings.max_conversations_limit)
        )
        await self.database.set_task(task)
        task = await self.database.update_task(account_id, task.request_id, {"status": TaskStatus.IN_PROGRESS})

        logger.info(
            f"📋 Task {task.request_id} created: {task.max_conversations} conversations, "
            f"{task.concurrent_conversations} concurrent"
        )

        initial = min(settings.max_queuing, task.concurrent_conversations)
        await self.process_next_simulations(task, initial)

        return await self.database.get_task(account_id, task.request_id) or task

    # ==========================================
    # SPAWNING
    # ==========================================

    async def _available_slots(self, task: Task) -> int:
        progress = await self.tracker.get_task_progress(task)
        if progress is None:
            return min(task.concurrent_conversations, task.max_conversations)
        return progress.conversations_to_queue

    async def process_next_simulations(self, task: Task, count: int = 1) -> List[str]:
        """Create up to `count` conversations, never beyond the task's free capacity"""
        lock = self._task_locks.setdefault(task.request_id, asyncio.Lock())

        async with lock:
            current = await self.database.get_task(task.account_id, task.request_id)
            if not current or current.status != TaskStatus.IN_PROGRESS:
                logger.info(f"⏭️ Task {task.request_id} is not in progress, nothing to spawn")
                return []

            to_create = min(count, await self._available_slots(current))
            created: List[str] = []

            for index in range(to_create):
                if index:
                    await asyncio.sleep(self.spawn_interval_ms / 1000)

                try:
                    created.append(await self.orchestrator.create_conversation(current))

                except ConversationLimitExceeded as e:
                    logger.warning(f"⚠️ {e.message}")
                    break

                except Exception as e:
                    logger.error(f"❌ Failed to create conversation for task {current.request_id}: {e}")
                    if current.total_conversations == 0 and not created:
                        await self.abandon_task(current, f"Failed to create first conversation: {e}")
                    break

            return created

    # ==========================================
    # STOPPING
    # ==========================================

    async def stop_task(
        self,
        account_id: str,
        request_id: str,
        status: TaskStatus = TaskStatus.CANCELLED,
        reason: Optional[str] = None,
    ) -> Task:
        """Mark the task terminal and close every open conversation"""
        task = await self.database.get_task(account_id, request_id)
        if not task:
            raise TaskNotFoundError(f"Task {request_id} not found", account_id=account_id, request_id=request_id)

        update: Dict[str, Any] = {"status": status}
        if reason:
            update["error_reason"] = reason
        task = await self.database.update_task(account_id, request_id, update)

        conversations = await self.cache.get_conversations_by_request_id(account_id, request_id)
        for conversation in conversations:
            if conversation.status == RemoteStatus.OPEN and conversation.consumer_token:
                try:
                    await self.orchestrator.close_conversation(account_id, conversation.consumer_token, conversation.id)
                except SimulationError as e:
                    logger.warning(f"⚠️ Could not close {conversation.id} while stopping task: {e.message}")

            await self.database.update_conversation(account_id, conversation.id, {
                "state": ConversationState.CLOSED,
                "status": RemoteStatus.CLOSE,
                "active": False,
                "pending_consumer": False,
                "queued": False,
            })
            await self.cache.remove_conversation(account_id, conversation.id)

        self._task_locks.pop(request_id, None)
        logger.info(f"🛑 Task {request_id} stopped with status {status.value} ({len(conversations)} conversations closed)")
        return task

    async def abandon_task(self, task: Task, reason: str) -> Task:
        logger.error(f"❌ Abandoning task {task.request_id}: {reason}")
        return await self.stop_task(task.account_id, task.request_id, status=TaskStatus.ERROR, reason=reason)

    # ==========================================
    # QUERIES AND MANUAL CONCLUSION
    # ==========================================

    async def get_task(self, account_id: str, request_id: str) -> Dict[str, Any]:
        task = await self.database.get_task(account_id, request_id)
        if not task:
            raise TaskNotFoundError(f"Task {request_id} not found", account_id=account_id, request_id=request_id)

        progress = await self.tracker.get_task_progress(task)
        return {
            "task": task.to_dict(),
            "progress": progress.to_dict() if progress else None,
        }

    async def conclude_task(self, account_id: str, request_id: str) -> Task:
        """Run task analysis on demand, e.g. after a crash left the task in AGENT_ANALYSIS"""
        task = await self.database.get_task(account_id, request_id)
        if not task:
            raise TaskNotFoundError(f"Task {request_id} not found", account_id=account_id, request_id=request_id)

        task = await self.database.update_task(account_id, request_id, {"status": TaskStatus.AGENT_ANALYSIS})
        return await self.tracker.analysis.conclude_task(account_id, task)
