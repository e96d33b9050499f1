# core/task_tracker.py
"""
Task Progress Tracker

Aggregates the conversation records of a task into capacity metrics and
decides what happens next: queue one more conversation, conclude the task,
or nothing. Conclusion of a single conversation arrives as a
ConversationConcluded event from the orchestrator.
"""

from typing import Awaitable, Callable, List, Optional

from loguru import logger

from models.simulation import (
    ConversationConcluded,
    NextAction,
    RemoteStatus,
    SimulationConversation,
    Task,
    TaskProgress,
    TaskStatus,
    now_ms,
)

Spawner = Callable[[Task, int], Awaitable[object]]


def compute_task_progress(
    task: Task,
    conversations: List[SimulationConversation],
    now: Optional[int] = None,
) -> TaskProgress:
    now = now if now is not None else now_ms()

    pending = sum(
        1 for c in conversations
        if c.pending_consumer and (c.pending_consumer_respond_time or 0) >= now
    )
    completed = sum(1 for c in conversations if c.status == RemoteStatus.CLOSE)
    inflight = sum(1 for c in conversations if c.status == RemoteStatus.OPEN)

    remaining = task.max_conversations - (completed + inflight)
    max_additional = task.concurrent_conversations - inflight

    return TaskProgress(
        pending_conversations=pending,
        completed_conversations=completed,
        inflight_conversations=inflight,
        remaining_conversations=remaining,
        max_additional_conversations=max_additional,
        # Negative capacity is reported through excess_conversations instead
        conversations_to_queue=max(0, min(remaining, max_additional)),
        excess_conversations=max(0, inflight - task.concurrent_conversations),
        is_complete=completed >= task.max_conversations,
        total_conversation_records=len(conversations),
        max_conversations=task.max_conversations,
    )


def decide_next_action(task: Task, progress: Optional[TaskProgress]) -> NextAction:
    """Conclusion is checked before queueing"""
    if progress is None or task.is_terminal or task.status == TaskStatus.AGENT_ANALYSIS:
        return NextAction.NONE

    if progress.inflight_conversations == 0 and progress.remaining_conversations <= 0:
        return NextAction.CONCLUDE

    if progress.conversations_to_queue > 0:
        return NextAction.QUEUE

    return NextAction.NONE


class TaskProgressTracker:
    """Progress metrics and next-action execution for simulation tasks"""

    def __init__(self, database, cache, analysis, spawner: Optional[Spawner] = None):
        self.database = database
        self.cache = cache
        self.analysis = analysis
        self.spawner = spawner

    async def get_task_progress(self, task: Task) -> Optional[TaskProgress]:
        conversations = await self.cache.get_conversations_by_request_id(task.account_id, task.request_id)
        if not conversations:
            logger.warning(f"⚠️ No conversations recorded yet for task {task.request_id}")
            return None

        return compute_task_progress(task, conversations)

    async def next_action(self, task: Task, progress: Optional[TaskProgress]) -> NextAction:
        action = decide_next_action(task, progress)

        if action == NextAction.CONCLUDE:
            await self._conclude(task)

        elif action == NextAction.QUEUE:
            if self.spawner is None:
                logger.warning(f"⚠️ No spawner wired, cannot queue for task {task.request_id}")
            else:
                logger.info(f"➕ Queueing one conversation for task {task.request_id} ({progress.conversations_to_queue} slots free)")
                await self.spawner(task, 1)

        return action

    async def _conclude(self, task: Task) -> None:
        logger.info(f"📋 Task {task.request_id} has no conversations left, starting analysis")

        task = await self.database.update_task(task.account_id, task.request_id, {
            "status": TaskStatus.AGENT_ANALYSIS,
            "in_flight_conversations": 0,
            "conversation_ids": [],
        })

        try:
            await self.analysis.conclude_task(task.account_id, task)
        except Exception as e:
            logger.error(f"❌ Analysis failed for task {task.request_id}: {e}")

    async def on_conversation_concluded(self, event: ConversationConcluded) -> Optional[NextAction]:
        task = await self.database.get_task(event.account_id, event.request_id)
        if not task:
            logger.warning(f"⚠️ Task {event.request_id} not found after concluding {event.conversation_id}")
            return None

        if task.is_terminal:
            return NextAction.NONE

        progress = await self.get_task_progress(task)
        return await self.next_action(task, progress)
