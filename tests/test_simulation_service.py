# tests/test_simulation_service.py
"""Task submission, spawning, stopping and the full lifecycle through state-change webhooks"""

import pytest

from core.exceptions import PlatformError, TaskNotFoundError
from models.simulation import ConversationState, RemoteStatus, TaskStatus
from tests.factories import ACCOUNT_ID, REQUEST_ID, state_change


@pytest.fixture
def conversation_ids(gateway):
    ids = [f"conv-{letter}" for letter in "abcdef"]
    gateway.create_conversation.side_effect = list(ids)
    return ids


class TestCreateTask:

    async def test_initial_batch_fills_concurrency(self, simulation_service, cache, conversation_ids):
        task = await simulation_service.create_task(ACCOUNT_ID, {
            "name": "Refund flow",
            "max_conversations": 3,
            "concurrent_conversations": 2,
        })

        assert task.status == TaskStatus.IN_PROGRESS
        assert task.request_id.startswith(f"task_{ACCOUNT_ID}_")
        assert task.conversation_ids == conversation_ids[:2]
        assert task.in_flight_conversations == 2
        assert await cache.get_max_conversation_limit(task.request_id) == 3

    async def test_invalid_request_is_rejected(self, simulation_service, gateway):
        with pytest.raises(ValueError):
            await simulation_service.create_task(ACCOUNT_ID, {"max_conversations": -1})

        gateway.create_conversation.assert_not_awaited()

    async def test_first_conversation_failure_abandons_task(self, simulation_service, gateway):
        gateway.create_conversation.side_effect = PlatformError("skill not found", status_code=400)

        task = await simulation_service.create_task(ACCOUNT_ID, {"max_conversations": 2})

        assert task.status == TaskStatus.ERROR
        assert "Failed to create first conversation" in task.error_reason


class TestSpawning:

    async def test_not_in_progress_spawns_nothing(self, simulation_service, seed_task, gateway):
        task = await seed_task(status=TaskStatus.PENDING)

        assert await simulation_service.process_next_simulations(task, 2) == []
        gateway.create_conversation.assert_not_awaited()

    async def test_limit_stops_the_batch(self, simulation_service, seed_task, cache, database, conversation_ids):
        task = await seed_task(max_conversations=3, concurrent_conversations=3)
        await cache.set_max_conversation_limit(REQUEST_ID, 1)

        created = await simulation_service.process_next_simulations(task, 3)

        assert created == conversation_ids[:1]
        assert (await database.get_task(ACCOUNT_ID, REQUEST_ID)).status == TaskStatus.ERROR

    async def test_spawn_respects_free_capacity(self, simulation_service, seed_task, seed_conversation, conversation_ids):
        task = await seed_task(max_conversations=3, concurrent_conversations=2)
        await seed_conversation("existing")

        created = await simulation_service.process_next_simulations(task, 5)

        assert created == conversation_ids[:1]


class TestLifecycle:

    async def test_task_runs_to_completion(self, simulation_service, orchestrator, gateway, database, conversation_ids):
        task = await simulation_service.create_task(ACCOUNT_ID, {
            "max_conversations": 3,
            "concurrent_conversations": 2,
        })
        request_id = task.request_id

        await orchestrator.handle_state_change(ACCOUNT_ID, state_change("conv-a", stage="CLOSE"))
        assert gateway.create_conversation.await_count == 3

        await orchestrator.handle_state_change(ACCOUNT_ID, state_change("conv-b", stage="CLOSE"))
        await orchestrator.handle_state_change(ACCOUNT_ID, state_change("conv-b", stage="CLOSE"))
        assert (await database.get_task(ACCOUNT_ID, request_id)).status == TaskStatus.IN_PROGRESS

        await orchestrator.handle_state_change(ACCOUNT_ID, state_change("conv-c", stage="CLOSE"))

        finished = await database.get_task(ACCOUNT_ID, request_id)
        assert finished.status == TaskStatus.COMPLETED
        assert finished.completed_conversations == 3
        assert sorted(finished.completed_conv_ids) == conversation_ids[:3]
        assert finished.in_flight_conversations == 0
        assert gateway.create_conversation.await_count == 3


class TestStopAndQueries:

    async def test_stop_closes_open_conversations(self, simulation_service, gateway, cache, database, conversation_ids):
        task = await simulation_service.create_task(ACCOUNT_ID, {
            "max_conversations": 4,
            "concurrent_conversations": 2,
        })

        stopped = await simulation_service.stop_task(ACCOUNT_ID, task.request_id)

        assert stopped.status == TaskStatus.CANCELLED
        assert gateway.close_conversation.await_count == 2
        assert await cache.get_conversations_by_request_id(ACCOUNT_ID, task.request_id) == []
        for conversation_id in conversation_ids[:2]:
            conversation = await database.get_conversation(ACCOUNT_ID, conversation_id, use_cache=False)
            assert conversation.state == ConversationState.CLOSED
            assert conversation.status == RemoteStatus.CLOSE

    async def test_stop_unknown_task(self, simulation_service):
        with pytest.raises(TaskNotFoundError):
            await simulation_service.stop_task(ACCOUNT_ID, "missing")

    async def test_get_task_includes_progress(self, simulation_service, seed_task, seed_conversation):
        await seed_task()
        await seed_conversation("conv-1")

        result = await simulation_service.get_task(ACCOUNT_ID, REQUEST_ID)

        assert result["task"]["request_id"] == REQUEST_ID
        assert result["progress"]["inflight_conversations"] == 1

    async def test_manual_conclusion(self, simulation_service, seed_task, seed_conversation):
        await seed_task(status=TaskStatus.AGENT_ANALYSIS)
        await seed_conversation("conv-1", status=RemoteStatus.CLOSE, assessment={"score": 6})
        await seed_conversation("conv-2", status=RemoteStatus.CLOSE, assessment={"score": 9})

        task = await simulation_service.conclude_task(ACCOUNT_ID, REQUEST_ID)

        assert task.status == TaskStatus.COMPLETED
        assert task.overall_score == 7.5
