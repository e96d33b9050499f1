# services/cache_service.py
"""
Fast cache for hot simulation state.
Mirrors active tasks and conversations in redis with a TTL; the document
store stays the source of truth.
"""

import json
from typing import List, Dict, Any, Optional
from loguru import logger

from config import settings
from models.simulation import (
    Task,
    SimulationConversation,
    RemoteStatus,
    DialogType,
)


class CacheService:
    """
    Cache service for conversation and task records
    Generic operations log and swallow redis failures; callers treat a
    failed read as a cache miss
    """

    def __init__(self, redis_client, conversation_ttl: Optional[int] = None, task_ttl: Optional[int] = None):
        self.redis = redis_client
        self.conversation_ttl = conversation_ttl or settings.conversation_cache_ttl
        self.task_ttl = task_ttl or settings.task_cache_ttl

    # ==========================================
    # KEYS
    # ==========================================

    @staticmethod
    def conversation_key(account_id: str, conversation_id: str) -> str:
        return f"conversation_{account_id}:{conversation_id}"

    @staticmethod
    def task_key(account_id: str, request_id: str) -> str:
        return f"task_{account_id}:{request_id}"

    @staticmethod
    def task_conversations_key(account_id: str, request_id: str) -> str:
        return f"task_conversations_{account_id}:{request_id}"

    @staticmethod
    def open_conversations_key(account_id: str) -> str:
        return f"open_conversations_{account_id}"

    @staticmethod
    def conversation_count_key(request_id: str) -> str:
        return f"c_count_{request_id}"

    @staticmethod
    def max_conversations_key(request_id: str) -> str:
        return f"max_conversations_{request_id}"

    @staticmethod
    def app_token_key(account_id: str) -> str:
        return f"CR_{account_id}_connector_app_jwt"

    @staticmethod
    def consumer_token_key(ext_consumer_id: str) -> str:
        return f"token_{ext_consumer_id}"

    @staticmethod
    def domains_key(account_id: str) -> str:
        return f"CSDS_{account_id}"

    # ==========================================
    # GENERIC OPERATIONS
    # ==========================================

    async def get(self, key: str) -> Optional[Any]:
        """Get single value from cache"""
        try:
            value = await self.redis.get(key)
            if value is None:
                return None

            if isinstance(value, bytes):
                value = value.decode('utf-8')

            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value

        except Exception as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> None:
        """Set single value in cache with TTL"""
        try:
            if isinstance(value, (dict, list)):
                serialized_value = json.dumps(value)
            else:
                serialized_value = str(value)

            await self.redis.setex(key, int(ttl), serialized_value)

        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        """Delete key from cache"""
        try:
            await self.redis.delete(key)
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")

    async def get_keys_pattern(self, pattern: str) -> List[str]:
        """Get all keys matching pattern"""
        try:
            keys = await self.redis.keys(pattern)
            return [key.decode('utf-8') if isinstance(key, bytes) else key for key in keys]
        except Exception as e:
            logger.warning(f"Cache get_keys_pattern failed for {pattern}: {e}")
            return []

    async def add_to_set(self, key: str, member: str, ttl: int = 3600) -> None:
        """Add a member to a set and refresh the set's TTL"""
        try:
            await self.redis.sadd(key, member)
            await self.redis.expire(key, int(ttl))
        except Exception as e:
            logger.warning(f"Cache sadd failed for {key}: {e}")

    async def remove_from_set(self, key: str, *members: str) -> None:
        if not members:
            return
        try:
            await self.redis.srem(key, *members)
        except Exception as e:
            logger.warning(f"Cache srem failed for {key}: {e}")

    async def get_set_members(self, key: str) -> List[str]:
        try:
            members = await self.redis.smembers(key)
            return sorted(m.decode('utf-8') if isinstance(m, bytes) else m for m in members)
        except Exception as e:
            logger.warning(f"Cache smembers failed for {key}: {e}")
            return []

    async def count_set(self, key: str) -> int:
        try:
            return int(await self.redis.scard(key))
        except Exception as e:
            logger.warning(f"Cache scard failed for {key}: {e}")
            return 0

    # ==========================================
    # CONVERSATIONS
    # ==========================================

    async def get_conversation(self, account_id: str, conversation_id: str) -> Optional[SimulationConversation]:
        data = await self.get(self.conversation_key(account_id, conversation_id))
        if not isinstance(data, dict):
            return None
        return SimulationConversation.from_dict(data)

    async def add_conversation(self, conversation: SimulationConversation) -> None:
        """Store the record and keep the per-task and open-conversation indexes in step"""
        account_id = conversation.account_id
        await self.set(
            self.conversation_key(account_id, conversation.id),
            conversation.to_dict(),
            ttl=self.conversation_ttl,
        )

        if conversation.request_id:
            await self.add_to_set(
                self.task_conversations_key(account_id, conversation.request_id),
                conversation.id,
                ttl=self.conversation_ttl,
            )

        open_key = self.open_conversations_key(account_id)
        if conversation.status == RemoteStatus.OPEN:
            await self.add_to_set(open_key, conversation.id, ttl=self.conversation_ttl)
        else:
            await self.remove_from_set(open_key, conversation.id)

    async def update_conversation(
        self, account_id: str, conversation_id: str, data: Dict[str, Any]
    ) -> Optional[SimulationConversation]:
        """Merge fields into a cached conversation; no-op on a cache miss"""
        current = await self.get(self.conversation_key(account_id, conversation_id))
        if not isinstance(current, dict):
            return None

        current.update(data)
        conversation = SimulationConversation.from_dict(current)
        await self.add_conversation(conversation)
        return conversation

    async def remove_conversation(self, account_id: str, conversation_id: str) -> None:
        conversation = await self.get_conversation(account_id, conversation_id)
        await self.delete(self.conversation_key(account_id, conversation_id))

        await self.remove_from_set(self.open_conversations_key(account_id), conversation_id)
        if conversation and conversation.request_id:
            await self.remove_from_set(
                self.task_conversations_key(account_id, conversation.request_id), conversation_id
            )

    async def _load_conversations(self, pattern: str) -> List[SimulationConversation]:
        conversations = []
        for key in await self.get_keys_pattern(pattern):
            data = await self.get(key)
            if isinstance(data, dict):
                conversations.append(SimulationConversation.from_dict(data))
        return conversations

    async def get_conversations_by_request_id(self, account_id: str, request_id: str) -> List[SimulationConversation]:
        """Load a task's conversations through its index set; expired members are pruned"""
        index_key = self.task_conversations_key(account_id, request_id)
        conversations, expired = [], []

        for conversation_id in await self.get_set_members(index_key):
            conversation = await self.get_conversation(account_id, conversation_id)
            if conversation is None:
                expired.append(conversation_id)
            elif conversation.request_id == request_id:
                conversations.append(conversation)

        await self.remove_from_set(index_key, *expired)
        return conversations

    async def get_all_active_conversations(self) -> List[SimulationConversation]:
        """Conversations the responder sweep should look at, across all accounts"""
        conversations = await self._load_conversations("conversation_*")
        return [
            c for c in conversations
            if c.status == RemoteStatus.OPEN or c.dialog_type == DialogType.POST_SURVEY
        ]

    async def get_active_conversation_details(self, account_id: str, request_id: str) -> Dict[str, int]:
        """Open conversation counts for the account and for one task"""
        conversations = await self.get_conversations_by_request_id(account_id, request_id)
        return {
            "account": await self.count_set(self.open_conversations_key(account_id)),
            "request": len([c for c in conversations if c.status == RemoteStatus.OPEN]),
        }

    # ==========================================
    # TASKS
    # ==========================================

    async def get_task(self, account_id: str, request_id: str) -> Optional[Task]:
        data = await self.get(self.task_key(account_id, request_id))
        if not isinstance(data, dict):
            return None
        return Task.from_dict(data)

    async def add_task(self, task: Task) -> None:
        await self.set(self.task_key(task.account_id, task.request_id), task.to_dict(), ttl=self.task_ttl)

    async def update_task(self, account_id: str, request_id: str, data: Dict[str, Any]) -> Optional[Task]:
        current = await self.get(self.task_key(account_id, request_id))
        if not isinstance(current, dict):
            return None

        current.update(data)
        task = Task.from_dict(current)
        await self.add_task(task)
        return task

    # ==========================================
    # TASK COUNTERS
    # ==========================================

    async def set_max_conversation_limit(self, request_id: str, limit: int) -> None:
        await self.set(self.max_conversations_key(request_id), int(limit), ttl=self.task_ttl)

    async def get_max_conversation_limit(self, request_id: str) -> int:
        value = await self.get(self.max_conversations_key(request_id))
        try:
            return int(value) if value is not None else settings.max_conversations_limit
        except (TypeError, ValueError):
            return settings.max_conversations_limit

    async def get_task_conversation_count(self, request_id: str) -> int:
        value = await self.get(self.conversation_count_key(request_id))
        try:
            return int(value or 0)
        except (TypeError, ValueError):
            return 0

    async def increment_task_conversation_count(self, request_id: str) -> int:
        key = self.conversation_count_key(request_id)
        try:
            count = await self.redis.incr(key)
            await self.redis.expire(key, self.task_ttl)
            return int(count)
        except Exception as e:
            logger.warning(f"Cache incr failed for {key}: {e}")
            return await self.get_task_conversation_count(request_id)

    async def decrement_task_conversation_count(self, request_id: str) -> int:
        key = self.conversation_count_key(request_id)
        try:
            count = int(await self.redis.decr(key))
            if count < 0:
                await self.redis.setex(key, self.task_ttl, 0)
                count = 0
            return count
        except Exception as e:
            logger.warning(f"Cache decr failed for {key}: {e}")
            return await self.get_task_conversation_count(request_id)
