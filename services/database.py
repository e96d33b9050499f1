# services/database.py
"""
Durable state store for tasks and conversations.

BaseDBService owns the MongoDB and Redis connections. DatabaseService is
the write-through layer the orchestrator uses: reads prefer the cache,
writes go to the cache and then to MongoDB.
"""

from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
import redis.asyncio as aioredis
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from loguru import logger

from config import settings
from core.exceptions import TaskNotFoundError
from models.simulation import (
    Task,
    SimulationConversation,
    ConversationState,
    RemoteStatus,
    now_ms,
)
from services.cache_service import CacheService


class BaseDBService:
    """Shared infrastructure: MongoDB and Redis connections"""

    def __init__(self):
        self.mongo_client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self.redis: Optional[aioredis.Redis] = None

    async def initialize(self):
        """Initialize MongoDB and Redis connections"""
        try:
            self.mongo_client = AsyncIOMotorClient(
                settings.mongodb_url,
                maxPoolSize=50,
                minPoolSize=5,
                serverSelectionTimeoutMS=5000
            )
            self.db = self.mongo_client[settings.database_name]
            await self.mongo_client.admin.command("ping")

            self.redis = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=20
            )
            await self.redis.ping()

            logger.info("✅ Base database infrastructure initialized")

        except Exception as e:
            logger.exception(f"❌ Base database initialization failed: {e}")
            raise

    async def health_check(self) -> Dict[str, Any]:
        """Check health of base infrastructure"""
        health = {"status": "healthy", "components": {}}

        try:
            await self.mongo_client.admin.command("ping")
            health["components"]["mongodb"] = {"status": "healthy"}
        except Exception as e:
            health["components"]["mongodb"] = {"status": "unhealthy", "error": str(e)}
            health["status"] = "degraded"

        try:
            await self.redis.ping()
            health["components"]["redis"] = {"status": "healthy"}
        except Exception as e:
            health["components"]["redis"] = {"status": "unhealthy", "error": str(e)}
            health["status"] = "degraded"

        return health

    async def close(self):
        """Close all connections"""
        try:
            if self.mongo_client:
                self.mongo_client.close()
            if self.redis:
                await self.redis.close()
            logger.info("✅ Base database connections closed")
        except Exception as e:
            logger.exception(f"❌ Error closing connections: {e}")


class DatabaseService:
    """Task and conversation persistence with a redis mirror"""

    def __init__(self, db, cache: CacheService):
        self.db = db
        self.cache = cache
        self.tasks = db.tasks
        self.conversations = db.conversations

    async def initialize(self):
        """Create indexes for the hot lookups"""
        try:
            await self.tasks.create_index([("account_id", 1), ("request_id", 1)], unique=True)
            await self.tasks.create_index([("status", 1)])
            await self.conversations.create_index([("account_id", 1), ("id", 1)], unique=True)
            await self.conversations.create_index([("account_id", 1), ("request_id", 1)])
            logger.info("✅ Simulation collections indexed")
        except Exception as e:
            logger.error(f"❌ Failed to create simulation indexes: {e}")

    # ==========================================
    # TASKS
    # ==========================================

    async def get_task(self, account_id: str, request_id: str, use_cache: bool = True) -> Optional[Task]:
        if use_cache:
            cached = await self.cache.get_task(account_id, request_id)
            if cached:
                return cached

        doc = await self.tasks.find_one({"account_id": account_id, "request_id": request_id})
        if not doc:
            logger.warning(f"⚠️ Task {request_id} not found for account {account_id}")
            return None

        task = Task.from_dict(doc)
        await self.cache.add_task(task)
        return task

    async def set_task(self, task: Task) -> Task:
        task.updated_at = now_ms()
        await self.cache.add_task(task)
        await self.tasks.replace_one(
            {"account_id": task.account_id, "request_id": task.request_id},
            task.to_dict(),
            upsert=True,
        )
        return task

    async def update_task(
        self,
        account_id: str,
        request_id: str,
        data: Dict[str, Any],
        remove: Optional[List[str]] = None,
    ) -> Task:
        """Merge fields into a task; removed fields fall back to their defaults"""
        if not account_id or not request_id:
            raise TaskNotFoundError("account_id and request_id are required", account_id=account_id, request_id=request_id)

        task = await self.get_task(account_id, request_id)
        if not task:
            raise TaskNotFoundError(
                f"Task {request_id} not found for account {account_id}",
                account_id=account_id,
                request_id=request_id,
            )

        merged = task.to_dict()
        merged.update(data)
        for key in remove or []:
            merged.pop(key, None)

        return await self.set_task(Task.from_dict(merged))

    # ==========================================
    # CONVERSATIONS
    # ==========================================

    async def get_conversation(
        self,
        account_id: str,
        conversation_id: str,
        use_cache: bool = True,
        hide_logging: bool = False,
    ) -> Optional[SimulationConversation]:
        """Cache first; a store fallback does not repopulate the cache"""
        if use_cache:
            cached = await self.cache.get_conversation(account_id, conversation_id)
            if cached:
                return cached

        doc = await self.conversations.find_one({"account_id": account_id, "id": conversation_id})
        if not doc:
            if not hide_logging:
                logger.warning(f"⚠️ Conversation {conversation_id} not found for account {account_id}")
            return None

        return SimulationConversation.from_dict(doc)

    async def set_conversation(self, conversation: SimulationConversation) -> SimulationConversation:
        conversation.updated_at = now_ms()
        await self.cache.add_conversation(conversation)
        await self.conversations.replace_one(
            {"account_id": conversation.account_id, "id": conversation.id},
            conversation.to_dict(),
            upsert=True,
        )
        return conversation

    async def update_conversation(
        self,
        account_id: str,
        conversation_id: str,
        data: Dict[str, Any],
        remove: Optional[List[str]] = None,
    ) -> Optional[SimulationConversation]:
        """
        Merge fields into a conversation and write through to cache and store.
        A closed conversation stays closed whatever the update says.
        """
        current = await self.get_conversation(account_id, conversation_id)
        if not current:
            return None

        merged = current.to_dict()
        merged.update(data)
        for key in remove or []:
            merged.pop(key, None)

        if current.status == RemoteStatus.CLOSE:
            merged["status"] = RemoteStatus.CLOSE
        if current.state == ConversationState.CLOSED:
            merged["state"] = ConversationState.CLOSED

        return await self.set_conversation(SimulationConversation.from_dict(merged))

    async def get_conversations_by_request_id(self, account_id: str, request_id: str) -> List[SimulationConversation]:
        cursor = self.conversations.find({"account_id": account_id, "request_id": request_id})
        return [SimulationConversation.from_dict(doc) for doc in await cursor.to_list(length=None)]

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.db.command("ping")
            return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}
