# tests/conftest.py
"""
Shared fixtures: in-memory stand-ins for redis and the mongo collections,
so services run against real CacheService/DatabaseService code paths.
"""

import copy
import fnmatch
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from config import settings
from core.conversation_orchestrator import ConversationOrchestrator
from core.simulation_service import SimulationService
from core.task_tracker import TaskProgressTracker
from services.analysis_service import AnalysisService
from services.cache_service import CacheService
from services.database import DatabaseService
from services.platform_gateway import PlatformGateway

from tests.factories import ACCOUNT_ID, make_conversation, make_task


# ==========================================
# IN-MEMORY BACKENDS
# ==========================================

class FakeRedis:
    """The subset of redis.asyncio used by CacheService, decode_responses=True"""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.sets: Dict[str, set] = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = str(value)
        self.ttls[key] = int(ttl)
        return True

    async def set(self, key, value, ex=None):
        self.store[key] = str(value)
        if ex:
            self.ttls[key] = int(ex)
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def keys(self, pattern):
        return [key for key in self.store if fnmatch.fnmatchcase(key, pattern)]

    async def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    async def decr(self, key):
        value = int(self.store.get(key, 0)) - 1
        self.store[key] = str(value)
        return value

    async def expire(self, key, ttl):
        self.ttls[key] = int(ttl)
        return key in self.store or key in self.sets

    async def sadd(self, key, *members):
        current = self.sets.setdefault(key, set())
        added = len(set(members) - current)
        current.update(members)
        return added

    async def srem(self, key, *members):
        current = self.sets.get(key, set())
        removed = len(current & set(members))
        current.difference_update(members)
        return removed

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def scard(self, key):
        return len(self.sets.get(key, set()))

    async def ping(self):
        return True

    async def close(self):
        return None


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self.docs = docs

    async def to_list(self, length=None):
        docs = self.docs if length is None else self.docs[:length]
        return [copy.deepcopy(doc) for doc in docs]


class FakeCollection:
    """Equality filters, replace/update with upsert, and find cursors"""

    def __init__(self):
        self.docs: List[Dict[str, Any]] = []
        self.indexes: List[Any] = []

    @staticmethod
    def _matches(doc, query):
        return all(doc.get(key) == value for key, value in (query or {}).items())

    def _index_of(self, query) -> Optional[int]:
        for index, doc in enumerate(self.docs):
            if self._matches(doc, query):
                return index
        return None

    async def find_one(self, query):
        index = self._index_of(query)
        if index is None:
            return None
        return {"_id": f"oid-{index}", **copy.deepcopy(self.docs[index])}

    async def replace_one(self, query, document, upsert=False):
        index = self._index_of(query)
        if index is not None:
            self.docs[index] = copy.deepcopy(document)
        elif upsert:
            self.docs.append(copy.deepcopy(document))

    async def update_one(self, query, update, upsert=False):
        index = self._index_of(query)
        if index is None:
            if not upsert:
                return
            self.docs.append(dict(query))
            index = len(self.docs) - 1
        self.docs[index].update(copy.deepcopy(update.get("$set", {})))

    def find(self, query=None):
        return FakeCursor([copy.deepcopy(doc) for doc in self.docs if self._matches(doc, query)])

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return f"index_{len(self.indexes)}"


class FakeMongoDB:
    def __init__(self):
        self.tasks = FakeCollection()
        self.conversations = FakeCollection()

    async def command(self, name):
        return {"ok": 1}


# ==========================================
# FIXTURES
# ==========================================

@pytest.fixture(autouse=True)
def offline_settings(monkeypatch):
    """Never reach a real LLM or sleep between spawns"""
    monkeypatch.setattr(settings, "openai_api_key", None)
    monkeypatch.setattr(settings, "conversation_spawn_interval_ms", 0)


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def mongo_db():
    return FakeMongoDB()


@pytest.fixture
def cache(redis_client):
    return CacheService(redis_client)


@pytest.fixture
def database(mongo_db, cache):
    return DatabaseService(mongo_db, cache)


@pytest.fixture
def gateway():
    """Platform gateway with canned successful responses"""
    mock_gateway = AsyncMock(spec=PlatformGateway)
    mock_gateway.get_app_token.return_value = "app-token"
    mock_gateway.register_consumer.return_value = {
        "consumer_token": "consumer-token",
        "lp_consumer_id": "lp-consumer-1",
        "ext_consumer_id": "ext-consumer-1",
    }
    mock_gateway.create_conversation.return_value = "conv-new"
    mock_gateway.publish_message.return_value = [{"code": 200}]
    mock_gateway.close_conversation.return_value = [{"code": 200}]
    return mock_gateway


@pytest.fixture
def analysis(database, cache):
    """Real analysis service without an LLM client"""
    return AnalysisService(database, cache)


@pytest.fixture
def tracker(database, cache, analysis):
    return TaskProgressTracker(database, cache, analysis)


@pytest.fixture
def orchestrator(database, cache, gateway, analysis, tracker):
    return ConversationOrchestrator(database, cache, gateway, analysis, tracker)


@pytest.fixture
def simulation_service(database, cache, orchestrator, tracker):
    service = SimulationService(database, cache, orchestrator, tracker, spawn_interval_ms=0)
    tracker.spawner = service.process_next_simulations
    return service


@pytest.fixture
def seed_task(database):
    async def _seed(**overrides):
        return await database.set_task(make_task(**overrides))
    return _seed


@pytest.fixture
def seed_conversation(database):
    async def _seed(conversation_id="conv-1", **overrides):
        return await database.set_conversation(make_conversation(conversation_id, **overrides))
    return _seed


@pytest.fixture
def account_id():
    return ACCOUNT_ID
