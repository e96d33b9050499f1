# ===== main.py - CONVERSATION SIMULATOR SERVICE =====
# Standard library imports
import sys
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Dict, Any

# Third-party imports
import uvicorn
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

# Local imports
from config import settings
from core.conversation_orchestrator import ConversationOrchestrator
from core.exceptions import (
    ConversationLimitExceeded,
    ConversationNotFoundError,
    InvalidTaskStateError,
    MissingIdentifierError,
    PlatformError,
    SimulationError,
    TaskNotFoundError,
)
from core.simulation_service import SimulationService
from core.task_tracker import TaskProgressTracker
from models.requests import TaskRequest
from services.analysis_service import AnalysisService
from services.cache_service import CacheService
from services.consumer_agent import ConsumerAgent
from services.database import BaseDBService, DatabaseService
from services.platform_gateway import PlatformGateway
from services.responder import ResponderService

VERSION = "1.0.0"

logger.remove()
logger.add(sys.stdout, level=settings.log_level)

# ===== GLOBAL SERVICES =====

base_db = None
cache_service = None
db_service = None
platform_gateway = None
analysis_service = None
consumer_agent = None
orchestrator = None
task_tracker = None
simulation_service = None
responder_service = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown"""
    global base_db, cache_service, db_service, platform_gateway, analysis_service
    global consumer_agent, orchestrator, task_tracker, simulation_service, responder_service

    logger.info("🚀 Starting Conversation Simulator...")
    settings.log_configuration_status()

    try:
        base_db = BaseDBService()
        await base_db.initialize()

        cache_service = CacheService(base_db.redis)
        db_service = DatabaseService(base_db.db, cache_service)
        await db_service.initialize()
        logger.info("✅ Database service initialized")

        platform_gateway = PlatformGateway(cache_service)
        await platform_gateway.initialize()

        analysis_service = AnalysisService(db_service, cache_service)
        consumer_agent = ConsumerAgent()

        orchestrator = ConversationOrchestrator(db_service, cache_service, platform_gateway, analysis_service)
        task_tracker = TaskProgressTracker(db_service, cache_service, analysis_service)
        simulation_service = SimulationService(db_service, cache_service, orchestrator, task_tracker)

        orchestrator.tracker = task_tracker
        task_tracker.spawner = simulation_service.process_next_simulations
        logger.info("✅ Orchestrator and task tracker wired")

        if settings.responder_enabled:
            responder_service = ResponderService(db_service, cache_service, orchestrator, consumer_agent)
            await responder_service.start()

        logger.info("✅ Conversation Simulator ready")

    except Exception as e:
        logger.exception(f"❌ Startup failed: {e}")
        raise

    yield

    logger.info("🛑 Shutting down Conversation Simulator...")
    try:
        if responder_service:
            await responder_service.stop()
        if platform_gateway:
            await platform_gateway.close()
        if base_db:
            await base_db.close()
        logger.info("✅ Shutdown complete")
    except Exception as e:
        logger.error(f"❌ Shutdown error: {e}")


# ===== CREATE APP =====

app = FastAPI(
    title="Conversation Simulator",
    description="Synthetic customer conversations for load and QA testing of live messaging agents",
    version=VERSION,
    lifespan=lifespan
)


def _require(service, name: str):
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not available")
    return service


def _http_error(error: SimulationError) -> HTTPException:
    if isinstance(error, (TaskNotFoundError, ConversationNotFoundError)):
        status = 404
    elif isinstance(error, (ConversationLimitExceeded, InvalidTaskStateError)):
        status = 409
    elif isinstance(error, MissingIdentifierError):
        status = 400
    elif isinstance(error, PlatformError):
        status = 502
    else:
        status = 500
    return HTTPException(status_code=status, detail=error.message)


# ===== CORE ENDPOINTS =====

@app.get("/")
async def root():
    return {
        "message": "Conversation Simulator API",
        "status": "running",
        "version": VERSION,
        "services": {
            "database": db_service is not None,
            "cache": cache_service is not None,
            "platform_gateway": platform_gateway is not None,
            "analysis": analysis_service is not None,
            "responder": responder_service is not None and responder_service.is_running,
        }
    }


@app.get("/health")
async def health_check():
    try:
        infrastructure = await base_db.health_check() if base_db else {"status": "unavailable"}
        return {
            "status": "healthy" if infrastructure.get("status") == "healthy" else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION,
            "infrastructure": infrastructure,
            "responder": "running" if responder_service and responder_service.is_running else "stopped",
        }
    except Exception as e:
        logger.error(f"Health check error: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "error": str(e)})


# ===== PLATFORM WEBHOOKS =====

async def _read_payload(request: Request) -> Dict[str, Any]:
    try:
        return await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")


@app.post("/webhook/{account_id}/content-event")
async def content_event_webhook(account_id: str, request: Request):
    """Agent messages from the messaging platform"""
    service = _require(orchestrator, "orchestrator")
    payload = await _read_payload(request)

    try:
        conversation = await service.process_content_event(account_id, payload)
        return {"status": "ok", "processed": conversation is not None}
    except Exception as e:
        logger.error(f"❌ Content event webhook error for account {account_id}: {e}")
        return {"status": "error", "processed": False}


@app.post("/webhook/{account_id}/state")
async def state_change_webhook(account_id: str, request: Request):
    """Conversation state changes from the messaging platform"""
    service = _require(orchestrator, "orchestrator")
    payload = await _read_payload(request)

    try:
        concluded = await service.handle_state_change(account_id, payload)
        return {"status": "ok", "concluded": [event.conversation_id for event in concluded]}
    except Exception as e:
        logger.error(f"❌ State change webhook error for account {account_id}: {e}")
        return {"status": "error", "concluded": []}


# ===== SIMULATION TASKS =====

@app.post("/simulation/{account_id}/tasks")
async def create_task(account_id: str, body: TaskRequest):
    service = _require(simulation_service, "simulation service")
    try:
        task = await service.create_task(account_id, body.to_task_values())
        return task.to_dict()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SimulationError as e:
        raise _http_error(e)


@app.get("/simulation/{account_id}/tasks/{request_id}")
async def get_task(account_id: str, request_id: str):
    service = _require(simulation_service, "simulation service")
    try:
        return await service.get_task(account_id, request_id)
    except SimulationError as e:
        raise _http_error(e)


@app.post("/simulation/{account_id}/tasks/{request_id}/stop")
async def stop_task(account_id: str, request_id: str):
    service = _require(simulation_service, "simulation service")
    try:
        task = await service.stop_task(account_id, request_id)
        return task.to_dict()
    except SimulationError as e:
        raise _http_error(e)


@app.post("/simulation/{account_id}/tasks/{request_id}/conclude")
async def conclude_task(account_id: str, request_id: str):
    service = _require(simulation_service, "simulation service")
    try:
        task = await service.conclude_task(account_id, request_id)
        return task.to_dict()
    except SimulationError as e:
        raise _http_error(e)


# ===== CONVERSATIONS =====

@app.post("/simulation/{account_id}/conversations/{conversation_id}/pause")
async def pause_conversation(account_id: str, conversation_id: str):
    service = _require(orchestrator, "orchestrator")
    try:
        conversation = await service.pause_conversation(account_id, conversation_id)
        return conversation.to_dict()
    except SimulationError as e:
        raise _http_error(e)


@app.post("/simulation/{account_id}/conversations/{conversation_id}/resume")
async def resume_conversation(account_id: str, conversation_id: str):
    service = _require(orchestrator, "orchestrator")
    try:
        conversation = await service.resume_conversation(account_id, conversation_id)
        return conversation.to_dict()
    except SimulationError as e:
        raise _http_error(e)


@app.post("/simulation/{account_id}/conversations/{conversation_id}/stop")
async def stop_conversation(account_id: str, conversation_id: str):
    service = _require(orchestrator, "orchestrator")
    try:
        result = await service.stop_conversation(account_id, conversation_id)
        return {"status": "ok" if result.ok else "error", "error": result.error}
    except SimulationError as e:
        raise _http_error(e)


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.environment == "development")
