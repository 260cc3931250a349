"""
FastAPI Application — service surface of the step engine.

Provides:
- Manual enrollment and domain event intake (follow, tag, keyword, block)
- Operator controls on single enrollments (pause, resume, exit, jump)
- Scenario disable with the configured in-flight policy
- Funnel / cohort statistics
- The resumption scheduler, run as a background task in the lifespan
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import get_settings
from core.bootstrap import build_engine
from core.errors import (
    EngineError, EnrollmentNotFound, InvalidTransition, ScenarioDisabled,
    ScenarioNotFound, TransitionConflict,
)
from models.schemas import ExitReason, Scenario

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
engine = build_engine(_settings_boot)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await engine.store.open()
    await engine.scheduler.start()
    logger.info("stepflow_started",
                store_backend=settings.database.store_backend,
                sweep_interval_s=settings.engine.sweep_interval_seconds)
    yield

    await engine.scheduler.stop()
    await engine.store.close()
    logger.info("stepflow_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="StepFlow API",
    description="Step-automation engine: enrollments, scheduled resumption, funnel stats",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class EnrollRequest(BaseModel):
    scenario_id: str
    subject_id: str


class EventRequest(BaseModel):
    event_type: str
    subject_id: str
    payload: dict[str, Any] = {}


class ExitRequest(BaseModel):
    reason: ExitReason = ExitReason.MANUAL


class JumpRequest(BaseModel):
    step_index: int


def _http_error(e: EngineError) -> HTTPException:
    if isinstance(e, (ScenarioNotFound, EnrollmentNotFound)):
        return HTTPException(404, str(e))
    if isinstance(e, (ScenarioDisabled, InvalidTransition, TransitionConflict)):
        return HTTPException(409, str(e))
    return HTTPException(400, str(e))


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": type(engine.store).__name__,
        "scheduler_running": engine.scheduler.running,
    }


# ══════════════════════════════════════════════════════════════
#  SCENARIOS (configuration surface)
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/scenarios")
async def upsert_scenario(scenario: Scenario):
    stored = await engine.store.upsert_scenario(scenario)
    return stored.model_dump(mode="json")


@app.post("/api/v1/scenarios/{scenario_id}/disable")
async def disable_scenario(scenario_id: str):
    try:
        changed = await engine.state_machine.disable_scenario(scenario_id)
    except EngineError as e:
        raise _http_error(e)
    return {
        "scenario_id": scenario_id,
        "policy": "exit" if engine.state_machine.exit_on_disable else "pause",
        "affected": [e.id for e in changed],
    }


# ══════════════════════════════════════════════════════════════
#  ENROLLMENT & EVENTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/enroll")
async def enroll(req: EnrollRequest):
    try:
        enrollment = await engine.dispatcher.enroll(req.scenario_id, req.subject_id)
    except EngineError as e:
        raise _http_error(e)
    if enrollment is None:
        raise HTTPException(409, "subject already has an open enrollment in this scenario")
    return enrollment.model_dump(mode="json")


@app.post("/api/v1/events")
async def receive_event(req: EventRequest):
    created = await engine.dispatcher.on_event(req.event_type, req.subject_id, req.payload)
    return {
        "event_type": req.event_type,
        "subject_id": req.subject_id,
        "enrollments": [e.model_dump(mode="json") for e in created],
    }


@app.post("/api/v1/sweep")
async def sweep():
    return await engine.scheduler.sweep()


# ══════════════════════════════════════════════════════════════
#  OPERATOR CONTROLS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/enrollments/{enrollment_id}")
async def get_enrollment(enrollment_id: str):
    enrollment = await engine.store.get_enrollment(enrollment_id)
    if not enrollment:
        raise HTTPException(404, "Enrollment not found")
    logs = await engine.store.list_step_logs(enrollment_id=enrollment_id)
    return {
        **enrollment.model_dump(mode="json"),
        "logs": [log.model_dump(mode="json") for log in logs],
    }


@app.post("/api/v1/enrollments/{enrollment_id}/pause")
async def pause_enrollment(enrollment_id: str):
    try:
        enrollment = await engine.state_machine.pause(enrollment_id)
    except EngineError as e:
        raise _http_error(e)
    return enrollment.model_dump(mode="json")


@app.post("/api/v1/enrollments/{enrollment_id}/resume")
async def resume_enrollment(enrollment_id: str):
    try:
        enrollment = await engine.state_machine.resume(enrollment_id)
    except EngineError as e:
        raise _http_error(e)
    return enrollment.model_dump(mode="json")


@app.post("/api/v1/enrollments/{enrollment_id}/exit")
async def exit_enrollment(enrollment_id: str, req: Optional[ExitRequest] = None):
    reason = req.reason if req else ExitReason.MANUAL
    try:
        enrollment = await engine.state_machine.exit(enrollment_id, reason)
    except EngineError as e:
        raise _http_error(e)
    return enrollment.model_dump(mode="json")


@app.post("/api/v1/enrollments/{enrollment_id}/jump")
async def jump_enrollment(enrollment_id: str, req: JumpRequest):
    try:
        enrollment = await engine.state_machine.jump_to_step(enrollment_id, req.step_index)
    except EngineError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(422, str(e))
    return enrollment.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  STATS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/scenarios/stats")
async def all_scenario_stats():
    return {"scenarios": await engine.stats.all_scenarios_summary()}


@app.get("/api/v1/scenarios/{scenario_id}/stats")
async def scenario_stats(scenario_id: str):
    try:
        return await engine.stats.scenario_stats(scenario_id)
    except EngineError as e:
        raise _http_error(e)
