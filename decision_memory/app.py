from datetime import datetime, timezone
import asyncio
import logging
import time as _time
from os import getenv
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from decision_memory.config import (
	get_llm_provider,
	get_profile_cron,
	get_store_idle_check_minutes,
	is_ingestion_worker_enabled,
	is_langfuse_enabled,
	is_llm_configured,
	is_scheduler_enabled,
)
from decision_memory.dependencies.langfuse_client import ping_langfuse
from decision_memory.dependencies.redis_client import get_redis_client
from decision_memory.feedback_loop.orchestrator import DecisionMemory, build_default_decision_memory
from decision_memory.schemas import (
	ActivityRequest,
	ContextResponse,
	DeadLetterItem,
	DeadLetterListResponse,
	ProfileResponse,
	PublishResponse,
	RebuildResponse,
	ReplayResponse,
	RetrievedDecision,
	RetrieveRequest,
	RetrieveResponse,
	StoreStatusResponse,
)
from decision_memory.services.retrieval import RetrievalQuery


app = FastAPI(title="Decision Memory API", version="0.1.0")

logger = logging.getLogger("decision_memory.api")
_pkg_logger = logging.getLogger("decision_memory")
if not _pkg_logger.handlers:
	_handler = logging.StreamHandler()
	_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
	_pkg_logger.addHandler(_handler)
_level_name = getenv("LOG_LEVEL", "INFO").upper()
_pkg_logger.setLevel(getattr(logging, _level_name, logging.INFO))
_pkg_logger.propagate = False

_memory: Optional[DecisionMemory] = None
_scheduler: Optional[AsyncIOScheduler] = None


def get_decision_memory() -> DecisionMemory:
	global _memory
	if _memory is None:
		_memory = build_default_decision_memory()
	return _memory


# =============================
# Scheduled jobs
# =============================


async def _run_profile_build() -> None:
	outcome = await get_decision_memory().rebuild_profile()
	logger.info("[sched.profile] status=%s detail=%s", outcome.status.value, outcome.to_dict())


async def _run_idle_check() -> None:
	state = await get_decision_memory().lifecycle.ensure_stopped_if_idle()
	logger.info("[sched.idle_check] state=%s", state.value)


def _start_scheduler() -> None:
	global _scheduler
	if _scheduler is not None:
		return
	if not is_scheduler_enabled():
		logger.info("[sched] disabled via env; not starting scheduler")
		return
	cron = get_profile_cron()
	try:
		trigger = CronTrigger.from_crontab(cron, timezone="UTC")
	except ValueError as exc:
		logger.error("[sched] invalid PROFILE_CRON=%r: %s", cron, exc)
		return
	_scheduler = AsyncIOScheduler(timezone="UTC")
	_scheduler.add_job(
		_run_profile_build,
		trigger,
		id="profile_build",
		max_instances=1,
		coalesce=True,
	)
	_scheduler.add_job(
		_run_idle_check,
		"interval",
		minutes=max(1, get_store_idle_check_minutes()),
		id="store_idle_check",
		max_instances=1,
		coalesce=True,
	)
	_scheduler.start()
	logger.info("[sched] started profile_build cron=%r and idle check every %sm", cron, get_store_idle_check_minutes())


def _stop_scheduler() -> None:
	global _scheduler
	if _scheduler is not None:
		_scheduler.shutdown(wait=False)
		_scheduler = None


@app.on_event("startup")
async def _on_startup() -> None:
	memory = get_decision_memory()
	await memory.start(run_worker=is_ingestion_worker_enabled())
	_start_scheduler()
	logger.info("[startup] store_state=%s", memory.lifecycle.state.value)


@app.on_event("shutdown")
async def _on_shutdown() -> None:
	_stop_scheduler()
	if _memory is not None:
		await _memory.shutdown()


# Request/response logging middleware (minimal, no bodies)
@app.middleware("http")
async def _log_requests(request: Request, call_next):
	start = _time.perf_counter()
	path = request.url.path
	method = request.method
	client = request.client.host if request.client else "-"
	try:
		response = await call_next(request)
		status = getattr(response, "status_code", 200)
	except Exception as exc:  # pragma: no cover
		elapsed_ms = int(((_time.perf_counter() - start) * 1000))
		logger.exception("[http] %s %s error=%s client=%s latency_ms=%s", method, path, exc.__class__.__name__, client, elapsed_ms)
		raise
	elapsed_ms = int(((_time.perf_counter() - start) * 1000))
	logger.info("[http] %s %s status=%s client=%s latency_ms=%s", method, path, status, client, elapsed_ms)
	return response


# =============================
# Health
# =============================


@app.get("/health")
def health() -> dict:
	return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@app.get("/health/full")
async def health_full(memory: DecisionMemory = Depends(get_decision_memory)) -> dict:
	checks: Dict[str, Any] = {}

	provider = get_llm_provider()
	checks["llm"] = {"provider": provider, "configured": is_llm_configured()}
	checks["langfuse"] = {"enabled": is_langfuse_enabled(), "ok": ping_langfuse() if is_langfuse_enabled() else None}

	# Redis check (optional)
	redis_ok = None
	redis_error: Optional[str] = None
	try:
		redis_client = get_redis_client()
		if redis_client is not None:
			redis_ok = bool(redis_client.ping())
	except Exception as exc:
		redis_ok = False
		redis_error = str(exc)
	checks["redis"] = {"ok": redis_ok, "error": redis_error}

	# Chroma is only expected to answer while the lifecycle says it is up
	state = memory.lifecycle.state
	chroma_ok = None
	chroma_error: Optional[str] = None
	if memory.lifecycle.is_available:
		try:
			chroma_ok = bool(await asyncio.to_thread(memory.store.ping))
		except Exception as exc:
			chroma_ok = False
			chroma_error = str(exc)
	checks["chroma"] = {"ok": chroma_ok, "error": chroma_error, "store_state": state.value}

	try:
		checks["transport"] = {
			"ok": True,
			"depth": memory.transport.depth(),
			"dead_letters": memory.transport.dead_letter_count(),
		}
	except Exception as exc:
		checks["transport"] = {"ok": False, "error": str(exc)}

	# Informational: a missing profile only means no build has completed yet
	checks["profile"] = await asyncio.to_thread(memory.cache.describe)

	overall_ok = (
		(redis_ok is None or redis_ok)
		and (chroma_ok is None or chroma_ok)
		and checks["transport"]["ok"]
	)
	return {
		"status": "ok" if overall_ok else "degraded",
		"time": datetime.now(timezone.utc).isoformat(),
		"checks": checks,
	}


# =============================
# Decision events
# =============================


@app.post("/v1/decisions", response_model=PublishResponse, status_code=202)
async def publish_decision(
	body: Dict[str, Any] = Body(...),
	memory: DecisionMemory = Depends(get_decision_memory),
) -> PublishResponse:
	# Raw body on purpose: malformed events are dead-lettered by the worker, not rejected here
	return PublishResponse(accepted=memory.publish(body))


@app.post("/v1/retrieve", response_model=RetrieveResponse)
async def retrieve_decisions(
	body: RetrieveRequest,
	memory: DecisionMemory = Depends(get_decision_memory),
) -> RetrieveResponse:
	timeout = body.timeout_ms / 1000.0 if body.timeout_ms else None
	result = await memory.retrieve(
		RetrievalQuery(text=body.text, category=body.category, top_k=body.top_k, min_score=body.min_score),
		timeout=timeout,
	)
	return RetrieveResponse(
		status=result.status.value,
		reason=result.reason,
		decisions=[RetrievedDecision.from_scored(item) for item in result.decisions],
	)


@app.post("/v1/context", response_model=ContextResponse)
async def recall_context(
	body: RetrieveRequest,
	memory: DecisionMemory = Depends(get_decision_memory),
) -> ContextResponse:
	timeout = body.timeout_ms / 1000.0 if body.timeout_ms else None
	context = await memory.recall_context(
		RetrievalQuery(text=body.text, category=body.category, top_k=body.top_k, min_score=body.min_score),
		timeout=timeout,
	)
	return ContextResponse(
		source=context.source.value,
		text=context.text,
		profile_version=context.profile_version,
		retrieval_reason=context.retrieval_reason,
		decisions=[RetrievedDecision.from_scored(item) for item in context.decisions],
	)


# =============================
# Preference profile
# =============================


@app.get("/v1/profile", response_model=ProfileResponse)
def read_profile(memory: DecisionMemory = Depends(get_decision_memory)) -> ProfileResponse:
	profile = memory.read_profile()
	if profile is None:
		return ProfileResponse(status="no_profile")
	return ProfileResponse(status="ok", profile=profile)


@app.post("/v1/profile/rebuild", response_model=RebuildResponse)
async def rebuild_profile(memory: DecisionMemory = Depends(get_decision_memory)) -> RebuildResponse:
	outcome = await memory.rebuild_profile()
	return RebuildResponse(**outcome.to_dict())


# =============================
# Store lifecycle
# =============================


@app.post("/v1/activity", status_code=202)
async def signal_activity(
	body: Optional[ActivityRequest] = None,
	memory: DecisionMemory = Depends(get_decision_memory),
) -> dict:
	memory.signal_activity((body or ActivityRequest()).source)
	return {"accepted": True, "store_state": memory.lifecycle.state.value}


def _store_status(memory: DecisionMemory) -> StoreStatusResponse:
	return StoreStatusResponse(
		state=memory.lifecycle.state.value,
		available=memory.lifecycle.is_available,
		start_in_progress=memory.lifecycle.start_in_progress,
	)


@app.get("/v1/store/status", response_model=StoreStatusResponse)
async def store_status(memory: DecisionMemory = Depends(get_decision_memory)) -> StoreStatusResponse:
	return _store_status(memory)


@app.post("/v1/store/start", response_model=StoreStatusResponse, status_code=202)
async def store_start(memory: DecisionMemory = Depends(get_decision_memory)) -> StoreStatusResponse:
	memory.lifecycle.request_start()
	return _store_status(memory)


# =============================
# Dead letters (operator)
# =============================


@app.get("/v1/dead-letters", response_model=DeadLetterListResponse)
def list_dead_letters(
	limit: int = Query(default=100, ge=1, le=1000),
	memory: DecisionMemory = Depends(get_decision_memory),
) -> DeadLetterListResponse:
	entries = memory.transport.list_dead_letters(limit=limit)
	items = [
		DeadLetterItem(
			message_id=entry.message_id,
			reason=entry.reason,
			attempts=entry.attempts,
			dead_lettered_at=entry.dead_lettered_at,
			body=entry.body,
		)
		for entry in entries
	]
	return DeadLetterListResponse(items=items, count=len(items))


@app.post("/v1/dead-letters/{message_id}/replay", response_model=ReplayResponse)
def replay_dead_letter(
	message_id: str,
	memory: DecisionMemory = Depends(get_decision_memory),
) -> ReplayResponse:
	if not memory.transport.replay_dead_letter(message_id):
		raise HTTPException(status_code=404, detail="dead letter not found")
	return ReplayResponse(message_id=message_id, replayed=True)


@app.delete("/v1/dead-letters/{message_id}", response_model=ReplayResponse)
def purge_dead_letter(
	message_id: str,
	memory: DecisionMemory = Depends(get_decision_memory),
) -> ReplayResponse:
	if not memory.transport.purge_dead_letter(message_id):
		raise HTTPException(status_code=404, detail="dead letter not found")
	return ReplayResponse(message_id=message_id, replayed=False)
