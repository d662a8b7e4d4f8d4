"""Lifecycle control for the cost-optimised vector store.

State machine owned by :class:`LifecycleController`::

    stopped -> starting -> running -> idle-running -> stopped
                              ^            |
                              +--activity--+

Other components read :attr:`LifecycleController.state` and send activity
signals; only the controller changes state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Optional, Set

from redis.exceptions import RedisError

from decision_memory.dependencies.store_backend import (
    STATUS_AVAILABLE,
    STATUS_STARTING,
    STATUS_STOPPED,
    STATUS_STOPPING,
    StoreBackend,
    StoreBackendError,
)
from decision_memory.policies import LifecyclePolicy


logger = logging.getLogger("decision_memory.lifecycle")


class StoreState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    IDLE_RUNNING = "idle-running"


def _as_timestamp(raw: Any) -> float:
    if raw is None:
        return float("-inf")
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float("-inf")


class ActivityTracker:
    """Last-activity timestamp shared through Redis, with an in-process fallback."""

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        *,
        namespace: str = "decision_memory",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self._clock = clock
        self._key = f"{namespace}:activity:last"
        self._last: Optional[float] = None

    @property
    def shared(self) -> bool:
        return self._redis is not None

    def stamp(self) -> float:
        """Record activity in this process only."""
        now = self._clock()
        self._last = now
        return now

    def publish(self, at: float) -> None:
        """Share ``at`` through Redis. An older timestamp never replaces a newer one."""
        if self._redis is None:
            return
        try:
            if _as_timestamp(self._redis.get(self._key)) >= at:
                return
            self._redis.set(self._key, repr(at))
        except RedisError as e:
            logger.warning("[activity.touch.failed] error=%s", e)

    def touch(self) -> float:
        now = self.stamp()
        self.publish(now)
        return now

    def last_activity(self) -> Optional[float]:
        if self._redis is not None:
            try:
                raw = self._redis.get(self._key)
            except RedisError as e:
                logger.warning("[activity.read.failed] error=%s", e)
                return self._last
            if raw is None:
                return self._last
            try:
                return max(float(raw), self._last or 0.0)
            except (TypeError, ValueError):
                return self._last
        return self._last


class LifecycleController:
    def __init__(
        self,
        backend: StoreBackend,
        *,
        activity: Optional[ActivityTracker] = None,
        policy: LifecyclePolicy = LifecyclePolicy(),
        readiness_probe: Optional[Callable[[], Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._activity = activity or ActivityTracker(clock=clock)
        self._policy = policy
        self._probe_fn = readiness_probe
        self._clock = clock
        self._state = StoreState.STOPPED
        self._lock = asyncio.Lock()
        self._start_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self.starts_issued = 0

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def is_available(self) -> bool:
        return self._state in (StoreState.RUNNING, StoreState.IDLE_RUNNING)

    @property
    def start_in_progress(self) -> bool:
        return self._start_task is not None and not self._start_task.done()

    def _transition(self, new_state: StoreState, reason: str) -> None:
        if new_state is self._state:
            return
        logger.info(
            "[lifecycle.transition] from=%s to=%s reason=%s",
            self._state.value,
            new_state.value,
            reason,
        )
        self._state = new_state

    async def _backend_status(self) -> str:
        return await asyncio.to_thread(self._backend.status)

    async def _ready(self) -> bool:
        if self._probe_fn is None:
            return True
        try:
            await asyncio.to_thread(self._probe_fn)
            return True
        except Exception as e:
            logger.debug("[lifecycle.probe.failed] error=%s", e)
            return False

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------
    def _touch(self) -> None:
        """Stamp activity locally; share it through Redis off the event loop when one is running."""
        at = self._activity.stamp()
        if not self._activity.shared:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._activity.publish(at)
            return
        task = loop.create_task(asyncio.to_thread(self._activity.publish, at))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def record_activity(self, source: str = "ingestion") -> None:
        """Reset the idle timer. An idle-running store returns to running.

        Never waits on Redis while an event loop is running.
        """
        self._touch()
        if self._state is StoreState.IDLE_RUNNING:
            self._transition(StoreState.RUNNING, f"activity:{source}")

    def signal_activity(self, source: str = "user") -> None:
        """Fire-and-forget activity notification that also pre-warms a stopped store."""
        self.record_activity(source)
        if not self.is_available:
            self.request_start()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def request_start(self) -> None:
        """Begin starting the store without waiting for it.

        Needs a running event loop; outside one the request is dropped and the
        next ingestion or retrieval call asks again.
        """
        if self.is_available or self.start_in_progress:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("[lifecycle.start.no_loop] start request dropped")
            return
        self._transition(StoreState.STARTING, "start requested")
        self._start_task = loop.create_task(self._run_start())

    async def start(self) -> bool:
        """Start the store and wait until it is running.

        Idempotent: a running store returns immediately and a start already in
        flight is joined rather than repeated. Returns False if the store did
        not become ready within the start timeout.
        """
        async with self._lock:
            if self.is_available:
                return True
            if not self.start_in_progress:
                self._transition(StoreState.STARTING, "start requested")
                self._start_task = asyncio.create_task(self._run_start())
            task = self._start_task
        return await asyncio.shield(task)

    async def _run_start(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._policy.start_timeout.total_seconds()
        poll = self._policy.status_poll_interval.total_seconds()
        status = STATUS_STOPPED
        try:
            status = await self._backend_status()
            if status in (STATUS_STOPPED, STATUS_STOPPING):
                logger.info("[lifecycle.start.issue] backend_status=%s", status)
                await asyncio.to_thread(self._backend.start)
                self.starts_issued += 1
            while True:
                if status == STATUS_AVAILABLE and await self._ready():
                    self._touch()
                    self._transition(StoreState.RUNNING, "store ready")
                    return True
                if loop.time() >= deadline:
                    logger.warning(
                        "[lifecycle.start.timeout] waited=%ss backend_status=%s",
                        self._policy.start_timeout.total_seconds(),
                        status,
                    )
                    break
                await asyncio.sleep(poll)
                status = await self._backend_status()
        except StoreBackendError as e:
            logger.error("[lifecycle.start.failed] error=%s", e)
            status = STATUS_STOPPED
        except Exception:
            logger.exception("[lifecycle.start.error]")
            status = STATUS_STOPPED
        fallback = StoreState.STARTING if status == STATUS_STARTING else StoreState.STOPPED
        self._transition(fallback, "start did not complete")
        return False

    # ------------------------------------------------------------------
    # Sync + idle stop
    # ------------------------------------------------------------------
    def report_unreachable(self) -> None:
        """A caller could not reach a store believed to be running; re-check it in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = loop.create_task(self.refresh())

    async def refresh(self) -> StoreState:
        """Align the state with what the backend reports."""
        try:
            status = await self._backend_status()
        except StoreBackendError as e:
            logger.warning("[lifecycle.refresh.failed] error=%s", e)
            return self._state
        async with self._lock:
            if self.start_in_progress:
                return self._state
            if status == STATUS_AVAILABLE:
                ready = await self._ready()
                if ready and not self.is_available:
                    self._touch()
                    self._transition(StoreState.RUNNING, "backend available")
                elif not ready:
                    self._transition(StoreState.STARTING, "backend up, store not answering")
            elif status == STATUS_STARTING:
                self._transition(StoreState.STARTING, "backend starting")
            else:
                self._transition(StoreState.STOPPED, f"backend {status}")
        return self._state

    async def ensure_stopped_if_idle(self) -> StoreState:
        """Timer entry point: demote an idle store and stop it once idle long enough."""
        last = self._activity.last_activity()
        if last is None:
            logger.info("[lifecycle.idle.skip] no activity record")
            return self._state
        idle_for = self._clock() - last
        idle_after = self._policy.idle_after.total_seconds()
        stop_after = idle_after + self._policy.stop_after.total_seconds()

        async with self._lock:
            if self.start_in_progress:
                return self._state
            if self._state is StoreState.IDLE_RUNNING and idle_for < idle_after:
                self._transition(StoreState.RUNNING, "activity since last check")
            if self._state is StoreState.RUNNING and idle_for >= idle_after:
                self._transition(StoreState.IDLE_RUNNING, f"idle {int(idle_for)}s")
            if self._state is not StoreState.IDLE_RUNNING or idle_for < stop_after:
                return self._state
            if not getattr(self._backend, "manages_lifecycle", True):
                logger.info("[lifecycle.idle.unmanaged] idle=%ss store left running", int(idle_for))
                return self._state

            try:
                status = await self._backend_status()
                if status != STATUS_AVAILABLE:
                    logger.info("[lifecycle.idle.skip] backend_status=%s", status)
                    if status in (STATUS_STOPPED, STATUS_STOPPING):
                        self._transition(StoreState.STOPPED, f"backend {status}")
                    return self._state
                await asyncio.to_thread(self._backend.stop)
            except StoreBackendError as e:
                logger.error("[lifecycle.stop.failed] error=%s", e)
                return self._state
            self._transition(StoreState.STOPPED, f"idle {int(idle_for)}s")
        return self._state
