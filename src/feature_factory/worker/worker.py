"""Poll loop connecting work sources to workflow execution."""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import signal
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from feature_factory.config import WorkerConfig
from feature_factory.errors import StateError, WorkerError
from feature_factory.persistence import read_json, state_dir, utcnow_iso
from feature_factory.worker.discovery import DiscoveredWork
from feature_factory.worker.policy import ApprovalPolicy
from feature_factory.worker.queue import PersistentQueue
from feature_factory.worker.sources import WorkSourceProvider
from feature_factory.worker.status import WorkerStats, WorkerStatus, save_worker_status

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "worker.lock"
STOP_SIGNAL_FILE_NAME = "worker-stop-signal"
WORKER_ASSIGNEE = "autonomous-worker"

_WORKFLOW_FOR_SUGGESTION = {
    "bug-fix": "bug-fix",
    "refactor": "refactor",
    "new-feature": "new-feature",
    "investigation": "bug-fix",
}


@dataclass(slots=True)
class WorkflowResult:
    success: bool
    cost_usd: float
    resolution: str | None = None
    error: str | None = None


ExecuteWorkflow = Callable[[str, str, float], Awaitable[WorkflowResult]]
ConfirmWork = Callable[[DiscoveredWork], Awaitable[bool]]
WorkerEventHook = Callable[[dict[str, Any]], None]


def map_work_to_workflow(suggested: str) -> str | None:
    """Workflow type for a suggestion; manual review has none."""
    if suggested == "manual-review":
        return None
    return _WORKFLOW_FOR_SUGGESTION.get(suggested, "bug-fix")


def stop_signal_path(working_dir: Path) -> Path:
    return state_dir(working_dir) / STOP_SIGNAL_FILE_NAME


def request_stop(working_dir: Path) -> Path:
    path = stop_signal_path(working_dir)
    path.write_text(utcnow_iso() + "\n", encoding="utf-8")
    return path


class WorkerLock:
    """Exclusive ``flock`` on ``.feature-factory/worker.lock`` for the worker's lifetime."""

    def __init__(self, working_dir: Path) -> None:
        self.path = state_dir(working_dir) / LOCK_FILE_NAME
        self._handle: TextIO | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        if self._handle is not None:
            raise WorkerError("Worker lock is already held by this process")
        handle = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            holder = read_lock_holder(self.path)
            detail = f" (pid {holder['pid']})" if holder and "pid" in holder else ""
            raise WorkerError(f"Another worker is already running{detail}") from None
        handle.seek(0)
        handle.truncate()
        json.dump({"pid": os.getpid(), "started_at": utcnow_iso()}, handle)
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            handle.seek(0)
            handle.truncate()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def __enter__(self) -> WorkerLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def read_lock_holder(path: Path) -> dict[str, Any] | None:
    try:
        payload = read_json(path)
    except (OSError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def is_worker_locked(working_dir: Path) -> bool:
    path = state_dir(working_dir) / LOCK_FILE_NAME
    if not path.exists():
        return False
    with path.open("a+", encoding="utf-8") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    return False


class AutonomousWorker:
    """Single-item worker: poll sources, queue what they find, and run the best pending item.

    Lifecycle is ``start()`` (takes the lock), any number of ``poll_once()`` calls, then
    ``stop()``. ``run_forever()`` wraps that in a timed loop that also ends on SIGINT, SIGTERM
    or the stop-signal file.
    """

    def __init__(
        self,
        working_dir: Path,
        *,
        config: WorkerConfig | None = None,
        policy: ApprovalPolicy | None = None,
        sources: Iterable[WorkSourceProvider] = (),
        queue: PersistentQueue | None = None,
        on_execute_workflow: ExecuteWorkflow | None = None,
        on_confirmation_required: ConfirmWork | None = None,
        event_hook: WorkerEventHook | None = None,
    ) -> None:
        self.working_dir = working_dir.resolve()
        self.config = config or WorkerConfig()
        self.policy = policy or ApprovalPolicy()
        self.sources: list[WorkSourceProvider] = list(sources)
        self.queue = queue or PersistentQueue(self.working_dir)
        self.on_execute_workflow = on_execute_workflow
        self.on_confirmation_required = on_confirmation_required
        self.event_hook = event_hook
        self.stats = WorkerStats()
        self.is_running = False
        self.is_processing = False
        self.started_at: str | None = None
        self.last_poll_at: str | None = None
        self._current: DiscoveredWork | None = None
        self._lock = WorkerLock(self.working_dir)
        self._stop_event: asyncio.Event | None = None

    @property
    def total_spent_usd(self) -> float:
        return self.stats.total_cost_usd

    def register_source(self, source: WorkSourceProvider) -> None:
        self.sources.append(source)

    def _emit(self, event: str, work: DiscoveredWork | None = None, **payload: Any) -> None:
        record: dict[str, Any] = {"event": event, "timestamp": utcnow_iso()}
        if work is not None:
            record["workId"] = work.id
            record["summary"] = work.summary
        record.update(payload)
        if self.event_hook:
            self.event_hook(record)

    def _save_status(self) -> None:
        if self.is_running:
            state = "processing" if self.is_processing else "running"
        else:
            state = "stopped"
        queue_stats = self.queue.get_stats()
        current = None
        if self._current is not None:
            current = {
                "id": self._current.id,
                "summary": self._current.summary,
                "started_at": self._current.started_at or utcnow_iso(),
            }
        save_worker_status(
            self.working_dir,
            WorkerStatus(
                state=state,
                started_at=self.started_at or utcnow_iso(),
                last_poll_at=self.last_poll_at,
                current_work=current,
                stats=self.stats,
                queue_stats={
                    "pending": queue_stats.pending,
                    "in_progress": queue_stats.in_progress,
                    "total": queue_stats.total_items,
                },
            ),
        )

    def _clear_stop_signal(self) -> None:
        stop_signal_path(self.working_dir).unlink(missing_ok=True)

    def stop_requested(self) -> bool:
        return stop_signal_path(self.working_dir).exists()

    def is_budget_exhausted(self) -> bool:
        return self.stats.total_cost_usd >= self.config.max_budget_usd

    async def start(self) -> None:
        if self.is_running:
            raise WorkerError("Worker is already running")
        self._lock.acquire()
        self.is_running = True
        self.started_at = utcnow_iso()
        self._clear_stop_signal()
        self._save_status()
        self._emit("worker-started", pollIntervalSeconds=self.config.poll_interval_seconds)
        logger.info("Worker started, polling every %gs", self.config.poll_interval_seconds)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        was_running = self.is_running
        self.is_running = False
        self._lock.release()
        self._clear_stop_signal()
        self._save_status()
        if was_running:
            self._emit("worker-stopped", stats=self._stats_payload())
            logger.info("Worker stopped")

    def _stats_payload(self) -> dict[str, Any]:
        return {
            "completed": self.stats.completed,
            "escalated": self.stats.escalated,
            "failed": self.stats.failed,
            "totalCostUsd": self.stats.total_cost_usd,
        }

    async def poll_once(self) -> DiscoveredWork | None:
        """One poll cycle. Returns the item that was processed, if any."""
        if self.stop_requested():
            await self.stop()
            return None
        if self.is_processing:
            return None
        self.last_poll_at = utcnow_iso()

        for source in self.sources:
            if not source.enabled:
                continue
            try:
                items = await source.poll()
            except Exception as exc:
                logger.warning("Work source %s failed: %s", source.name, exc)
                self._emit("error", source=source.name, error=str(exc))
                continue
            for item in items:
                try:
                    evicted = self.queue.add(item)
                except StateError as exc:
                    logger.warning("Dropped work item from %s: %s", source.name, exc)
                    continue
                logger.info("Discovered %s (%s, tier %d)", item.summary, item.priority, item.tier)
                if evicted is not None:
                    self._emit("work-evicted", evicted)

        work = self.queue.get_next_work()
        if work is not None:
            await self.process_work(work)
        self._save_status()
        return work

    async def process_work(self, work: DiscoveredWork) -> None:
        if self.is_budget_exhausted():
            logger.warning(
                "Worker budget exhausted ($%.2f of $%.2f); leaving %s queued",
                self.stats.total_cost_usd,
                self.config.max_budget_usd,
                work.id,
            )
            return

        decision = self.policy.evaluate(work, estimated_cost_usd=self.config.max_item_budget_usd)
        if decision.decision == "escalate":
            self._escalate(work, f"Escalated: {decision.reason}", decision.reason)
            return
        if decision.decision == "confirm":
            if self.on_confirmation_required is None:
                self._escalate(work, "Escalated: no confirmation handler", "No confirmation handler available")
                return
            if not await self.on_confirmation_required(work):
                self._escalate(work, "Escalated: confirmation rejected", "Confirmation rejected")
                return
            self._emit("work-confirmed", work)

        workflow_type = map_work_to_workflow(work.suggested_workflow)
        if workflow_type is None:
            self._escalate(
                work,
                "No executable workflow for manual-review",
                "manual-review cannot be auto-executed",
            )
            return
        await self._execute(work, workflow_type)

    def _escalate(self, work: DiscoveredWork, resolution: str, reason: str) -> None:
        self.queue.update(work.id, status="escalated", resolution=resolution)
        self.stats.escalated += 1
        self._emit("work-escalated", work, reason=reason)
        logger.info("Escalated %s: %s", work.summary, reason)

    async def _execute(self, work: DiscoveredWork, workflow_type: str) -> None:
        self.queue.update(work.id, status="in-progress", started_at=utcnow_iso(), assigned_to=WORKER_ASSIGNEE)
        self._emit("work-picked-up", work, workflow=workflow_type)
        if self.on_execute_workflow is None:
            logger.info("No workflow executor configured; %s left in progress", work.id)
            return

        self.is_processing = True
        self._current = work
        self._save_status()
        try:
            result = await self.on_execute_workflow(workflow_type, work.description, self.config.max_item_budget_usd)
        except Exception as exc:
            logger.exception("Workflow for %s raised", work.id)
            self.queue.update(work.id, status="escalated", resolution=f"Error: {exc}")
            self.stats.failed += 1
            self._emit("work-failed", work, error=str(exc))
            return
        finally:
            self.is_processing = False
            self._current = None

        self.stats.total_cost_usd += result.cost_usd
        if result.success:
            self.queue.update(
                work.id,
                status="completed",
                completed_at=utcnow_iso(),
                resolution=result.resolution or "Completed successfully",
            )
            self.stats.completed += 1
            self._emit("work-completed", work, costUsd=result.cost_usd, resolution=result.resolution)
        else:
            self.queue.update(work.id, status="escalated", resolution=f"Failed: {result.error or 'Unknown error'}")
            self.stats.failed += 1
            self._emit("work-failed", work, costUsd=result.cost_usd, error=result.error or "Workflow failed")

    async def run_forever(self, *, once: bool = False) -> None:
        """Poll until stopped. The lock is released on every exit path."""
        await self.start()
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._stop_event.set)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(signum)
        try:
            while self.is_running:
                await self.poll_once()
                if once or not self.is_running:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.poll_interval_seconds)
                except TimeoutError:
                    continue
                break
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
            self._stop_event = None
            if self.is_running:
                await self.stop()
