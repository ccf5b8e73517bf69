from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from feature_factory.persistence import read_json, state_dir, write_json_atomic

logger = logging.getLogger(__name__)

STATUS_FILE_NAME = "worker-status.json"

WorkerState = Literal["idle", "running", "processing", "stopping", "stopped"]


@dataclass(slots=True)
class WorkerStats:
    completed: int = 0
    escalated: int = 0
    failed: int = 0
    total_cost_usd: float = 0.0


@dataclass(slots=True)
class WorkerStatus:
    state: str
    started_at: str
    last_poll_at: str | None = None
    current_work: dict[str, str] | None = None
    stats: WorkerStats = field(default_factory=WorkerStats)
    queue_stats: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "started_at": self.started_at,
            "last_poll_at": self.last_poll_at,
            "current_work": self.current_work,
            "stats": {
                "completed": self.stats.completed,
                "escalated": self.stats.escalated,
                "failed": self.stats.failed,
                "total_cost_usd": self.stats.total_cost_usd,
            },
            "queue_stats": dict(self.queue_stats),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkerStatus:
        stats = payload.get("stats") or {}
        return cls(
            state=str(payload["state"]),
            started_at=str(payload["started_at"]),
            last_poll_at=payload.get("last_poll_at"),
            current_work=payload.get("current_work"),
            stats=WorkerStats(
                completed=int(stats.get("completed", 0)),
                escalated=int(stats.get("escalated", 0)),
                failed=int(stats.get("failed", 0)),
                total_cost_usd=float(stats.get("total_cost_usd", 0.0)),
            ),
            queue_stats={str(k): int(v) for k, v in (payload.get("queue_stats") or {}).items()},
        )


def status_path(working_dir: Path) -> Path:
    return state_dir(working_dir) / STATUS_FILE_NAME


def save_worker_status(working_dir: Path, status: WorkerStatus) -> None:
    write_json_atomic(status_path(working_dir), status.to_dict())


def load_worker_status(working_dir: Path) -> WorkerStatus | None:
    path = status_path(working_dir)
    if not path.exists():
        return None
    try:
        return WorkerStatus.from_dict(read_json(path))
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        logger.warning("Worker status file %s is unreadable: %s", path, exc)
        return None
