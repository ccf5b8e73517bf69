from __future__ import annotations

import json
import logging
import math
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from feature_factory import __version__
from feature_factory.persistence import parse_iso, read_json, state_dir, utcnow_iso, write_json_atomic
from feature_factory.results import AgentResult

logger = logging.getLogger(__name__)

WorkflowStatus = Literal["not-started", "running", "awaiting-approval", "completed", "failed", "cancelled"]
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
RESUMABLE_STATUSES = frozenset({"running", "awaiting-approval"})

_BASE36 = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_session_id() -> str:
    return f"{_base36(int(time.time() * 1000))}-{secrets.token_hex(4)}"


def _budget_to_json(value: float) -> float | None:
    return None if math.isinf(value) else value


def _budget_from_json(value: Any) -> float:
    return math.inf if value is None else float(value)


@dataclass(slots=True)
class WorkflowState:
    session_id: str
    workflow: str
    description: str
    budget_usd: float
    model: str
    current_phase_index: int = 0
    status: WorkflowStatus = "not-started"
    phase_results: dict[str, AgentResult] = field(default_factory=dict)
    phase_history: dict[int, AgentResult] = field(default_factory=dict)
    checkpoints: dict[str, str] = field(default_factory=dict)
    retry_counts: dict[int, int] = field(default_factory=dict)
    total_cost_usd: float = 0.0
    total_turns: int = 0
    started_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None
    error: str | None = None
    failed_phase: str | None = None
    feedback: str | None = None
    autonomous: bool = False
    sandboxed: bool = False
    sandbox: dict[str, str] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def recompute_totals(self) -> None:
        self.total_cost_usd = sum(result.cost_usd for result in self.phase_history.values())
        self.total_turns = sum(result.turns_used for result in self.phase_history.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "workflow": self.workflow,
            "description": self.description,
            "budgetUsd": _budget_to_json(self.budget_usd),
            "model": self.model,
            "currentPhaseIndex": self.current_phase_index,
            "status": self.status,
            "phaseResults": {agent: result.to_dict() for agent, result in self.phase_results.items()},
            "phaseHistory": {str(index): result.to_dict() for index, result in sorted(self.phase_history.items())},
            "checkpoints": dict(self.checkpoints),
            "retryCounts": {str(index): count for index, count in sorted(self.retry_counts.items())},
            "totalCostUsd": self.total_cost_usd,
            "totalTurns": self.total_turns,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "error": self.error,
            "failedPhase": self.failed_phase,
            "feedback": self.feedback,
            "autonomous": self.autonomous,
            "sandboxed": self.sandboxed,
            "sandbox": dict(self.sandbox) if self.sandbox else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowState:
        return cls(
            session_id=str(payload["sessionId"]),
            workflow=str(payload["workflow"]),
            description=str(payload.get("description", "")),
            budget_usd=_budget_from_json(payload.get("budgetUsd")),
            model=str(payload.get("model", "sonnet")),
            current_phase_index=int(payload.get("currentPhaseIndex", 0)),
            status=payload.get("status", "not-started"),
            phase_results={
                str(agent): AgentResult.from_dict(result)
                for agent, result in (payload.get("phaseResults") or {}).items()
            },
            phase_history={
                int(index): AgentResult.from_dict(result)
                for index, result in (payload.get("phaseHistory") or {}).items()
            },
            checkpoints={str(k): str(v) for k, v in (payload.get("checkpoints") or {}).items()},
            retry_counts={int(k): int(v) for k, v in (payload.get("retryCounts") or {}).items()},
            total_cost_usd=float(payload.get("totalCostUsd", 0.0)),
            total_turns=int(payload.get("totalTurns", 0)),
            started_at=str(payload.get("startedAt") or utcnow_iso()),
            completed_at=payload.get("completedAt"),
            error=payload.get("error"),
            failed_phase=payload.get("failedPhase"),
            feedback=payload.get("feedback"),
            autonomous=bool(payload.get("autonomous", False)),
            sandboxed=bool(payload.get("sandboxed", False)),
            sandbox=payload.get("sandbox"),
        )


@dataclass(slots=True)
class SessionMetadata:
    session_id: str
    created_at: str
    last_updated_at: str
    working_directory: str
    version: str

    def to_dict(self) -> dict[str, str]:
        return {
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "lastUpdatedAt": self.last_updated_at,
            "workingDirectory": self.working_directory,
            "version": self.version,
        }


@dataclass(slots=True)
class PersistedSession:
    metadata: SessionMetadata
    state: WorkflowState


@dataclass(slots=True)
class SessionSummary:
    session_id: str
    workflow: str
    description: str
    status: str
    current_phase: int
    total_cost_usd: float
    created_at: str
    last_updated_at: str


class SessionStore:
    """One JSON file per workflow run under ``.feature-factory/sessions``."""

    def __init__(self, working_dir: Path) -> None:
        self.working_dir = working_dir.resolve()

    @property
    def sessions_dir(self) -> Path:
        return state_dir(self.working_dir) / "sessions"

    def session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def save(self, state: WorkflowState) -> None:
        metadata = SessionMetadata(
            session_id=state.session_id,
            created_at=state.started_at,
            last_updated_at=datetime.now(UTC).isoformat(),
            working_directory=str(self.working_dir),
            version=__version__,
        )
        write_json_atomic(
            self.session_path(state.session_id),
            {"metadata": metadata.to_dict(), "state": state.to_dict()},
        )

    def load(self, session_id: str) -> PersistedSession | None:
        path = self.session_path(session_id)
        if not path.exists():
            return None
        try:
            payload = read_json(path)
            raw_metadata = payload["metadata"]
            metadata = SessionMetadata(
                session_id=str(raw_metadata["sessionId"]),
                created_at=str(raw_metadata["createdAt"]),
                last_updated_at=str(raw_metadata["lastUpdatedAt"]),
                working_directory=str(raw_metadata.get("workingDirectory", self.working_dir)),
                version=str(raw_metadata.get("version", "")),
            )
            state = WorkflowState.from_dict(payload["state"])
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Failed to load session %s: %s", session_id, exc)
            return None
        return PersistedSession(metadata=metadata, state=state)

    def list_sessions(self) -> list[SessionSummary]:
        directory = self.sessions_dir
        summaries: list[SessionSummary] = []
        for path in directory.glob("*.json"):
            try:
                payload = read_json(path)
                metadata = payload["metadata"]
                state = payload["state"]
                summaries.append(
                    SessionSummary(
                        session_id=str(metadata["sessionId"]),
                        workflow=str(state["workflow"]),
                        description=str(state.get("description", "")),
                        status=str(state.get("status", "")),
                        current_phase=int(state.get("currentPhaseIndex", 0)),
                        total_cost_usd=float(state.get("totalCostUsd", 0.0)),
                        created_at=str(metadata["createdAt"]),
                        last_updated_at=str(metadata["lastUpdatedAt"]),
                    )
                )
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable session file %s: %s", path.name, exc)
        summaries.sort(key=lambda summary: parse_iso(summary.last_updated_at), reverse=True)
        return summaries

    def delete(self, session_id: str) -> bool:
        path = self.session_path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def cleanup(
        self,
        *,
        older_than_days: int = 7,
        include_completed: bool = True,
        include_failed: bool = False,
        now: datetime | None = None,
    ) -> int:
        cutoff = (now or datetime.now(UTC)) - timedelta(days=older_than_days)
        deleted = 0
        for summary in self.list_sessions():
            if parse_iso(summary.last_updated_at) >= cutoff:
                continue
            eligible = (
                (summary.status == "completed" and include_completed)
                or (summary.status == "failed" and include_failed)
                or summary.status == "cancelled"
            )
            if eligible and self.delete(summary.session_id):
                deleted += 1
        return deleted

    def get_resumable(self) -> PersistedSession | None:
        for summary in self.list_sessions():
            if summary.status in RESUMABLE_STATUSES:
                return self.load(summary.session_id)
        return None
