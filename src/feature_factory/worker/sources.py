from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any

from feature_factory.persistence import parse_iso, read_json, state_dir, utcnow_iso, write_json_atomic
from feature_factory.worker.discovery import (
    PRIORITY_ORDER,
    Diagnosis,
    DiscoveredWork,
    Evidence,
    create_work_from_diagnosis,
    priority_rank,
)

logger = logging.getLogger(__name__)

MANUAL_QUEUE_FILE_NAME = "manual-queue.json"
DEFAULT_ALERT_LIMIT = 20
VALIDATION_INBOX_FILE_NAME = "validation-failures.json"
MINIMAL_DIAGNOSIS_CONFIDENCE = 0.3


def _millis() -> int:
    return int(time.time() * 1000)


class WorkSourceProvider(ABC):
    name: str = "source"
    source: str = "user-request"

    def __init__(self) -> None:
        self.enabled = True

    @abstractmethod
    async def poll(self) -> list[DiscoveredWork]:
        """Return items not handed out by an earlier poll."""


@dataclass(slots=True, frozen=True)
class AlertClassification:
    priority: str
    tier: int
    workflow: str
    category: str


def classify_error_code(error_code: str) -> AlertClassification:
    try:
        code = int(str(error_code).strip())
    except ValueError:
        code = -1
    if 11000 <= code < 12000:
        return AlertClassification("high", 2, "bug-fix", "webhook")
    if 12000 <= code < 13000:
        return AlertClassification("high", 2, "bug-fix", "twiml")
    if 21000 <= code < 22000:
        return AlertClassification("medium", 3, "investigation", "api")
    if 30000 <= code < 31000:
        return AlertClassification("medium", 4, "manual-review", "messaging")
    if 82000 <= code < 83000:
        return AlertClassification("critical", 1, "bug-fix", "auth")
    return AlertClassification("medium", 3, "investigation", "unknown")


@dataclass(slots=True, frozen=True)
class Alert:
    sid: str
    error_code: str
    alert_text: str
    resource_sid: str = ""
    log_level: str = "error"
    date_created: str = ""

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Alert:
        return cls(
            sid=str(payload["sid"]),
            error_code=str(payload.get("errorCode", payload.get("error_code", ""))),
            alert_text=str(payload.get("alertText", payload.get("alert_text", ""))),
            resource_sid=str(payload.get("resourceSid", payload.get("resource_sid", "")) or ""),
            log_level=str(payload.get("logLevel", payload.get("log_level", "error"))),
            date_created=str(payload.get("dateCreated", payload.get("date_created", "")) or ""),
        )


class AlertClient(ABC):
    @abstractmethod
    def list_alerts(self, *, limit: int, log_level: str) -> list[Alert | dict[str, Any]]:
        raise NotImplementedError


def _normalize_alert_date(value: str) -> str:
    """ISO-8601 form of an alert timestamp; the debugger API reports RFC 2822 dates."""
    if not value:
        return utcnow_iso()
    try:
        return parse_iso(value).isoformat()
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable alert date %r, using discovery time", value)
        return utcnow_iso()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.isoformat()


def alert_to_work(alert: Alert) -> DiscoveredWork:
    classification = classify_error_code(alert.error_code)
    return DiscoveredWork(
        id=f"alert-{alert.sid}-{_millis()}",
        discovered_at=_normalize_alert_date(alert.date_created),
        source="debugger-alert",
        priority=classification.priority,
        tier=classification.tier,
        suggested_workflow=classification.workflow,
        summary=f"Error {alert.error_code}: {alert.alert_text}",
        description="\n".join(
            [
                f"**Error Code**: {alert.error_code}",
                f"**Alert**: {alert.alert_text}",
                f"**Category**: {classification.category}",
                f"**Resource**: {alert.resource_sid}",
                f"**Level**: {alert.log_level}",
                f"**Created**: {alert.date_created}",
            ]
        ),
        resource_ids=[alert.resource_sid] if alert.resource_sid else [],
        tags=[classification.category, f"error-{alert.error_code}"],
    )


class DebuggerAlertSource(WorkSourceProvider):
    """Error-level debugger alerts, each alert sid reported once per process."""

    name = "debugger-alerts"
    source = "debugger-alert"

    def __init__(self, client: AlertClient, *, limit: int = DEFAULT_ALERT_LIMIT) -> None:
        super().__init__()
        self.client = client
        self.limit = limit
        self._seen: set[str] = set()

    async def poll(self) -> list[DiscoveredWork]:
        try:
            raw_alerts = await asyncio.to_thread(self.client.list_alerts, limit=self.limit, log_level="error")
        except Exception as exc:
            logger.warning("Debugger alert poll failed: %s", exc)
            return []
        discovered: list[DiscoveredWork] = []
        for raw in raw_alerts:
            alert = raw if isinstance(raw, Alert) else Alert.from_dict(raw)
            if alert.sid in self._seen:
                continue
            self._seen.add(alert.sid)
            discovered.append(alert_to_work(alert))
        return discovered


def manual_queue_path(working_dir: Path) -> Path:
    return state_dir(working_dir) / MANUAL_QUEUE_FILE_NAME


def _read_manual_queue(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {"items": []}
    payload = read_json(path)
    if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
        raise ValueError("manual queue file must contain an 'items' list")
    return payload


def add_manual_item(
    working_dir: Path,
    description: str,
    *,
    priority: str = "medium",
    workflow: str = "bug-fix",
) -> dict[str, Any]:
    if priority not in PRIORITY_ORDER:
        raise ValueError(f"priority must be one of: {', '.join(PRIORITY_ORDER)}")
    path = manual_queue_path(working_dir)
    payload = _read_manual_queue(path)
    item = {
        "id": f"{_millis():x}-{secrets.token_hex(2)}",
        "description": description,
        "priority": priority,
        "workflow": workflow,
        "consumed": False,
    }
    payload["items"].append(item)
    write_json_atomic(path, payload)
    return item


def manual_item_to_work(item: dict[str, Any]) -> DiscoveredWork:
    workflow = str(item.get("workflow") or "bug-fix")
    description = str(item.get("description", ""))
    return DiscoveredWork(
        id=f"manual-{item['id']}-{_millis()}",
        source="user-request",
        priority=str(item.get("priority") or "medium"),
        # Requests typed in by a person are trusted enough to auto-execute.
        tier=4 if workflow == "manual-review" else 2,
        suggested_workflow=workflow,
        summary=description,
        description=f"User-requested work: {description}",
        tags=["manual", workflow],
    )


class FileQueueSource(WorkSourceProvider):
    """Items appended to ``.feature-factory/manual-queue.json``; consumed items are marked, not removed."""

    name = "file-queue"
    source = "user-request"

    def __init__(self, working_dir: Path) -> None:
        super().__init__()
        self.working_dir = working_dir

    async def poll(self) -> list[DiscoveredWork]:
        path = manual_queue_path(self.working_dir)
        try:
            payload = _read_manual_queue(path)
        except (OSError, json.JSONDecodeError, ValueError) as exc:
            logger.warning("Manual queue file %s is unreadable: %s", path, exc)
            return []
        fresh = [item for item in payload["items"] if isinstance(item, dict) and not item.get("consumed")]
        if not fresh:
            return []
        for item in fresh:
            item["consumed"] = True
        write_json_atomic(path, payload)
        return [manual_item_to_work(item) for item in fresh if "id" in item]


@dataclass(slots=True)
class ValidationFailure:
    """A failed deep-validation check, with its diagnosis when the validator already made one."""

    check_type: str
    result: dict[str, Any] = field(default_factory=dict)
    diagnosis: Diagnosis | None = None
    timestamp: str = field(default_factory=utcnow_iso)

    @property
    def resource_id(self) -> str | None:
        value = self.result.get("resourceSid")
        return str(value) if value else None

    @property
    def errors(self) -> list[str]:
        return [str(error) for error in self.result.get("errors") or []]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.check_type, "result": self.result, "timestamp": self.timestamp}
        if self.diagnosis is not None:
            payload["diagnosis"] = self.diagnosis.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ValidationFailure:
        result = payload.get("result") or {}
        if not isinstance(result, dict):
            raise ValueError("validation failure 'result' must be an object")
        diagnosis = payload.get("diagnosis")
        return cls(
            check_type=str(payload.get("type") or "validation"),
            result=dict(result),
            diagnosis=Diagnosis.from_dict(diagnosis) if isinstance(diagnosis, dict) else None,
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
        )


class DiagnosisAnalyzer(ABC):
    """Turns a raw validation result into a root-cause diagnosis."""

    @abstractmethod
    def analyze(self, result: dict[str, Any]) -> Diagnosis | dict[str, Any]:
        raise NotImplementedError


def minimal_diagnosis(failure: ValidationFailure) -> Diagnosis:
    resource = failure.resource_id or "unknown"
    errors = failure.errors
    return Diagnosis(
        pattern_id=f"PAT-{failure.check_type}-{_millis():x}",
        summary=f"{failure.check_type} validation failure for {resource}",
        category="unknown",
        root_cause=errors[0] if errors else "Validation failed with no specific error",
        confidence=MINIMAL_DIAGNOSIS_CONFIDENCE,
        evidence=[Evidence(source=failure.check_type, relevance="primary", data=failure.result)],
        resource_id=failure.resource_id,
    )


def meets_priority_threshold(priority: str, min_priority: str) -> bool:
    return priority_rank(priority) <= priority_rank(min_priority)


def validation_inbox_path(working_dir: Path) -> Path:
    return state_dir(working_dir) / VALIDATION_INBOX_FILE_NAME


def _read_validation_inbox(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {"items": []}
    payload = read_json(path)
    if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
        raise ValueError("validation inbox file must contain an 'items' list")
    return payload


def report_validation_failures(working_dir: Path, failures: list[ValidationFailure]) -> int:
    """Append failures to the project's validation inbox for the next worker poll."""
    path = validation_inbox_path(working_dir)
    payload = _read_validation_inbox(path)
    payload["items"].extend(failure.to_dict() for failure in failures)
    write_json_atomic(path, payload)
    return len(payload["items"])


class ValidationFailureSource(WorkSourceProvider):
    """Validation failures turned into work items through their diagnosis.

    Failures come from in-process validators via ``report()`` and, when ``inbox`` is set,
    from the inbox file, which is emptied on every poll. A failure without a diagnosis is
    analyzed by ``analyzer`` when one is configured and the result names a resource;
    otherwise it gets a low-confidence placeholder diagnosis. Work below ``min_priority``
    is dropped.
    """

    name = "validation-failures"
    source = "validation-failure"

    def __init__(
        self,
        *,
        analyzer: DiagnosisAnalyzer | None = None,
        min_priority: str = "low",
        inbox: Path | None = None,
    ) -> None:
        super().__init__()
        if min_priority not in PRIORITY_ORDER:
            raise ValueError(f"min_priority must be one of: {', '.join(PRIORITY_ORDER)}")
        self.analyzer = analyzer
        self.min_priority = min_priority
        self.inbox = inbox
        self._pending: list[ValidationFailure] = []

    def report(self, failure: ValidationFailure) -> None:
        self._pending.append(failure)

    def _drain_inbox(self) -> list[ValidationFailure]:
        if self.inbox is None or not self.inbox.exists():
            return []
        try:
            payload = _read_validation_inbox(self.inbox)
        except (OSError, json.JSONDecodeError, ValueError) as exc:
            logger.warning("Validation inbox %s is unreadable: %s", self.inbox, exc)
            return []
        if not payload["items"]:
            return []
        write_json_atomic(self.inbox, {"items": []})
        failures: list[ValidationFailure] = []
        for index, raw in enumerate(payload["items"]):
            try:
                failures.append(ValidationFailure.from_dict(raw))
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid validation failure #%d in %s: %s", index, self.inbox, exc)
        return failures

    async def _diagnose(self, failure: ValidationFailure) -> Diagnosis:
        if failure.diagnosis is not None:
            return failure.diagnosis
        if self.analyzer is None or failure.resource_id is None:
            return minimal_diagnosis(failure)
        analyzed = await asyncio.to_thread(self.analyzer.analyze, failure.result)
        return analyzed if isinstance(analyzed, Diagnosis) else Diagnosis.from_dict(analyzed)

    async def poll(self) -> list[DiscoveredWork]:
        failures, self._pending = self._pending, []
        failures.extend(self._drain_inbox())
        discovered: list[DiscoveredWork] = []
        for failure in failures:
            try:
                diagnosis = await self._diagnose(failure)
            except Exception as exc:
                logger.warning("Could not diagnose %s failure: %s", failure.check_type, exc)
                continue
            work = create_work_from_diagnosis(diagnosis, source=self.source)
            if not meets_priority_threshold(work.priority, self.min_priority):
                logger.info("Ignoring %s work below %s priority: %s", work.priority, self.min_priority, work.summary)
                continue
            discovered.append(work)
        return discovered
