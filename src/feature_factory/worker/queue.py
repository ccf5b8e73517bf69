from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from feature_factory.errors import StateError
from feature_factory.persistence import parse_iso, read_json, state_dir, utcnow_iso, write_json_atomic
from feature_factory.worker.discovery import PRIORITY_ORDER, DiscoveredWork, priority_rank

logger = logging.getLogger(__name__)

QUEUE_FILE_NAME = "work-queue.json"
QUEUE_FORMAT_VERSION = "1.0.0"
DEFAULT_MAX_ITEMS = 100

_UPDATABLE_FIELDS = frozenset(
    {"status", "assigned_to", "started_at", "completed_at", "resolution", "priority", "tier", "tags"}
)


def _pick_order(item: DiscoveredWork) -> tuple[int, int, Any]:
    return (priority_rank(item.priority), item.tier, parse_iso(item.discovered_at))


@dataclass(slots=True)
class QueueStats:
    total_items: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    escalated: int = 0
    by_priority: dict[str, int] = field(default_factory=dict)
    by_tier: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalItems": self.total_items,
            "pendingCount": self.pending,
            "inProgressCount": self.in_progress,
            "completedCount": self.completed,
            "escalatedCount": self.escalated,
            "byPriority": dict(self.by_priority),
            "byTier": {str(tier): count for tier, count in self.by_tier.items()},
        }


class PersistentQueue:
    """Capacity-bounded work queue mirrored to ``.feature-factory/work-queue.json``.

    The file is loaded on construction and rewritten after every mutation.
    """

    def __init__(self, working_dir: Path, *, max_items: int = DEFAULT_MAX_ITEMS) -> None:
        if max_items <= 0:
            raise ValueError("max_items must be greater than 0")
        self.path = state_dir(working_dir) / QUEUE_FILE_NAME
        self.max_items = max_items
        self._items: list[DiscoveredWork] = self._load()

    def _load(self) -> list[DiscoveredWork]:
        if not self.path.exists():
            return []
        try:
            payload = read_json(self.path)
            raw_items = payload.get("items") or []
            if not isinstance(raw_items, list):
                raise ValueError("'items' must be a list")
        except (OSError, json.JSONDecodeError, AttributeError, ValueError) as exc:
            logger.warning("Work queue file %s is unreadable, starting empty: %s", self.path, exc)
            return []
        items: list[DiscoveredWork] = []
        for index, raw in enumerate(raw_items):
            try:
                items.append(DiscoveredWork.from_dict(raw))
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid work item #%d in %s: %s", index, self.path, exc)
        return items

    def _save(self) -> None:
        write_json_atomic(
            self.path,
            {
                "version": QUEUE_FORMAT_VERSION,
                "updatedAt": utcnow_iso(),
                "items": [item.to_dict() for item in self._items],
            },
        )

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, work_id: object) -> bool:
        return any(item.id == work_id for item in self._items)

    def get(self, work_id: str) -> DiscoveredWork | None:
        for item in self._items:
            if item.id == work_id:
                return item
        return None

    def add(self, work: DiscoveredWork) -> DiscoveredWork | None:
        """Enqueue ``work``; returns the item evicted to make room, if any."""
        if work.id in self:
            raise StateError(f"Work item '{work.id}' already exists in queue")
        try:
            parse_iso(work.discovered_at)
        except (TypeError, ValueError) as exc:
            raise StateError(f"Work item '{work.id}' has invalid discovery time {work.discovered_at!r}") from exc
        evicted = None
        if len(self._items) >= self.max_items:
            evicted = self._evict_worst()
        self._items.append(work)
        self._save()
        return evicted

    def _evict_worst(self) -> DiscoveredWork:
        # Lowest priority, then highest tier, then oldest.
        worst = max(
            self._items,
            key=lambda item: (priority_rank(item.priority), item.tier, -parse_iso(item.discovered_at).timestamp()),
        )
        self._items.remove(worst)
        logger.info("Evicted work item %s (%s, tier %d) to make room", worst.id, worst.priority, worst.tier)
        return worst

    def remove(self, work_id: str) -> bool:
        item = self.get(work_id)
        if item is None:
            return False
        self._items.remove(item)
        self._save()
        return True

    def update(self, work_id: str, **changes: Any) -> bool:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update work item fields: {', '.join(sorted(unknown))}")
        item = self.get(work_id)
        if item is None:
            return False
        for name, value in changes.items():
            setattr(item, name, value)
        self._save()
        return True

    def get_all(self) -> list[DiscoveredWork]:
        return list(self._items)

    def get_pending(self) -> list[DiscoveredWork]:
        return [item for item in self._items if item.status == "pending"]

    def get_next_work(self) -> DiscoveredWork | None:
        pending = self.get_pending()
        if not pending:
            return None
        return min(pending, key=_pick_order)

    def get_stats(self) -> QueueStats:
        statuses = Counter(item.status for item in self._items)
        priorities = Counter(item.priority for item in self._items)
        tiers = Counter(item.tier for item in self._items)
        return QueueStats(
            total_items=len(self._items),
            pending=statuses["pending"],
            in_progress=statuses["in-progress"],
            completed=statuses["completed"],
            escalated=statuses["escalated"],
            by_priority={priority: priorities[priority] for priority in PRIORITY_ORDER},
            by_tier={tier: tiers[tier] for tier in (1, 2, 3, 4)},
        )

    def clear(self) -> None:
        self._items = []
        self._save()
