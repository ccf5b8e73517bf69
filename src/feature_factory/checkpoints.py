from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from feature_factory.errors import CheckpointError

logger = logging.getLogger(__name__)

TAG_PREFIX = "ff-checkpoint"
_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def sanitize_phase_slug(phase_name: str) -> str:
    return _SLUG_PATTERN.sub("-", phase_name.lower()).strip("-")


def checkpoint_tag(session_id: str, phase_index: int, phase_name: str) -> str:
    return f"{TAG_PREFIX}/{session_id}/pre-{phase_index}-{sanitize_phase_slug(phase_name)}"


@dataclass(slots=True, frozen=True)
class Checkpoint:
    tag: str
    commit_hash: str


class CheckpointManager:
    """Lightweight git tags taken before each phase so the tree can be restored."""

    def __init__(self, working_dir: Path) -> None:
        self.working_dir = working_dir.resolve()
        self._git_enabled: bool | None = None

    @property
    def git_enabled(self) -> bool:
        if self._git_enabled is None:
            self._git_enabled = self._is_git_repo()
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.working_dir,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.working_dir,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise CheckpointError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _tag_commit(self, tag: str) -> str | None:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/tags/{tag}^{{commit}}"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip()

    def create(self, session_id: str, phase_index: int, phase_name: str) -> Checkpoint | None:
        """Tag HEAD before a phase. Returns None outside a git work tree.

        Calling again with the same inputs returns the tag that already exists.
        """
        if not self.git_enabled:
            return None
        tag = checkpoint_tag(session_id, phase_index, phase_name)
        existing = self._tag_commit(tag)
        if existing:
            return Checkpoint(tag=tag, commit_hash=existing)
        commit_hash = self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        self._run_git(["tag", tag, commit_hash])
        logger.debug("Created checkpoint %s at %s", tag, commit_hash[:8])
        return Checkpoint(tag=tag, commit_hash=commit_hash)

    def rollback(self, tag: str) -> None:
        if not self.git_enabled:
            raise CheckpointError("No git repository found. Rollback is unavailable.")
        self._run_git(["reset", "--hard", tag])
        self._run_git(["clean", "-fd"])
        logger.info("Rolled back working tree to %s", tag)

    def list_tags(self, session_id: str) -> list[str]:
        if not self.git_enabled:
            return []
        proc = self._run_git(["tag", "-l", f"{TAG_PREFIX}/{session_id}/*"], check=False)
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def cleanup(self, session_id: str) -> list[str]:
        deleted: list[str] = []
        for tag in self.list_tags(session_id):
            proc = self._run_git(["tag", "-d", tag], check=False)
            if proc.returncode == 0:
                deleted.append(tag)
            else:
                logger.warning("Could not delete checkpoint tag %s: %s", tag, proc.stderr.strip())
        return deleted
