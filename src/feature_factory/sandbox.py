"""Isolated working copies for a single workflow run.

A sandbox is a local clone of the source repository in a temporary directory. Agents work
inside it, and only the net changes are copied back to the source tree once the run ends.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from feature_factory.config import ProjectConfig
from feature_factory.errors import SandboxError

logger = logging.getLogger(__name__)

SANDBOX_PREFIX = "feature-factory-sandbox-"
SESSION_DATA_PREFIX = ".feature-factory/sessions/"
MAX_LISTED_DIRTY_PATHS = 10


@dataclass(slots=True, frozen=True)
class SandboxInfo:
    sandbox_dir: Path
    source_dir: Path
    start_commit_hash: str

    def to_dict(self) -> dict[str, str]:
        return {
            "sandboxDir": str(self.sandbox_dir),
            "sourceDir": str(self.source_dir),
            "startCommitHash": self.start_commit_hash,
        }


@dataclass(slots=True)
class CopyBackResult:
    files_copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _run_git(cwd: Path, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(
        ["git", "--no-pager", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
    )
    if check and proc.returncode != 0:
        raise SandboxError(proc.stderr.strip() or proc.stdout.strip())
    return proc


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    return candidate


def _output_lines(proc: subprocess.CompletedProcess[str]) -> list[str]:
    if proc.returncode != 0:
        return []
    return [line.strip() for line in proc.stdout.splitlines() if line.strip()]


def dirty_worktree_paths(source_dir: Path) -> list[str]:
    proc = _run_git(source_dir, ["status", "--porcelain"])
    return [_status_line_path(line) for line in proc.stdout.splitlines() if line.strip()]


def ensure_clean_working_tree(source_dir: Path) -> None:
    dirty = dirty_worktree_paths(source_dir)
    if not dirty:
        return
    listed = "\n  ".join(dirty[:MAX_LISTED_DIRTY_PATHS])
    more = ""
    if len(dirty) > MAX_LISTED_DIRTY_PATHS:
        more = f"\n  ... and {len(dirty) - MAX_LISTED_DIRTY_PATHS} more"
    raise SandboxError(
        "Sandbox requires a clean working tree. Uncommitted changes found:\n"
        f"  {listed}{more}\n\n"
        "Please commit or stash your changes before running in sandbox mode."
    )


class SandboxManager:
    def __init__(self, project: ProjectConfig | None = None) -> None:
        self.project = project or ProjectConfig()

    def create(self, source_dir: Path) -> SandboxInfo:
        source_dir = source_dir.resolve()
        probe = _run_git(source_dir, ["rev-parse", "--is-inside-work-tree"], check=False)
        if probe.returncode != 0 or probe.stdout.strip() != "true":
            raise SandboxError(f"Source directory is not a git repository: {source_dir}")
        ensure_clean_working_tree(source_dir)

        sandbox_dir = Path(tempfile.mkdtemp(prefix=SANDBOX_PREFIX))
        logger.debug("Created sandbox directory %s", sandbox_dir)
        try:
            # Clone into the existing temp dir; git accepts an empty target directory.
            _run_git(source_dir, ["clone", "--local", "--quiet", str(source_dir), str(sandbox_dir)])
            self._prepare_dependencies(source_dir, sandbox_dir)
            start_commit = _run_git(sandbox_dir, ["rev-parse", "HEAD"]).stdout.strip()
        except (SandboxError, OSError):
            self.cleanup(sandbox_dir)
            raise
        logger.info("Sandbox ready at %s (start %s)", sandbox_dir, start_commit[:8])
        return SandboxInfo(sandbox_dir=sandbox_dir, source_dir=source_dir, start_commit_hash=start_commit)

    def _prepare_dependencies(self, source_dir: Path, sandbox_dir: Path) -> None:
        dependency_dir = self.project.dependency_dir
        source_deps = source_dir / dependency_dir
        if dependency_dir and source_deps.is_dir():
            (sandbox_dir / dependency_dir).symlink_to(source_deps, target_is_directory=True)
            logger.debug("Linked %s into sandbox", dependency_dir)
            return
        manifests = [name for name in self.project.dependency_manifests if (sandbox_dir / name).exists()]
        if not manifests or not self.project.install_command.strip():
            logger.debug("No dependency directory or manifest found; skipping install")
            return
        logger.info("Installing dependencies in sandbox: %s", self.project.install_command)
        proc = subprocess.run(
            self.project.install_command,
            cwd=sandbox_dir,
            shell=True,
            text=True,
            capture_output=True,
        )
        if proc.returncode != 0:
            raise SandboxError(
                f"Dependency install failed in sandbox: {(proc.stderr or proc.stdout).strip()[-1000:]}"
            )

    @staticmethod
    def changed_paths(info: SandboxInfo) -> list[str]:
        """Union of committed, uncommitted and untracked changes since the sandbox started."""
        sandbox_dir = info.sandbox_dir
        ordered: dict[str, None] = {}
        for args in (
            ["diff", "--name-only", f"{info.start_commit_hash}..HEAD"],
            ["diff", "--name-only"],
            ["ls-files", "--others", "--exclude-standard"],
        ):
            for path in _output_lines(_run_git(sandbox_dir, args, check=False)):
                ordered.setdefault(path, None)
        return list(ordered)

    def copy_back(self, info: SandboxInfo) -> CopyBackResult:
        result = CopyBackResult()
        for rel_path in self.changed_paths(info):
            if rel_path.startswith(SESSION_DATA_PREFIX):
                result.skipped.append(f"{rel_path} (session data)")
                continue
            sandbox_file = info.sandbox_dir / rel_path
            if not sandbox_file.is_file():
                result.skipped.append(f"{rel_path} (not found in sandbox)")
                continue
            target = info.source_dir / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(sandbox_file, target)
            result.files_copied.append(rel_path)
        logger.info(
            "Copied %d file(s) back from sandbox, skipped %d",
            len(result.files_copied),
            len(result.skipped),
        )
        return result

    def cleanup(self, sandbox_dir: Path) -> None:
        """Remove a sandbox. Failures are logged and never raised."""
        try:
            dependency_link = sandbox_dir / self.project.dependency_dir if self.project.dependency_dir else None
            # Unlink first so the recursive delete cannot follow it into the source tree.
            if dependency_link is not None and dependency_link.is_symlink():
                dependency_link.unlink()
            shutil.rmtree(sandbox_dir, ignore_errors=False)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Sandbox cleanup warning for %s: %s", sandbox_dir, exc)
