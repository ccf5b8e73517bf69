"""Tool executor used by the agent runner.

Core tools operate on the run's working directory (the project or its sandbox clone). Vendor
tools come from an injected ``ToolProvider`` and are addressed by names starting with ``mcp__``.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from feature_factory.config import ToolsConfig

logger = logging.getLogger(__name__)

VENDOR_TOOL_PREFIX = "mcp__"
GREP_MAX_FILES = 100
READ_DEFAULT_LIMIT = 2000
SKIPPED_DIRS = frozenset({".git", "node_modules", ".venv", "__pycache__", ".feature-factory"})

CORE_TOOL_SCHEMAS: dict[str, dict[str, Any]] = {
    "Read": {
        "name": "Read",
        "description": "Read a file from the working directory. Returns contents with line numbers.",
        "input_schema": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file to read"},
                "offset": {"type": "integer", "description": "Line number to start from (1-indexed)"},
                "limit": {"type": "integer", "description": "Maximum number of lines to read"},
            },
            "required": ["file_path"],
        },
    },
    "Write": {
        "name": "Write",
        "description": "Write content to a file, creating it or overwriting it.",
        "input_schema": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file to write"},
                "content": {"type": "string", "description": "Full file content"},
            },
            "required": ["file_path", "content"],
        },
    },
    "Edit": {
        "name": "Edit",
        "description": "Replace an exact string in a file. old_string must match exactly.",
        "input_schema": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file to edit"},
                "old_string": {"type": "string", "description": "Exact text to replace"},
                "new_string": {"type": "string", "description": "Replacement text"},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
            },
            "required": ["file_path", "old_string", "new_string"],
        },
    },
    "Glob": {
        "name": "Glob",
        "description": 'Find files matching a glob pattern such as "**/*.py".',
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Glob pattern"},
                "path": {"type": "string", "description": "Directory to search in"},
            },
            "required": ["pattern"],
        },
    },
    "Grep": {
        "name": "Grep",
        "description": "Search files for a regular expression. Returns path:line:text matches.",
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regular expression"},
                "path": {"type": "string", "description": "File or directory to search"},
                "glob": {"type": "string", "description": 'File filter such as "*.py"'},
            },
            "required": ["pattern"],
        },
    },
    "Bash": {
        "name": "Bash",
        "description": "Run a bash command in the working directory. Returns stdout and stderr.",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Command to run"},
                "timeout": {"type": "number", "description": "Timeout in seconds"},
            },
            "required": ["command"],
        },
    },
}

# Hard-coded vendor credentials that must never be written to source files.
_CREDENTIAL_CHECKS: tuple[tuple[str, re.Pattern[str], bool, str], ...] = (
    ("account sid", re.compile(r"AC[a-f0-9]{32}", re.IGNORECASE), True, "TWILIO_ACCOUNT_SID"),
    ("api key", re.compile(r"SK[a-f0-9]{32}", re.IGNORECASE), True, "TWILIO_API_KEY"),
    (
        "auth token",
        re.compile(r"(authToken|AUTH_TOKEN|auth_token)['\"]?\s*[:=]\s*['\"][a-f0-9]{32}['\"]", re.IGNORECASE),
        False,
        "TWILIO_AUTH_TOKEN",
    ),
    (
        "api secret",
        re.compile(r"(apiSecret|API_SECRET|api_secret)['\"]?\s*[:=]\s*['\"][a-zA-Z0-9]{32}['\"]", re.IGNORECASE),
        False,
        "TWILIO_API_SECRET",
    ),
)
_SAFE_LINE_PATTERN = re.compile(
    r"process\.env\.|context\.|ACCOUNT_SID|AUTH_TOKEN|API_KEY|API_SECRET|\.env|getenv|environ"
)
_SKIP_CREDENTIAL_CHECK = re.compile(
    r"(\.env\.example$|\.env\.sample$|\.md$|README|\.test\.(ts|js)$|\.spec\.(ts|js)$"
    r"|(^|/)test_[^/]*\.py$|_test\.py$|__tests__/|(^|/)tests?/|(^|/)docs/)"
)


def should_skip_credential_check(file_path: str) -> bool:
    return bool(_SKIP_CREDENTIAL_CHECK.search(file_path.replace("\\", "/")))


def find_credential_violations(content: str) -> list[str]:
    violations: list[str] = []
    lines = content.split("\n")
    for label, pattern, per_line, env_name in _CREDENTIAL_CHECKS:
        if per_line:
            hit = any(pattern.search(line) and not _SAFE_LINE_PATTERN.search(line) for line in lines)
        else:
            hit = bool(pattern.search(content))
        if hit:
            violations.append(
                f"Hardcoded {label} detected ({pattern.pattern}). "
                f"Read it from the {env_name} environment variable instead."
            )
    return violations


class ToolInputError(ValueError):
    """Raised when a tool call is missing arguments or points outside the working directory."""


@dataclass(slots=True)
class ToolResult:
    success: bool
    output: str = ""
    error: str | None = None
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)

    @property
    def had_file_activity(self) -> bool:
        return bool(self.files_created or self.files_modified)

    def render(self) -> str:
        if self.success:
            return self.output
        if self.output:
            return f"Error: {self.error}\n{self.output}"
        return f"Error: {self.error}"


@dataclass(slots=True)
class VendorTool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Callable[[dict[str, Any]], Any]

    def schema(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


class ToolProvider:
    """Registry of vendor API operations exposed to agents as ``mcp__*`` tools."""

    def __init__(self, tools: Iterable[VendorTool] = ()) -> None:
        self._tools: dict[str, VendorTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: VendorTool) -> None:
        if not tool.name.startswith(VENDOR_TOOL_PREFIX):
            raise ValueError(f"Vendor tool names must start with {VENDOR_TOOL_PREFIX!r}: {tool.name}")
        self._tools[tool.name] = tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def schemas(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        if names is None:
            return [tool.schema() for tool in self._tools.values()]
        return [self._tools[name].schema() for name in names if name in self._tools]

    def execute(self, name: str, tool_input: dict[str, Any]) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(success=False, error=f"Unknown tool: {name}")
        try:
            payload = tool.handler(tool_input)
        except Exception as exc:
            logger.warning("Vendor tool %s failed: %s", name, exc)
            return ToolResult(success=False, error=f"{type(exc).__name__}: {exc}")
        if isinstance(payload, ToolResult):
            return payload
        if isinstance(payload, str):
            return ToolResult(success=True, output=payload)
        return ToolResult(success=True, output=json.dumps(payload, indent=2, default=str))


def _require_str(tool_input: dict[str, Any], key: str) -> str:
    value = tool_input.get(key)
    if not isinstance(value, str):
        raise ToolInputError(f"Missing required string argument: {key}")
    return value


def _optional_str(tool_input: dict[str, Any], key: str, default: str) -> str:
    value = tool_input.get(key)
    if value is None or value == "":
        return default
    if not isinstance(value, str):
        raise ToolInputError(f"Argument {key} must be a string")
    return value


def _optional_number(tool_input: dict[str, Any], key: str, default: float) -> float:
    """Positive number from tool input; models sometimes send numbers as strings."""
    value = tool_input.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ToolInputError(f"Argument {key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ToolInputError(f"Argument {key} must be a number, got {value!r}") from exc
    if not number > 0 or number == float("inf"):
        raise ToolInputError(f"Argument {key} must be a positive number, got {value!r}")
    return number


class ToolExecutor:
    def __init__(
        self,
        working_dir: Path,
        config: ToolsConfig | None = None,
        provider: ToolProvider | None = None,
    ) -> None:
        self.working_dir = working_dir.resolve()
        self.config = config or ToolsConfig()
        self.provider = provider
        self._handlers: dict[str, Callable[[dict[str, Any]], ToolResult]] = {
            "Read": self._read,
            "Write": self._write,
            "Edit": self._edit,
            "Glob": self._glob,
            "Grep": self._grep,
            "Bash": self._bash,
        }

    def schemas_for(self, tool_names: Iterable[str]) -> list[dict[str, Any]]:
        schemas: list[dict[str, Any]] = []
        vendor_names: list[str] = []
        for name in tool_names:
            if name in CORE_TOOL_SCHEMAS:
                schemas.append(CORE_TOOL_SCHEMAS[name])
            elif name.startswith(VENDOR_TOOL_PREFIX):
                vendor_names.append(name)
        if vendor_names and self.provider is not None:
            schemas.extend(self.provider.schemas(vendor_names))
        return schemas

    def execute(self, tool_name: str, tool_input: dict[str, Any]) -> ToolResult:
        if tool_name.startswith(VENDOR_TOOL_PREFIX):
            if self.provider is None or not self.provider.has(tool_name):
                return ToolResult(success=False, error=f"Unknown tool: {tool_name}")
            return self.provider.execute(tool_name, tool_input)
        handler = self._handlers.get(tool_name)
        if handler is None:
            return ToolResult(success=False, error=f"Unknown tool: {tool_name}")
        try:
            return handler(tool_input)
        except ToolInputError as exc:
            return ToolResult(success=False, error=str(exc))
        except re.error as exc:
            return ToolResult(success=False, error=f"Invalid pattern: {exc}")
        except (OSError, UnicodeDecodeError) as exc:
            return ToolResult(success=False, error=f"{tool_name} failed: {exc}")
        except (TypeError, ValueError) as exc:
            return ToolResult(success=False, error=f"Invalid input for {tool_name}: {exc}")

    def resolve_path(self, raw_path: str) -> Path:
        candidate = Path(raw_path)
        if not candidate.is_absolute():
            candidate = self.working_dir / candidate
        resolved = candidate.resolve()
        try:
            resolved.relative_to(self.working_dir)
        except ValueError as exc:
            raise ToolInputError(f"Path escapes working directory: {raw_path}") from exc
        return resolved

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.working_dir).as_posix()

    def _read(self, tool_input: dict[str, Any]) -> ToolResult:
        path = self.resolve_path(_require_str(tool_input, "file_path"))
        offset = max(1, int(_optional_number(tool_input, "offset", 1)))
        limit = max(1, int(_optional_number(tool_input, "limit", READ_DEFAULT_LIMIT)))
        lines = path.read_text(encoding="utf-8").split("\n")
        start = offset - 1
        selected = lines[start : start + limit]
        numbered = "\n".join(f"{start + index + 1:>6}\t{line}" for index, line in enumerate(selected))
        return ToolResult(success=True, output=numbered)

    def _credential_violation(self, path: Path, content: str) -> ToolResult | None:
        relative = self._relative(path)
        if should_skip_credential_check(relative):
            return None
        violations = find_credential_violations(content)
        if not violations:
            return None
        logger.warning("Blocked write to %s: hard-coded credentials", relative)
        return ToolResult(success=False, error="CREDENTIAL SAFETY VIOLATION:\n" + "\n".join(violations))

    def _write(self, tool_input: dict[str, Any]) -> ToolResult:
        path = self.resolve_path(_require_str(tool_input, "file_path"))
        content = _require_str(tool_input, "content")
        blocked = self._credential_violation(path, content)
        if blocked is not None:
            return blocked
        is_new = not path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        relative = self._relative(path)
        return ToolResult(
            success=True,
            output=f"Wrote {len(content)} characters to {relative}",
            files_created=[relative] if is_new else [],
            files_modified=[] if is_new else [relative],
        )

    def _edit(self, tool_input: dict[str, Any]) -> ToolResult:
        path = self.resolve_path(_require_str(tool_input, "file_path"))
        old_string = _require_str(tool_input, "old_string")
        new_string = _require_str(tool_input, "new_string")
        replace_all = bool(tool_input.get("replace_all", False))
        relative = self._relative(path)
        content = path.read_text(encoding="utf-8")
        occurrences = content.count(old_string) if old_string else 0
        if occurrences == 0:
            return ToolResult(success=False, error=f"old_string not found in file: {relative}")
        if occurrences > 1 and not replace_all:
            return ToolResult(
                success=False,
                error=(
                    f"old_string appears {occurrences} times in {relative}; "
                    "add surrounding context or set replace_all"
                ),
            )
        updated = content.replace(old_string, new_string) if replace_all else content.replace(old_string, new_string, 1)
        blocked = self._credential_violation(path, updated)
        if blocked is not None:
            return blocked
        path.write_text(updated, encoding="utf-8")
        return ToolResult(success=True, output=f"Edited {relative}", files_modified=[relative])

    def _iter_files(self, base: Path, pattern: str) -> list[Path]:
        if base.is_file():
            return [base]
        matches: list[Path] = []
        for path in sorted(base.glob(pattern)):
            relative_parts = path.relative_to(base).parts
            if any(part in SKIPPED_DIRS for part in relative_parts):
                continue
            if path.is_file():
                matches.append(path)
        return matches

    def _search_base(self, tool_input: dict[str, Any]) -> Path:
        raw_path = tool_input.get("path")
        if isinstance(raw_path, str) and raw_path.strip():
            return self.resolve_path(raw_path)
        return self.working_dir

    def _glob(self, tool_input: dict[str, Any]) -> ToolResult:
        pattern = _require_str(tool_input, "pattern")
        base = self._search_base(tool_input)
        matches = [self._relative(path) for path in self._iter_files(base, pattern)]
        return ToolResult(success=True, output="\n".join(matches) if matches else "No matching files found")

    def _grep(self, tool_input: dict[str, Any]) -> ToolResult:
        regex = re.compile(_require_str(tool_input, "pattern"))
        base = self._search_base(tool_input)
        file_glob = _optional_str(tool_input, "glob", "*")
        pattern = file_glob if "/" in file_glob or file_glob.startswith("**") else f"**/{file_glob}"
        results: list[str] = []
        for path in self._iter_files(base, pattern)[:GREP_MAX_FILES]:
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            relative = self._relative(path)
            for line_number, line in enumerate(text.split("\n"), start=1):
                if regex.search(line):
                    results.append(f"{relative}:{line_number}:{line}")
        return ToolResult(success=True, output="\n".join(results) if results else "No matches found")

    def blocked_pattern(self, command: str) -> str | None:
        normalized = " ".join(command.split())
        for pattern in self.config.blocked_command_patterns:
            if " ".join(pattern.split()) in normalized:
                return pattern
        return None

    def _bash(self, tool_input: dict[str, Any]) -> ToolResult:
        command = _require_str(tool_input, "command")
        if not command.strip():
            return ToolResult(success=False, error="Command is empty.")
        blocked = self.blocked_pattern(command)
        if blocked is not None:
            return ToolResult(success=False, error=f"Command blocked ({blocked}): {command}")
        timeout = _optional_number(tool_input, "timeout", self.config.bash_timeout_seconds)
        try:
            proc = subprocess.run(
                ["bash", "-c", command],
                cwd=self.working_dir,
                text=True,
                capture_output=True,
                timeout=timeout,
                env={**os.environ, "FORCE_COLOR": "0", "NO_COLOR": "1"},
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout or ""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            return ToolResult(
                success=False,
                output=partial.strip(),
                error=f"Command timed out after {timeout:g}s",
            )
        output = proc.stdout
        if proc.stderr:
            output += f"\nSTDERR:\n{proc.stderr}"
        return ToolResult(
            success=proc.returncode == 0,
            output=output.strip(),
            error=None if proc.returncode == 0 else f"Exit code: {proc.returncode}",
        )
