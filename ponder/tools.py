"""Tool contract, name-keyed registry, and the built-in file/search/shell tools."""

from __future__ import annotations

import fnmatch
import json
import logging
import math
import os
import re
import signal
import subprocess
import sys
import threading
import time
import uuid
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Callable

from .models import ToolResult
from .report import ToolNotFoundError

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB per stream returned to the model
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024
MAX_TIMEOUT_MS = 600_000
_LOG_PARAMS_CHARS = 1000

IGNORED_DIRS = {".git", "node_modules", "dist", "build", "__pycache__", ".venv"}

# error_type tags carried in ToolResult.metadata
TOOL_NOT_FOUND = "ToolNotFound"
INVALID_PARAMETERS = "InvalidParameters"
TOOL_EXECUTION_FAULT = "ToolExecutionFault"

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}

_INTEGER = re.compile(r"[-+]?\d+")


def _coerce_string(value: str, json_type: str) -> Any:
    """Convert a quoted scalar to *json_type*; leave it alone if it does not parse."""
    text = value.strip()
    if json_type == "boolean":
        lowered = text.lower()
        return lowered == "true" if lowered in ("true", "false") else value
    if _INTEGER.fullmatch(text):
        return int(text)
    if json_type == "number":
        try:
            number = float(text)
        except ValueError:
            return value
        return number if math.isfinite(number) else value
    return value


# -- Contract ----------------------------------------------------------------


class Tool:
    """Base class for tools.

    Subclasses set ``name``, ``description`` and a JSON-schema ``parameters``
    object, and implement ``execute``. The registry passes parameters through
    ``coerce`` before ``validate``; the default ``validate`` checks required
    keys and the declared JSON types of the parameters that are present.
    """

    name: str = ""
    description: str = ""
    parameters: dict = {"type": "object", "properties": {}}
    aliases: tuple[str, ...] = ()

    def coerce(self, params: dict) -> dict:
        """Return a copy of *params* with quoted numbers and booleans converted
        to the types their properties declare."""
        props = self.parameters.get("properties", {})
        out = dict(params)
        for key, value in params.items():
            json_type = (props.get(key) or {}).get("type")
            if isinstance(value, str) and json_type in ("integer", "number", "boolean"):
                out[key] = _coerce_string(value, json_type)
        return out

    def invalid_reason(self, params: dict) -> str | None:
        """Describe what is wrong with *params*, or None when they are acceptable."""
        if not isinstance(params, dict):
            return f"expected an object, got {type(params).__name__}"
        props = self.parameters.get("properties", {})
        for key in self.parameters.get("required", []):
            if params.get(key) is None:
                return f"missing required parameter {key!r}"
        for key, value in params.items():
            json_type = (props.get(key) or {}).get("type")
            expected = _JSON_TYPES.get(json_type)
            if expected is None or value is None:
                continue
            wrong_bool = isinstance(value, bool) and json_type != "boolean"
            if wrong_bool or not isinstance(value, expected):
                return f"parameter {key!r} must be {json_type}, got {type(value).__name__}"
        return None

    def validate(self, params: dict) -> bool:
        return self.invalid_reason(params) is None

    def execute(self, params: dict) -> ToolResult:
        raise NotImplementedError

    def schema(self) -> dict:
        """OpenAI function-calling schema for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @property
    def primary_parameter(self) -> str | None:
        required = self.parameters.get("required") or []
        if required:
            return required[0]
        props = self.parameters.get("properties") or {}
        return next(iter(props), None)


class FunctionTool(Tool):
    """Wrap a plain callable as a tool, for ad-hoc registration."""

    def __init__(
        self,
        name: str,
        func: Callable[[dict], ToolResult],
        *,
        description: str = "",
        parameters: dict | None = None,
        validate: Callable[[dict], bool] | None = None,
        aliases: tuple[str, ...] = (),
    ):
        self.name = name
        self.description = description
        self.parameters = parameters or {"type": "object", "properties": {}}
        self.aliases = aliases
        self._func = func
        self._validate = validate

    def validate(self, params: dict) -> bool:
        if self._validate is not None:
            return bool(self._validate(params))
        return super().validate(params)

    def execute(self, params: dict) -> ToolResult:
        return self._func(params)


# -- Registry ----------------------------------------------------------------


def _params_for_log(params: Any) -> str:
    try:
        text = json.dumps(params, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        text = repr(params)
    if len(text) > _LOG_PARAMS_CHARS:
        text = text[:_LOG_PARAMS_CHARS] + "..."
    return text


class ToolRegistry:
    """Name-keyed set of tools. Registration order is the listing order."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        self._aliases: dict[str, str] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Add a tool. A later registration under the same name replaces the earlier one."""
        if not tool.name:
            raise ValueError("tool has no name")
        self._tools[tool.name] = tool
        self._aliases.pop(tool.name, None)
        for alias in tool.aliases:
            if alias not in self._tools:
                self._aliases[alias] = tool.name

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)
        self._aliases = {a: n for a, n in self._aliases.items() if n != name}

    def __contains__(self, name: str) -> bool:
        return name in self._tools or name in self._aliases

    def __len__(self) -> int:
        return len(self._tools)

    def lookup(self, name: str) -> Tool:
        if name in self._tools:
            return self._tools[name]
        if name in self._aliases:
            return self._tools[self._aliases[name]]
        raise ToolNotFoundError(name)

    def resolve_name(self, name: str) -> str | None:
        """Return the canonical tool name for *name* (exact, alias or case-insensitive)."""
        if name in self._tools:
            return name
        if name in self._aliases:
            return self._aliases[name]
        lowered = name.lower()
        for candidate in list(self._tools) + list(self._aliases):
            if candidate.lower() == lowered:
                return self._aliases.get(candidate, candidate)
        return None

    def list(self) -> list[dict]:
        return [
            {"name": tool.name, "description": tool.description}
            for tool in self._tools.values()
        ]

    def schemas(self) -> list[dict]:
        return [tool.schema() for tool in self._tools.values()]

    def primary_parameters(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for name, tool in self._tools.items():
            param = tool.primary_parameter
            if param:
                out[name] = param
        for alias, name in self._aliases.items():
            if name in out:
                out[alias] = out[name]
        return out

    def execute(self, name: str, params: dict | None) -> ToolResult:
        """Run a tool and always return an envelope, never raise."""
        params = {} if params is None else params
        logger.info("tool %s started: %s", name, _params_for_log(params))
        start = time.monotonic()

        try:
            tool = self.lookup(name)
        except ToolNotFoundError as e:
            logger.warning("tool %s failed: %s", name, e)
            return ToolResult.fail(str(e), TOOL_NOT_FOUND, tool=name)

        coerce = getattr(tool, "coerce", None)
        if coerce is not None and isinstance(params, dict):
            params = coerce(params)

        validate = getattr(tool, "validate", None)
        if validate is not None:
            try:
                valid = validate(params)
            except Exception as e:
                logger.debug("tool %s validation raised", name, exc_info=True)
                valid = False
                detail = str(e)
            else:
                detail = ""
                if not valid and hasattr(tool, "invalid_reason"):
                    detail = tool.invalid_reason(params) or ""
            if not valid:
                msg = f"Invalid parameters for tool {tool.name}"
                if detail:
                    msg += f": {detail}"
                logger.warning("tool %s failed: %s", name, msg)
                return ToolResult.fail(msg, INVALID_PARAMETERS, tool=tool.name)

        try:
            result = tool.execute(params)
            if not isinstance(result, ToolResult):
                raise TypeError(
                    f"tool {tool.name} returned {type(result).__name__}, expected ToolResult"
                )
        except Exception as e:
            logger.debug("tool %s raised", name, exc_info=True)
            result = ToolResult.fail(
                str(e) or type(e).__name__, TOOL_EXECUTION_FAULT, tool=tool.name
            )

        elapsed = time.monotonic() - start
        if result.success:
            logger.info("tool %s succeeded in %.2fs", name, elapsed)
        else:
            logger.warning("tool %s failed in %.2fs: %s", name, elapsed, result.error)
        return result


# -- Path sandbox ------------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve a path against base_dir and verify it stays inside it.

    Raises ValueError if the resolved path escapes base_dir (unless
    unrestricted), or if it resolves to the filesystem root.
    """
    base = Path(base_dir).resolve()
    path = Path(file_path).expanduser()
    resolved = path.resolve() if path.is_absolute() else (base / path).resolve()

    if unrestricted:
        if resolved == Path(resolved.anchor):
            raise ValueError(
                f"Path {file_path!r} resolves to the filesystem root, "
                f"which is not allowed even in unrestricted mode"
            )
        return resolved

    if resolved.is_relative_to(base):
        return resolved

    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def _check_pattern(pattern: str) -> str | None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"pattern {pattern!r} must be relative, not absolute"
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        return f"pattern {pattern!r} contains '..', which is not allowed"
    return None


def _display_path(path: Path, base: Path) -> str:
    try:
        return path.relative_to(base).as_posix()
    except ValueError:
        return str(path)


def _is_binary(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return b"\x00" in f.read(BINARY_CHECK_BYTES)
    except OSError:
        return True


def _expand_braces(pattern: str) -> list[str]:
    """Expand the first ``{a,b}`` group recursively."""
    m = re.search(r"\{([^{}]*,[^{}]*)\}", pattern)
    if not m:
        return [pattern]
    out: list[str] = []
    for option in m.group(1).split(","):
        out.extend(_expand_braces(pattern[: m.start()] + option + pattern[m.end() :]))
    return out


def _match_segments(parts: list[str], segments: list[str]) -> bool:
    if not parts:
        return not segments
    head, rest = parts[0], parts[1:]
    if head == "**":
        return any(_match_segments(rest, segments[i:]) for i in range(len(segments) + 1))
    if not segments or not fnmatch.fnmatchcase(segments[0], head):
        return False
    return _match_segments(rest, segments[1:])


def glob_matcher(pattern: str) -> Callable[[str], bool]:
    """Return a predicate over POSIX relative paths for *pattern*.

    Each path segment is matched with fnmatch; a ``**`` segment spans zero or
    more directories.
    """
    alternatives = [p.split("/") for p in _expand_braces(pattern)]
    return lambda rel: any(_match_segments(parts, rel.split("/")) for parts in alternatives)


def _walk_files(root: Path):
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
        for filename in sorted(files):
            yield Path(dirpath) / filename


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def _clip(text: str, limit: int = MAX_OUTPUT_BYTES) -> tuple[str, bool]:
    raw = text.encode("utf-8")
    if len(raw) <= limit:
        return text, False
    return raw[:limit].decode("utf-8", errors="ignore"), True


# -- Built-in tools ----------------------------------------------------------


class _FileTool(Tool):
    def __init__(self, base_dir: str = ".", *, unrestricted: bool = False, **_settings):
        self.base_dir = str(base_dir)
        self.unrestricted = unrestricted

    def resolve(self, path: str) -> Path:
        return safe_resolve(path, self.base_dir, unrestricted=self.unrestricted)

    @property
    def base(self) -> Path:
        return Path(self.base_dir).resolve()


class ReadTool(_FileTool):
    name = "Read"
    description = "Read a text file. Use offset (lines to skip) and limit to read part of it."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path of the file to read."},
            "offset": {
                "type": "integer",
                "description": "Number of lines to skip before reading (default 0).",
            },
            "limit": {"type": "integer", "description": "Maximum number of lines to return."},
        },
        "required": ["file_path"],
    }

    def __init__(self, base_dir: str = ".", *, max_file_size_mb: float = 10, **settings):
        super().__init__(base_dir, **settings)
        self.max_bytes = int(max_file_size_mb * 1024 * 1024)

    def execute(self, params: dict) -> ToolResult:
        file_path = params["file_path"]
        try:
            path = self.resolve(file_path)
        except ValueError as e:
            return ToolResult.fail(str(e))
        if not path.exists():
            return ToolResult.fail(f"File not found: {file_path}")
        if path.is_dir():
            return ToolResult.fail(f"{file_path} is a directory; use Glob to list files")

        size = path.stat().st_size
        if size > self.max_bytes:
            return ToolResult.fail(f"File too large: {size} bytes (max: {self.max_bytes} bytes)")
        if _is_binary(path):
            return ToolResult.fail(f"{file_path} appears to be a binary file")

        text = path.read_text(encoding="utf-8", errors="replace")
        all_lines = text.split("\n")
        offset = max(0, int(params.get("offset") or 0))
        limit = params.get("limit")
        if limit is not None and int(limit) > 0:
            lines = all_lines[offset : offset + int(limit)]
        else:
            lines = all_lines[offset:]
        lines = [line[:MAX_LINE_LENGTH] for line in lines]

        return ToolResult.ok(
            {
                "content": "\n".join(lines),
                "lines": len(lines),
                "path": _display_path(path, self.base),
                "size": size,
            },
            total_lines=len(all_lines),
            offset=offset,
            truncated=offset + len(lines) < len(all_lines),
        )


class WriteTool(_FileTool):
    name = "Write"
    description = "Create or overwrite a file with the given content."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path of the file to write."},
            "content": {"type": "string", "description": "Full file content."},
        },
        "required": ["file_path", "content"],
    }

    def execute(self, params: dict) -> ToolResult:
        try:
            path = self.resolve(params["file_path"])
        except ValueError as e:
            return ToolResult.fail(str(e))
        if path.is_dir():
            return ToolResult.fail(f"{params['file_path']} is a directory")
        created = not path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(params["content"], encoding="utf-8")
        return ToolResult.ok(
            {
                "path": _display_path(path, self.base),
                "size": path.stat().st_size,
                "created": created,
            }
        )


class EditTool(_FileTool):
    name = "Edit"
    description = (
        "Replace an exact string in a file. old_string must match exactly once "
        "unless replace_all is true."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path of the file to edit."},
            "old_string": {"type": "string", "description": "Exact text to replace."},
            "new_string": {"type": "string", "description": "Replacement text."},
            "replace_all": {
                "type": "boolean",
                "description": "Replace every occurrence (default false).",
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    def execute(self, params: dict) -> ToolResult:
        old, new = params["old_string"], params["new_string"]
        if old == new:
            return ToolResult.fail("old_string and new_string are identical")
        if not old:
            return ToolResult.fail("old_string must not be empty")
        try:
            path = self.resolve(params["file_path"])
        except ValueError as e:
            return ToolResult.fail(str(e))
        if not path.is_file():
            return ToolResult.fail(f"File not found: {params['file_path']}")

        text = path.read_text(encoding="utf-8")
        count = text.count(old)
        if count == 0:
            return ToolResult.fail(f'String not found in file: "{old}"')
        if count > 1 and not params.get("replace_all"):
            return ToolResult.fail(
                f"old_string occurs {count} times; pass replace_all=true or add context"
            )
        if params.get("replace_all"):
            text = text.replace(old, new)
        else:
            text = text.replace(old, new, 1)
            count = 1
        path.write_text(text, encoding="utf-8")
        return ToolResult.ok(
            {
                "path": _display_path(path, self.base),
                "size": path.stat().st_size,
                "replacements": count,
            }
        )


class GlobTool(_FileTool):
    name = "Glob"
    description = "Find files matching a glob pattern such as **/*.py, newest first."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Glob pattern, e.g. **/*.ts"},
            "path": {"type": "string", "description": "Directory to search (default .)."},
            "type": {"type": "string", "description": "Only files with this extension."},
            "head_limit": {"type": "integer", "description": "Return at most N files."},
        },
        "required": ["pattern"],
    }

    def __init__(self, base_dir: str = ".", *, search_results_limit: int = 100, **settings):
        super().__init__(base_dir, **settings)
        self.limit = search_results_limit

    def execute(self, params: dict) -> ToolResult:
        pattern = params["pattern"]
        err = _check_pattern(pattern)
        if err and not self.unrestricted:
            return ToolResult.fail(err)
        search = params.get("path") or "."
        try:
            root = self.resolve(search)
        except ValueError as e:
            return ToolResult.fail(str(e))
        if not root.is_dir():
            return ToolResult.fail(f"path is not a directory: {search}")

        ext = params.get("type")
        if ext and not ext.startswith("."):
            ext = "." + ext
        matches = glob_matcher(pattern)

        found = [
            p
            for p in _walk_files(root)
            if matches(p.relative_to(root).as_posix()) and (not ext or p.suffix == ext)
        ]
        found.sort(key=_mtime, reverse=True)

        total = len(found)
        head_limit = params.get("head_limit")
        cap = self.limit if not head_limit else min(int(head_limit), self.limit)
        files = [_display_path(p, self.base) for p in found[:cap]]
        return ToolResult.ok(
            {"files": files, "count": len(files)},
            total_found=total,
            limited=total > cap,
            search_path=str(root),
            pattern=pattern,
        )


class GrepTool(_FileTool):
    name = "Grep"
    description = "Search file contents with a regular expression."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Regular expression to search for."},
            "path": {"type": "string", "description": "Directory to search (default .)."},
            "glob": {"type": "string", "description": "Only search files matching this glob."},
            "case_insensitive": {"type": "boolean"},
            "output_mode": {
                "type": "string",
                "enum": ["files_with_matches", "content", "count"],
                "description": "Default files_with_matches.",
            },
            "head_limit": {"type": "integer", "description": "Return at most N results."},
        },
        "required": ["pattern"],
    }

    OUTPUT_MODES = ("files_with_matches", "content", "count")

    def __init__(self, base_dir: str = ".", *, search_results_limit: int = 100, **settings):
        super().__init__(base_dir, **settings)
        self.limit = search_results_limit

    def invalid_reason(self, params: dict) -> str | None:
        reason = super().invalid_reason(params)
        if reason is not None:
            return reason
        if (params.get("output_mode") or "files_with_matches") not in self.OUTPUT_MODES:
            return f"output_mode must be one of {', '.join(self.OUTPUT_MODES)}"
        return None

    def execute(self, params: dict) -> ToolResult:
        pattern = params["pattern"]
        flags = re.IGNORECASE if params.get("case_insensitive") else 0
        try:
            regex = re.compile(pattern, flags)
        except re.error as e:
            return ToolResult.fail(f"invalid regex {pattern!r}: {e}")

        include = params.get("glob")
        if include and not self.unrestricted:
            err = _check_pattern(include)
            if err:
                return ToolResult.fail(err)
        search = params.get("path") or "."
        try:
            root = self.resolve(search)
        except ValueError as e:
            return ToolResult.fail(str(e))
        if not root.exists():
            return ToolResult.fail(f"path does not exist: {search}")

        if root.is_file():
            candidates = [root]
        else:
            wanted = None
            if include:
                # a bare filename glob matches at any depth
                wanted = glob_matcher(include if "/" in include else f"**/{include}")
            candidates = [
                p
                for p in _walk_files(root)
                if wanted is None or wanted(p.relative_to(root).as_posix())
            ]
            # newest files first, so the cap keeps the most recently touched ones
            candidates.sort(key=lambda p: (-_mtime(p), p))

        mode = params.get("output_mode") or "files_with_matches"
        head_limit = params.get("head_limit")
        cap = self.limit if not head_limit else min(int(head_limit), self.limit)

        matches: list[dict] = []
        files: list[str] = []
        total = 0
        for path in candidates:
            if _is_binary(path):
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            rel = _display_path(path, self.base)
            hit = False
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    hit = True
                    total += 1
                    if mode == "content" and len(matches) < cap:
                        content = line.strip()[:MAX_LINE_LENGTH]
                        matches.append({"file": rel, "line": line_no, "content": content})
            if hit:
                files.append(rel)

        if mode == "content":
            data = {"matches": matches, "count": total, "files": len(files)}
        elif mode == "count":
            data = {"count": total, "files": len(files)}
        else:
            data = {"files": files[:cap], "count": len(files)}
        return ToolResult.ok(
            data,
            pattern=pattern,
            case_insensitive=bool(flags),
            files_searched=len(candidates),
            limited=(len(files) if mode == "files_with_matches" else total) > cap,
        )


_KILL_WAIT_TIMEOUT = 5  # seconds


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix the process was started with start_new_session=True, so its
    process group is the whole tree. On Windows, taskkill /T does the walk.
    """
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("process %d did not exit after kill", proc.pid)


class _BackgroundProcess:
    """A detached shell command whose output is drained by reader threads."""

    def __init__(self, shell_id: str, command: str, proc: subprocess.Popen):
        self.shell_id = shell_id
        self.command = command
        self.proc = proc
        self.started = time.monotonic()
        self.stdout: list[str] = []
        self.stderr: list[str] = []
        self._threads = [
            threading.Thread(target=self._drain, args=(proc.stdout, self.stdout), daemon=True),
            threading.Thread(target=self._drain, args=(proc.stderr, self.stderr), daemon=True),
        ]
        for t in self._threads:
            t.start()

    @staticmethod
    def _drain(stream, sink: list[str]) -> None:
        try:
            for chunk in iter(lambda: stream.read1(4096), b""):
                sink.append(chunk.decode("utf-8", errors="replace"))
        except (OSError, ValueError):
            pass  # pipe closed after kill

    def snapshot(self) -> dict:
        code = self.proc.poll()
        if code is not None:
            for t in self._threads:
                t.join(timeout=1)
        stdout, _ = _clip("".join(self.stdout))
        stderr, _ = _clip("".join(self.stderr))
        return {
            "stdout": stdout,
            "stderr": stderr,
            "exitCode": code,
            "running": code is None,
            "executionTime": int((time.monotonic() - self.started) * 1000),
        }


class BashTool(_FileTool):
    name = "Bash"
    aliases = ("shell",)
    description = (
        "Run a shell command in the project directory. timeout is in milliseconds. "
        "Set run_in_background to get a shell_id; pass shell_id later to read its output "
        "(and kill=true to stop it)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to run."},
            "timeout": {"type": "integer", "description": "Timeout in milliseconds."},
            "run_in_background": {"type": "boolean"},
            "shell_id": {"type": "string", "description": "Id of a background command."},
            "kill": {"type": "boolean", "description": "Kill the background command."},
        },
        "required": ["command"],
    }

    def __init__(
        self,
        base_dir: str = ".",
        *,
        shell_timeout_ms: int = 120_000,
        enable_background_tasks: bool = True,
        **settings,
    ):
        super().__init__(base_dir, **settings)
        self.default_timeout_ms = shell_timeout_ms
        self.enable_background = enable_background_tasks
        self._background: dict[str, _BackgroundProcess] = {}

    def invalid_reason(self, params: dict) -> str | None:
        if isinstance(params, dict) and isinstance(params.get("shell_id"), str):
            return None
        return super().invalid_reason(params)

    def execute(self, params: dict) -> ToolResult:
        if params.get("shell_id"):
            return self._poll(params["shell_id"], kill=bool(params.get("kill")))
        if params.get("run_in_background"):
            if not self.enable_background:
                return ToolResult.fail("background tasks are disabled")
            return self._start_background(params["command"])
        timeout_ms = params.get("timeout") or self.default_timeout_ms
        timeout_ms = max(1, min(int(timeout_ms), MAX_TIMEOUT_MS))
        return self._run(params["command"], timeout_ms)

    def _popen(self, command: str) -> subprocess.Popen:
        if sys.platform == "win32":
            shell_cmd = ["cmd.exe", "/c", command]
        else:
            shell_cmd = ["/bin/sh", "-c", command]
        popen_kwargs: dict = dict(
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            cwd=self.base_dir,
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True
        return subprocess.Popen(shell_cmd, **popen_kwargs)

    def _run(self, command: str, timeout_ms: int) -> ToolResult:
        start = time.monotonic()
        try:
            proc = self._popen(command)
        except OSError as e:
            return ToolResult.fail(f"failed to start shell command: {e}")

        timed_out = False
        try:
            out, err = proc.communicate(timeout=timeout_ms / 1000)
        except subprocess.TimeoutExpired:
            timed_out = True
            _kill_process_tree(proc)
            out, err = proc.communicate()

        stdout, out_clipped = _clip(out.decode("utf-8", errors="replace"))
        stderr, err_clipped = _clip(err.decode("utf-8", errors="replace"))
        data = {
            "stdout": stdout,
            "stderr": stderr,
            "exitCode": -1 if timed_out else proc.returncode,
            "executionTime": int((time.monotonic() - start) * 1000),
        }
        meta = {"command": command, "truncated": out_clipped or err_clipped}
        if timed_out:
            return ToolResult(
                success=False,
                data=data,
                error=f"Command timed out after {timeout_ms}ms",
                metadata=meta,
            )
        if proc.returncode != 0:
            return ToolResult(
                success=False,
                data=data,
                error=f"Command exited with code {proc.returncode}"
                + (f": {stderr.strip()[:500]}" if stderr.strip() else ""),
                metadata=meta,
            )
        return ToolResult(success=True, data=data, metadata=meta)

    def _start_background(self, command: str) -> ToolResult:
        try:
            proc = self._popen(command)
        except OSError as e:
            return ToolResult.fail(f"failed to start shell command: {e}")
        shell_id = f"bg_{uuid.uuid4().hex[:8]}"
        self._background[shell_id] = _BackgroundProcess(shell_id, command, proc)
        logger.info("started background command %s: %s", shell_id, command)
        return ToolResult.ok(
            {"shell_id": shell_id, "stdout": "", "stderr": "", "exitCode": None},
            message="Command started in background",
            command=command,
        )

    def _poll(self, shell_id: str, kill: bool = False) -> ToolResult:
        bg = self._background.get(shell_id)
        if bg is None:
            return ToolResult.fail(f"No background command with shell_id {shell_id}")
        if kill and bg.proc.poll() is None:
            _kill_process_tree(bg.proc)
        data = bg.snapshot()
        data["shell_id"] = shell_id
        if kill:
            self._background.pop(shell_id, None)
        return ToolResult.ok(data, command=bg.command)

    def shutdown(self) -> None:
        """Kill every background command still running."""
        for bg in list(self._background.values()):
            if bg.proc.poll() is None:
                _kill_process_tree(bg.proc)
        self._background.clear()


BUILTIN_TOOLS = (ReadTool, WriteTool, EditTool, GlobTool, GrepTool, BashTool)


def builtin_tools(base_dir: str = ".", **settings) -> list[Tool]:
    """Instantiate every built-in tool against *base_dir*.

    Recognised settings: unrestricted, max_file_size_mb, search_results_limit,
    shell_timeout_ms, enable_background_tasks.
    """
    return [cls(base_dir, **settings) for cls in BUILTIN_TOOLS]


def default_registry(base_dir: str = ".", **settings) -> ToolRegistry:
    return ToolRegistry(builtin_tools(base_dir, **settings))
