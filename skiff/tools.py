"""Tool definitions and implementations for the agent.

The capability set is closed: ToolName enumerates it, TOOLS (the schema the
model sees) is generated from ToolName, and dispatch() routes on ToolName.
Adding a tool means adding an enum member, a schema and a dispatch branch.
"""

import enum
import fnmatch
import logging
import os
import re
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath, PureWindowsPath

from .security import (
    SecurityVerdict,
    describe,
    safe_env,
    sanitize_output,
    validate_command,
    validate_path,
)

logger = logging.getLogger(__name__)


class ToolName(str, enum.Enum):
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    EDIT_FILE = "edit_file"
    RUN_COMMAND = "run_command"
    LIST_FILES = "list_files"
    GREP = "grep"
    FETCH_URL = "fetch_url"


@dataclass
class ToolResult:
    """Uniform tool outcome. output is always a string, possibly empty."""

    success: bool
    output: str = ""
    error: str | None = None
    warning: str | None = None

    @classmethod
    def ok(cls, output: str, warning: str | None = None) -> "ToolResult":
        return cls(success=True, output=output, warning=warning)

    @classmethod
    def failure(cls, error: str, output: str = "") -> "ToolResult":
        return cls(success=False, output=output, error=error)

    def to_content(self) -> str:
        """Render as the content of a tool message for the model."""
        if self.success:
            text = self.output or "(no output)"
            if self.warning:
                text = f"warning: {self.warning}\n{text}"
            return text
        text = f"error: {self.error}"
        if self.output:
            text += f"\n{self.output}"
        return text


@dataclass
class ToolContext:
    """Per-session inputs to tool execution.

    working_dirs[0] is the base directory relative paths resolve against;
    all entries are the allowed roots for traversal checks.
    """

    working_dirs: list[str] = field(default_factory=lambda: [os.getcwd()])

    @property
    def base_dir(self) -> str:
        return self.working_dirs[0]

    def resolve(self, path: str) -> str:
        """Join a relative path onto the base directory, keeping ``..`` intact."""
        path = os.path.expanduser(path)
        if os.path.isabs(path):
            return path
        return os.path.join(self.base_dir, path)

    def check_path(self, path: str) -> SecurityVerdict:
        return validate_path(self.resolve(path), allowed_roots=self.working_dirs)

    def display(self, path: Path) -> str:
        try:
            return str(path.relative_to(Path(self.base_dir).resolve()))
        except ValueError:
            return str(path)


def _security_failure(verdict: SecurityVerdict) -> ToolResult:
    return ToolResult.failure(f"Security: {describe(verdict)}")


def _warning(verdict: SecurityVerdict) -> str | None:
    return describe(verdict) if verdict.warned else None


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMAS = {
    ToolName.READ_FILE: {
        "description": (
            "Read the contents of a text file. "
            "Returns lines prefixed with their 1-based line numbers. "
            "Use offset/limit to page through large files; "
            "if output is truncated, a hint shows the offset for the next page."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path to the file, absolute or relative to the working directory.",
                },
                "offset": {
                    "type": "integer",
                    "description": "1-based line number to start reading from. Defaults to 1.",
                    "minimum": 1,
                    "default": 1,
                },
                "limit": {
                    "type": "integer",
                    "description": "Maximum number of lines to return (at most 2000).",
                    "minimum": 1,
                    "default": 2000,
                },
            },
            "required": ["file_path"],
        },
    },
    ToolName.WRITE_FILE: {
        "description": (
            "Create or overwrite a file with the given content, "
            "creating parent directories as needed."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path to the file to write.",
                },
                "content": {
                    "type": "string",
                    "description": "The full content to write to the file.",
                },
            },
            "required": ["file_path", "content"],
        },
    },
    ToolName.EDIT_FILE: {
        "description": (
            "Edit an existing file by replacing an exact string. "
            "old_string must match exactly once unless replace_all is true. "
            "Read the file before editing it."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path to the file to edit.",
                },
                "old_string": {
                    "type": "string",
                    "description": "The exact text to find, including whitespace.",
                },
                "new_string": {
                    "type": "string",
                    "description": "The replacement text.",
                },
                "replace_all": {
                    "type": "boolean",
                    "description": "Replace every occurrence instead of exactly one.",
                    "default": False,
                },
            },
            "required": ["file_path", "old_string", "new_string"],
        },
    },
    ToolName.RUN_COMMAND: {
        "description": (
            "Run a shell command in the working directory and return its output. "
            "Supports pipes and redirects. Dangerous commands are refused."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": 'Shell command string, e.g. "git status" or "ls -la | head".',
                },
                "timeout": {
                    "type": "integer",
                    "description": "Timeout in seconds (1-600). Defaults to 120.",
                    "default": 120,
                },
            },
            "required": ["command"],
        },
    },
    ToolName.LIST_FILES: {
        "description": (
            "Find files matching a glob pattern. "
            "Returns relative paths sorted alphabetically. "
            "VCS, build and dependency directories are skipped."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": 'Glob pattern, e.g. "**/*.py" or "src/*.ts".',
                },
                "path": {
                    "type": "string",
                    "description": 'Directory to search in. Defaults to "." (working directory).',
                    "default": ".",
                },
            },
            "required": ["pattern"],
        },
    },
    ToolName.GREP: {
        "description": (
            "Search file contents for a regular expression. "
            "Returns path:line: text entries sorted by path and line number."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Python regular expression to search for.",
                },
                "path": {
                    "type": "string",
                    "description": 'Directory to search in. Defaults to "." (working directory).',
                    "default": ".",
                },
                "include": {
                    "type": "string",
                    "description": 'Glob to filter filenames, e.g. "*.py".',
                },
            },
            "required": ["pattern"],
        },
    },
    ToolName.FETCH_URL: {
        "description": (
            "Fetch an http(s) URL. HTML is converted to plain text (or markdown), "
            "JSON is pretty-printed. Local and private network addresses are refused."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The URL to fetch (must start with http:// or https://).",
                },
                "format": {
                    "type": "string",
                    "enum": ["text", "markdown", "html"],
                    "description": "Output format for HTML pages. Defaults to 'text'.",
                },
                "timeout": {
                    "type": "integer",
                    "description": "Request timeout in seconds (1-120, default 30).",
                },
            },
            "required": ["url"],
        },
    },
}

TOOLS = [
    {"type": "function", "function": {"name": name.value, **_SCHEMAS[name]}}
    for name in ToolName
]


# ---------------------------------------------------------------------------
# read / write / edit
# ---------------------------------------------------------------------------

MAX_READ_BYTES = 10 * 1024 * 1024  # 10 MB
MAX_WRITE_BYTES = 50 * 1024 * 1024  # 50 MB
MAX_READ_LINES = 2000
MAX_LINE_LENGTH = 2000


def _read_file(
    file_path: str,
    ctx: ToolContext,
    offset: int = 1,
    limit: int = MAX_READ_LINES,
) -> ToolResult:
    """Read a text file with line numbers."""
    verdict = ctx.check_path(file_path)
    if not verdict.allowed:
        return _security_failure(verdict)

    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 1:
        return ToolResult.failure(f"offset must be a positive integer, got {offset!r}")
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        return ToolResult.failure(f"limit must be a positive integer, got {limit!r}")
    limit = min(limit, MAX_READ_LINES)

    resolved = Path(ctx.resolve(file_path))
    if not resolved.exists():
        return ToolResult.failure(f"path does not exist: {file_path}")
    if resolved.is_dir():
        return ToolResult.failure(
            f"path is a directory: {file_path}. Use list_files to see its contents."
        )

    size = resolved.stat().st_size
    if size > MAX_READ_BYTES:
        return ToolResult.failure(
            f"file too large ({size / (1024 * 1024):.1f} MB, limit is 10 MB): {file_path}. "
            "Use grep to locate the relevant part, or run_command with head/tail/sed -n."
        )

    try:
        data = resolved.read_bytes()
    except OSError as exc:
        return ToolResult.failure(str(exc))
    if b"\x00" in data:
        return ToolResult.failure(f"binary file detected: {file_path}")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        return ToolResult.failure(f"failed to decode {file_path} as UTF-8: {exc}")

    lines = text.splitlines()
    if not lines:
        return ToolResult.ok("(empty file)", warning=_warning(verdict))

    start = offset - 1
    if start >= len(lines):
        return ToolResult.failure(
            f"offset {offset} is past the end of the file ({len(lines)} lines)"
        )
    selected = lines[start : start + limit]

    output_parts = []
    for i, line in enumerate(selected, start=offset):
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH] + "... [line truncated]"
        output_parts.append(f"{i}: {line}")

    result = "\n".join(output_parts)
    remaining = len(lines) - (start + len(selected))
    if remaining > 0:
        next_offset = start + len(selected) + 1
        result += f"\n[{remaining} more lines, use offset={next_offset} to continue]"
    return ToolResult.ok(result, warning=_warning(verdict))


def _write_file(file_path: str, content: str, ctx: ToolContext) -> ToolResult:
    """Create or overwrite a file with content."""
    verdict = ctx.check_path(file_path)
    if not verdict.allowed:
        return _security_failure(verdict)

    data = content.encode("utf-8")
    if len(data) > MAX_WRITE_BYTES:
        return ToolResult.failure(
            f"content too large ({len(data)} bytes, limit is 50 MB). "
            "Split it across several files or generate it with a command."
        )

    resolved = Path(ctx.resolve(file_path))
    if resolved.is_dir():
        return ToolResult.failure(f"path is a directory: {file_path}")
    previous = resolved.stat().st_size if resolved.exists() else None

    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_bytes(data)

    summary = f"Wrote {len(data)} bytes to {file_path}"
    if previous is None:
        summary += " (new file)"
    else:
        summary += f" (was {previous} bytes, {len(data) - previous:+d})"
    return ToolResult.ok(summary, warning=_warning(verdict))


def _edit_file(
    file_path: str,
    old_string: str,
    new_string: str,
    ctx: ToolContext,
    replace_all: bool = False,
) -> ToolResult:
    """Replace old_string with new_string in an existing file."""
    from .edit import EditError, replace

    verdict = ctx.check_path(file_path)
    if not verdict.allowed:
        return _security_failure(verdict)

    resolved = Path(ctx.resolve(file_path))
    if not resolved.exists():
        return ToolResult.failure(f"file does not exist: {file_path}")
    if not resolved.is_file():
        return ToolResult.failure(f"not a regular file: {file_path}")

    try:
        content = resolved.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return ToolResult.failure(str(exc))

    try:
        new_content, count = replace(
            content, old_string, new_string, replace_all=bool(replace_all)
        )
    except EditError as exc:
        return ToolResult.failure(str(exc))

    resolved.write_text(new_content, encoding="utf-8")
    plural = "replacement" if count == 1 else "replacements"
    return ToolResult.ok(
        f"Edited {file_path} ({count} {plural})", warning=_warning(verdict)
    )


# ---------------------------------------------------------------------------
# run_command
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT = 120
MAX_TIMEOUT = 600
MAX_COMMAND_OUTPUT = 1024 * 1024  # 1 MB, stdout and stderr combined
TERMINATE_GRACE = 5  # seconds between SIGTERM and SIGKILL
_KILL_WAIT_TIMEOUT = 5


class _OutputCollector:
    """Drains stdout and stderr concurrently under one shared byte cap."""

    def __init__(self, limit: int | None = None):
        self.limit = MAX_COMMAND_OUTPUT if limit is None else limit
        self.total = 0
        self.truncated = False
        self.chunks: dict[str, list[bytes]] = {"stdout": [], "stderr": []}
        self._lock = threading.Lock()

    def drain(self, stream, name: str) -> None:
        try:
            while True:
                chunk = stream.read(4096)
                if not chunk:
                    break
                with self._lock:
                    if self.truncated:
                        continue  # keep draining to prevent pipe backpressure
                    remaining = self.limit - self.total
                    kept = chunk[:remaining]
                    self.chunks[name].append(kept)
                    self.total += len(kept)
                    if len(kept) < len(chunk) or self.total >= self.limit:
                        self.truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    def text(self, name: str) -> str:
        raw = b"".join(self.chunks[name]).decode("utf-8", errors="replace")
        return sanitize_output(raw)


def _terminate_process_tree(proc: subprocess.Popen) -> None:
    """SIGTERM the process group, then SIGKILL it after a grace period."""
    if sys.platform == "win32":
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    else:
        import signal

        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except OSError:
            pass  # already exited
        try:
            proc.wait(timeout=TERMINATE_GRACE)
            return
        except subprocess.TimeoutExpired:
            pass
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("process %s did not exit after SIGKILL", proc.pid)


def _run_command(command: str, ctx: ToolContext, timeout: int = DEFAULT_TIMEOUT) -> ToolResult:
    """Execute a shell command string and capture its output."""
    if not isinstance(command, str):
        return ToolResult.failure('"command" must be a single shell command string')
    verdict = validate_command(command)
    if not verdict.allowed:
        return _security_failure(verdict)

    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        return ToolResult.failure(f"timeout must be a number, got {timeout!r}")
    timeout = max(1, min(int(timeout), MAX_TIMEOUT))

    base_path = Path(ctx.base_dir)
    if not base_path.is_dir():
        return ToolResult.failure(f"working directory does not exist: {ctx.base_dir}")

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    env = safe_env()
    env["NO_COLOR"] = "1"
    env["FORCE_COLOR"] = "0"
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=ctx.base_dir,
        env=env,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return ToolResult.failure(f"failed to start command: {e}")

    collector = _OutputCollector()
    readers = [
        threading.Thread(target=collector.drain, args=(proc.stdout, "stdout"), daemon=True),
        threading.Thread(target=collector.drain, args=(proc.stderr, "stderr"), daemon=True),
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.debug("command timed out after %ss: %s", timeout, command)
        _terminate_process_tree(proc)

    for reader in readers:
        reader.join(timeout=2)
    proc.stdout.close()
    proc.stderr.close()

    stdout = collector.text("stdout")
    stderr = collector.text("stderr")
    marker = "\n[output truncated at 1MB]" if collector.truncated else ""

    if timed_out:
        return ToolResult.failure(
            f"command timed out after {timeout}s and was terminated",
            output=(stdout + marker).strip(),
        )
    if proc.returncode != 0:
        error = stderr.strip() or f"command exited with code {proc.returncode}"
        return ToolResult.failure(
            error, output=f"Exit code: {proc.returncode}\n{stdout}".strip() + marker
        )

    output = stdout
    if stderr.strip():
        output = (output.rstrip("\n") + "\n[stderr]\n" + stderr).lstrip("\n")
    output = output.strip() or "(command completed with no output)"
    return ToolResult.ok(output + marker, warning=_warning(verdict))


# ---------------------------------------------------------------------------
# list_files / grep
# ---------------------------------------------------------------------------

MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 50
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB

EXCLUDED_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        "node_modules",
        "dist",
        "build",
        ".next",
        "__pycache__",
        ".venv",
        "venv",
        ".tox",
        "target",
        ".mypy_cache",
        ".pytest_cache",
    }
)


def _check_pattern(pattern: str) -> str | None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"pattern {pattern!r} must be relative, not absolute"
    posix_parts = PurePosixPath(pattern).parts
    win_parts = PureWindowsPath(pattern).parts
    if ".." in posix_parts or ".." in win_parts:
        return f"pattern {pattern!r} contains '..', which is not allowed"
    return None


def _glob_regex(pattern: str) -> re.Pattern:
    """Compile a glob into a regex over '/'-separated relative paths.

    ``**`` spans directories, ``*`` and ``?`` stay within one component.
    """
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
                i += 1
            else:
                body = pattern[i + 1 : j]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = j + 1
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("".join(out) + r"\Z")


def _walk_files(root: Path):
    """Yield files under root in lexicographic order, pruning excluded dirs."""
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in EXCLUDED_DIRS)
        for filename in sorted(files):
            yield Path(dirpath) / filename


def _search_root(path: str, ctx: ToolContext) -> tuple[Path | None, ToolResult | None]:
    verdict = ctx.check_path(path)
    if not verdict.allowed:
        return None, _security_failure(verdict)
    root = Path(ctx.resolve(path)).resolve()
    if not root.exists():
        return None, ToolResult.failure(f"path does not exist: {path}")
    if not root.is_dir():
        return None, ToolResult.failure(f"path is not a directory: {path}")
    return root, None


def _list_files(pattern: str, ctx: ToolContext, path: str = ".") -> ToolResult:
    """Find files under path matching a glob pattern."""
    err = _check_pattern(pattern)
    if err:
        return ToolResult.failure(err)
    root, failure = _search_root(path, ctx)
    if failure:
        return failure

    regex = _glob_regex(pattern.replace("\\", "/").removeprefix("./"))
    matched = [
        filepath
        for filepath in _walk_files(root)
        if regex.match(filepath.relative_to(root).as_posix())
    ]
    if not matched:
        return ToolResult.ok("No files found matching the pattern.")

    displayed = sorted(ctx.display(f) for f in matched)
    output = "\n".join(displayed[:MAX_LIST_RESULTS])
    remaining = len(displayed) - MAX_LIST_RESULTS
    if remaining > 0:
        output += f"\n\n... and {remaining} more files"
    return ToolResult.ok(f"Found {len(displayed)} file(s):\n{output}")


def _grep(
    pattern: str,
    ctx: ToolContext,
    path: str = ".",
    include: str | None = None,
) -> ToolResult:
    """Search file contents for a regex pattern."""
    if include is not None:
        err = _check_pattern(include)
        if err:
            return ToolResult.failure(err)
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        return ToolResult.failure(f"invalid regex {pattern!r}: {exc}")

    root, failure = _search_root(path, ctx)
    if failure:
        return failure

    matches: list[tuple[str, int, str]] = []
    for filepath in _walk_files(root):
        if include and not fnmatch.fnmatch(filepath.name, include):
            continue
        try:
            with open(filepath, "rb") as f:
                chunk = f.read(BINARY_CHECK_BYTES)
            if b"\x00" in chunk:
                continue
            text = filepath.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue

        rel = ctx.display(filepath)
        for line_no, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                if len(line) > MAX_LINE_LENGTH:
                    line = line[:MAX_LINE_LENGTH]
                matches.append((rel, line_no, line))

    if not matches:
        return ToolResult.ok("No matches found.")

    matches.sort(key=lambda m: (m[0], m[1]))
    files = len({m[0] for m in matches})
    header = f"Found {len(matches)} match(es) in {files} file(s)"
    if len(matches) > MAX_GREP_MATCHES:
        header += f" (showing first {MAX_GREP_MATCHES})"
    lines = [f"{rel}:{line_no}: {text}" for rel, line_no, text in matches[:MAX_GREP_MATCHES]]
    return ToolResult.ok(header + ":\n" + "\n".join(lines))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def dispatch(name: str, args: dict, ctx: ToolContext) -> ToolResult:
    """Route a tool call to its implementation.

    Never raises: unknown tools, missing arguments and unexpected faults
    come back as a failed ToolResult.
    """
    try:
        tool = ToolName(name)
    except ValueError:
        return ToolResult.failure(f"unknown tool: {name!r}")
    if not isinstance(args, dict):
        return ToolResult.failure("tool arguments must be a JSON object")

    try:
        if tool is ToolName.READ_FILE:
            return _read_file(
                file_path=args["file_path"],
                ctx=ctx,
                offset=args.get("offset", 1),
                limit=args.get("limit", MAX_READ_LINES),
            )
        elif tool is ToolName.WRITE_FILE:
            return _write_file(
                file_path=args["file_path"], content=args["content"], ctx=ctx
            )
        elif tool is ToolName.EDIT_FILE:
            return _edit_file(
                file_path=args["file_path"],
                old_string=args["old_string"],
                new_string=args["new_string"],
                ctx=ctx,
                replace_all=args.get("replace_all", False),
            )
        elif tool is ToolName.RUN_COMMAND:
            return _run_command(
                command=args["command"],
                ctx=ctx,
                timeout=args.get("timeout", DEFAULT_TIMEOUT),
            )
        elif tool is ToolName.LIST_FILES:
            return _list_files(
                pattern=args["pattern"], ctx=ctx, path=args.get("path") or "."
            )
        elif tool is ToolName.GREP:
            return _grep(
                pattern=args["pattern"],
                ctx=ctx,
                path=args.get("path") or ".",
                include=args.get("include"),
            )
        elif tool is ToolName.FETCH_URL:
            from .fetch import fetch_url

            return fetch_url(
                url=args["url"],
                format=args.get("format") or "text",
                timeout=args.get("timeout", 30),
            )
    except KeyError as exc:
        return ToolResult.failure(f"missing required argument {exc.args[0]!r}")
    except Exception as exc:
        logger.debug("tool %s failed", name, exc_info=True)
        return ToolResult.failure(f"{type(exc).__name__}: {exc}")
    raise AssertionError(f"unhandled tool {tool}")
