"""Built-in tools: read_file, write_file, bash, todo_read, todo_write, task.

File tools are confined to the workspace directory and report reads and
edits to the session's freshness tracker. write_file refuses to
overwrite a file that changed since it was last read.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from tandem.config import Settings
from tandem.session.todos import TodoItem, format_todos
from tandem.tools.registry import ToolContext, ToolOutput, ToolProgress, ToolRegistry

logger = logging.getLogger(__name__)

# Limits
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB

_TODO_LIST = TypeAdapter(list[TodoItem])


def add_line_numbers(content: str, start_line: int = 1) -> str:
    """Number lines the way ``cat -n`` does."""
    if not content:
        return ""
    return "\n".join(
        f"{n:>6}\t{line}" for n, line in enumerate(content.split("\n"), start=start_line)
    )


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Validate that a path is under workspace_dir.

    Raises ValueError if path escapes workspace.
    """
    workspace = Path(workspace_dir).resolve()
    target = (workspace / path_str).resolve() if not Path(path_str).is_absolute() else Path(path_str).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


class ReadFileTool:
    name = "read_file"
    description = "Read a file from the workspace directory. Output is line-numbered."
    concurrency_safe = True
    read_only = True
    needs_permission = False
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
            "offset": {
                "type": "integer",
                "description": "Line offset to start reading from (0-indexed)",
                "default": 0,
                "minimum": 0,
            },
            "limit": {
                "type": "integer",
                "description": "Number of lines to read (0 = all)",
                "default": 0,
                "minimum": 0,
            },
        },
        "required": ["path"],
    }

    def __init__(self, workspace_dir: str) -> None:
        self.workspace_dir = workspace_dir

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> AsyncIterator[ToolOutput]:
        path = tool_input["path"]
        offset = tool_input.get("offset", 0)
        limit = tool_input.get("limit", 0)
        try:
            target = _validate_path(path, self.workspace_dir)
        except ValueError as e:
            yield ToolOutput(str(e), is_error=True)
            return

        if not target.exists():
            yield ToolOutput(f"File not found: {path}", is_error=True)
            return
        if not target.is_file():
            yield ToolOutput(f"Not a file: {path}", is_error=True)
            return

        file_size = target.stat().st_size
        if file_size > _MAX_FILE_SIZE and not limit:
            yield ToolOutput(
                f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
                f"Use offset/limit to read portions.",
                is_error=True,
            )
            return

        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        lines = content.split("\n")
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]

        if context.session is not None:
            await context.session.files.record_read(str(target), agent_id=context.agent_id)

        text = add_line_numbers("\n".join(lines), start_line=offset + 1)
        yield ToolOutput(_truncate(text, "output") if text else "(empty file)")


class WriteFileTool:
    name = "write_file"
    description = "Write content to a file in the workspace directory. Existing files must be read first."
    concurrency_safe = False
    read_only = False
    needs_permission = True
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
            "content": {"type": "string", "description": "Content to write to the file"},
        },
        "required": ["path", "content"],
    }

    def __init__(self, workspace_dir: str) -> None:
        self.workspace_dir = workspace_dir

    async def validate_input(self, tool_input: dict[str, Any], context: ToolContext) -> str | None:
        try:
            target = _validate_path(tool_input["path"], self.workspace_dir)
        except ValueError as e:
            return str(e)
        files = context.session.files if context.session is not None else None
        if files is None or not target.exists():
            return None
        if not files.is_tracked(str(target)):
            return "File has not been read yet. Read it first before writing to it."
        check = await files.check_freshness(str(target), agent_id=context.agent_id)
        if check.conflict:
            return "File has been modified since read, either by the user or by a linter. Read it again before attempting to write it."
        return None

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> AsyncIterator[ToolOutput]:
        content = tool_input["content"]
        target = _validate_path(tool_input["path"], self.workspace_dir)
        existed = target.exists()

        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")

        if context.session is not None:
            files = context.session.files
            if not files.is_tracked(str(target)):
                await files.record_read(str(target), agent_id=context.agent_id)
            await files.record_edit(str(target), content, agent_id=context.agent_id)

        verb = "updated" if existed else "created"
        yield ToolOutput(f"File {verb} successfully: {target}\nSize: {len(content):,} bytes")


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------


class BashTool:
    name = "bash"
    description = "Execute a shell command in the workspace directory"
    concurrency_safe = False
    read_only = False
    needs_permission = True

    def __init__(self, workspace_dir: str, default_timeout: int = 120, max_timeout: int = 600) -> None:
        self.workspace_dir = workspace_dir
        self.default_timeout = default_timeout
        self.max_timeout = max_timeout
        self.input_schema: dict[str, Any] = {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to execute"},
                "timeout": {
                    "type": "integer",
                    "description": f"Timeout in seconds (default {default_timeout}, max {max_timeout})",
                    "default": default_timeout,
                    "minimum": 1,
                    "maximum": max_timeout,
                },
            },
            "required": ["command"],
        }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> AsyncIterator[ToolOutput]:
        command = tool_input["command"]
        effective_timeout = max(1, min(tool_input.get("timeout", self.default_timeout), self.max_timeout))

        workspace = Path(self.workspace_dir)
        workspace.mkdir(parents=True, exist_ok=True)

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
        )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            yield ToolOutput(f"Command timed out after {effective_timeout}s.\nCommand: {command}", is_error=True)
            return
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
        stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

        parts = []
        if stdout_text:
            parts.append(stdout_text)
        if stderr_text:
            parts.append(f"STDERR:\n{stderr_text}")
        if proc.returncode != 0:
            parts.append(f"Exit code: {proc.returncode}")

        yield ToolOutput("\n".join(parts) if parts else "(no output)", is_error=proc.returncode != 0)


# ---------------------------------------------------------------------------
# Todos
# ---------------------------------------------------------------------------


class TodoReadTool:
    name = "todo_read"
    description = "Read the current todo list with ids, statuses and priorities."
    concurrency_safe = True
    read_only = True
    needs_permission = False
    input_schema: dict[str, Any] = {"type": "object", "properties": {}}

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> AsyncIterator[ToolOutput]:
        todos = context.session.todos.get_tasks(context.agent_id)
        yield ToolOutput(format_todos(todos, verbose=True))


class TodoWriteTool:
    name = "todo_write"
    description = "Replace the todo list. Use it to plan and track multi-step work."
    concurrency_safe = False
    read_only = False
    needs_permission = False
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "todos": {
                "type": "array",
                "description": "The complete updated todo list",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "content": {"type": "string"},
                        "status": {"type": "string", "enum": ["pending", "in_progress", "completed"]},
                        "priority": {"type": "string", "enum": ["high", "medium", "low"]},
                    },
                    "required": ["id", "content", "status"],
                },
            }
        },
        "required": ["todos"],
    }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> AsyncIterator[ToolOutput]:
        try:
            todos = _TODO_LIST.validate_python(tool_input["todos"])
            await context.session.todos.set_tasks(context.agent_id, todos)
        except (ValidationError, ValueError) as e:
            yield ToolOutput(f"Invalid todo list: {e}", is_error=True)
            return
        yield ToolOutput(
            "Todos have been modified successfully. Ensure that you continue to use the todo list "
            "to track your progress. Please proceed with the current tasks if applicable"
        )


# ---------------------------------------------------------------------------
# Sub-agent delegation
# ---------------------------------------------------------------------------


class TaskTool:
    name = "task"
    description = (
        "Launch a sub-agent to handle a self-contained task with the same tools. "
        "The sub-agent cannot launch further sub-agents."
    )
    concurrency_safe = True
    read_only = True
    needs_permission = False
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "description": {"type": "string", "description": "A short (3-5 word) description of the task"},
            "prompt": {"type": "string", "description": "The task for the agent to perform"},
        },
        "required": ["description", "prompt"],
    }

    async def execute(
        self, tool_input: dict[str, Any], context: ToolContext
    ) -> AsyncIterator[ToolProgress | ToolOutput]:
        if context.delegate is None:
            yield ToolOutput("Sub-agents are not available in this context.", is_error=True)
            return
        result = await context.delegate(tool_input["description"], tool_input["prompt"])
        yield ToolProgress(
            f"Done ({result.tool_uses} tool uses · {result.tokens:,} tokens · {result.duration_ms / 1000:.1f}s)"
        )
        yield ToolOutput(result.text or "(no content)")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def create_builtin_registry(settings: Settings) -> ToolRegistry:
    """Registry with every built-in tool bound to the configured workspace."""
    workspace = settings.workspace_dir
    return ToolRegistry(
        [
            ReadFileTool(workspace),
            WriteFileTool(workspace),
            BashTool(workspace, settings.bash_timeout, settings.bash_max_timeout),
            TodoReadTool(),
            TodoWriteTool(),
            TaskTool(),
        ]
    )
