"""Tools: the contract, the registry, the scheduler and the built-ins."""

from tandem.tools.builtin import create_builtin_registry
from tandem.tools.registry import (
    FunctionTool,
    SubAgentResult,
    Tool,
    ToolContext,
    ToolOutput,
    ToolProgress,
    ToolRegistry,
)
from tandem.tools.scheduler import (
    ExecutionGroup,
    ToolInvocation,
    ToolProgressEvent,
    ToolResult,
    ToolScheduler,
)

__all__ = [
    "ExecutionGroup",
    "FunctionTool",
    "SubAgentResult",
    "Tool",
    "ToolContext",
    "ToolInvocation",
    "ToolOutput",
    "ToolProgress",
    "ToolProgressEvent",
    "ToolRegistry",
    "ToolResult",
    "ToolScheduler",
    "create_builtin_registry",
]
