"""Wiring: build a ready-to-use AgentRuntime from Settings."""

from __future__ import annotations

import logging

from tandem.api.client import LlmClient
from tandem.api.costs import CostTracker
from tandem.api.credentials import KeyPool
from tandem.config import Settings
from tandem.engine.cancellation import CancellationController
from tandem.engine.compaction import Compactor
from tandem.engine.orchestrator import PermissionCallback, QueryOrchestrator
from tandem.engine.runtime import AgentRuntime
from tandem.session.context import SessionContext
from tandem.session.project import load_project_context
from tandem.tools.builtin import create_builtin_registry
from tandem.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an interactive agent that helps users with software engineering tasks. "
    "Use the available tools to inspect and change files in the workspace, run commands, "
    "and track multi-step work with the todo list."
)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def create_runtime(
    settings: Settings,
    *,
    system_prompt: list[str] | None = None,
    project_context: dict[str, str] | None = None,
    registry: ToolRegistry | None = None,
    can_use_tool: PermissionCallback | None = None,
    client: LlmClient | None = None,
) -> AgentRuntime:
    """Create all components in dependency order.

    Project context is read from the workspace unless given explicitly
    or disabled with ``load_project_context=False``. Call
    ``await runtime.start()`` (or use it as an async context manager)
    before the first turn.
    """
    if project_context is None and settings.load_project_context:
        project_context = load_project_context(settings.workspace_dir)
    session = SessionContext.from_settings(settings, project_context)
    client = client or LlmClient(
        settings,
        credentials=KeyPool.from_settings(settings),
        cost_sink=CostTracker(),
    )
    compactor = Compactor.from_settings(client, session, settings)
    registry = registry or create_builtin_registry(settings)
    orchestrator = QueryOrchestrator(
        client,
        registry,
        session,
        compactor,
        max_tool_rounds=settings.max_tool_rounds,
        max_concurrency=settings.max_concurrent_tools,
        can_use_tool=can_use_tool,
    )
    logger.info(
        "Runtime created (provider=%s, model=%s, tools=%s)",
        settings.provider,
        settings.model,
        ",".join(registry.names()),
    )
    return AgentRuntime(
        orchestrator,
        system_prompt=system_prompt or [DEFAULT_SYSTEM_PROMPT],
        agent_id=settings.agent_id,
        controller=CancellationController(settings.cancel_grace_seconds),
    )
