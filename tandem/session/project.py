"""Project context gathered from the workspace at session start.

Keys follow the names the system prompt exposes as <context name=...>
blocks: readme, projectDocs (root CLAUDE.md / Code_Context.md) and
claudeFiles (pointers to the same files in subdirectories).
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

PROJECT_DOC_NAMES = ("Code_Context.md", "CLAUDE.md")
MAX_DOC_CHARS = 40_000
MAX_NESTED_DOCS = 50
_SKIP_DIRS = {"node_modules", "__pycache__", "venv", ".venv"}


def _read(path: Path) -> str | None:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Could not read %s: %s", path, e)
        return None
    if len(content) > MAX_DOC_CHARS:
        content = content[:MAX_DOC_CHARS] + "\n... (truncated)"
    return content


def _nested_docs(root: Path) -> list[Path]:
    found: list[Path] = []
    for name in PROJECT_DOC_NAMES:
        for path in sorted(root.rglob(name)):
            rel = path.relative_to(root)
            if len(rel.parts) < 2:
                continue
            if any(part.startswith(".") or part in _SKIP_DIRS for part in rel.parts[:-1]):
                continue
            found.append(path)
            if len(found) >= MAX_NESTED_DOCS:
                return found
    return found


def load_project_context(workspace_dir: str) -> dict[str, str]:
    """Read README.md and project docs from the workspace root."""
    root = Path(workspace_dir)
    if not root.is_dir():
        logger.debug("Workspace %s does not exist, no project context", workspace_dir)
        return {}

    context: dict[str, str] = {}
    readme = root / "README.md"
    if readme.is_file():
        content = _read(readme)
        if content:
            context["readme"] = content

    docs = []
    for name in PROJECT_DOC_NAMES:
        path = root / name
        if path.is_file():
            content = _read(path)
            if content:
                docs.append(f"# {name}\n\n{content}")
    if docs:
        context["projectDocs"] = "\n\n---\n\n".join(docs)

    nested = _nested_docs(root)
    if nested:
        kinds = ", ".join(n for n in PROJECT_DOC_NAMES if any(p.name == n for p in nested))
        listing = "\n".join(f"- {p}" for p in nested)
        context["claudeFiles"] = (
            f"NOTE: Additional project documentation files ({kinds}) were found. When working in "
            f"these directories, make sure to read and follow the instructions in the corresponding "
            f"files:\n{listing}"
        )

    logger.info("Loaded project context from %s: %s", workspace_dir, ",".join(context) or "(none)")
    return context
