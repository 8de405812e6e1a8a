"""MCP server entry point - card workflow tools for KanDo."""

from __future__ import annotations

import json
import logging
import sys
from typing import Optional

from fastmcp import FastMCP

from .config import ensure_data_dirs
from .db import init_db
from .settings import load_settings
from .sync import KandoSync, status_label

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("kando")

# Initialize data directories and database
ensure_data_dirs()
init_db()

# Create the MCP server
mcp = FastMCP(
    "KanDo",
    instructions=(
        "KanDo links markdown cards in an Obsidian vault to Vibe Kanban tasks. "
        "Use these tools to push cards, start coding-agent attempts, and pull "
        "task status back into the card. Card paths are vault-relative."
    ),
)

_sync = None


def _get_sync():
    """Orchestrator for tool calls. Status polling stays with the daemon."""
    global _sync
    if _sync is None:
        settings = load_settings().model_copy(update={"auto_sync_status": False})
        _sync = KandoSync(settings)
    return _sync


# =============================================================================
# Card Tools (5)
# =============================================================================

@mcp.tool()
async def kando_push(path: str, project_id: Optional[str] = None) -> str:
    """Push a card to Vibe Kanban: create its task, or update title and description.

    project_id overrides the card's project and the default project for new cards.
    """
    sync = _get_sync()
    try:
        task = await sync.push_card(path, project_id)
        if task is None:
            return json.dumps({"status": "updated", "path": path})
        return json.dumps({
            "status": "created",
            "path": path,
            "task_id": task.id,
            "project_id": task.project_id,
        })
    except Exception as e:
        logger.error("kando_push failed: %s", e, exc_info=True)
        return json.dumps({"error": str(e)})


@mcp.tool()
async def kando_execute(
    path: str,
    executor: Optional[str] = None,
    variant: Optional[str] = None,
    branch: Optional[str] = None,
) -> str:
    """Start a coding-agent attempt for a card, pushing it first.

    Executor, variant and base branch fall back to the configured defaults.
    """
    sync = _get_sync()
    try:
        attempt = await sync.execute_card(path, executor, variant, branch)
        return json.dumps({
            "status": "started",
            "attempt_id": attempt.id,
            "branch": attempt.branch,
            "executor": attempt.executor,
        })
    except Exception as e:
        logger.error("kando_execute failed: %s", e, exc_info=True)
        return json.dumps({"error": str(e)})


@mcp.tool()
async def kando_pull_status(path: str) -> str:
    """Fetch the card's task and attempts and write the status into the card."""
    sync = _get_sync()
    try:
        task, attempts = await sync.pull_status(path)
        latest = attempts[-1] if attempts else None
        return json.dumps({
            "status": task.status.value,
            "label": status_label(task.status),
            "attempts": len(attempts),
            "latest_attempt": latest.model_dump() if latest else None,
        })
    except Exception as e:
        logger.error("kando_pull_status failed: %s", e, exc_info=True)
        return json.dumps({"error": str(e)})


@mcp.tool()
async def kando_create_card(
    title: str,
    project_id: Optional[str] = None,
    description: str = "",
    folder: Optional[str] = None,
) -> str:
    """Create a new, not yet pushed card in the cards folder (or the given folder)."""
    sync = _get_sync()
    try:
        project_id = project_id or sync.settings.default_project_id
        if not project_id:
            return json.dumps({"error": "No project given and no default project configured"})
        project = await sync.get_project(project_id)
        path = await sync.create_card(title, project, description, folder)
        return json.dumps({"status": "created", "path": path, "project": project.name})
    except Exception as e:
        logger.error("kando_create_card failed: %s", e, exc_info=True)
        return json.dumps({"error": str(e)})


@mcp.tool()
async def kando_card_status(path: str) -> str:
    """Show a card's sync state as stored in its frontmatter (no network call)."""
    sync = _get_sync()
    try:
        status = await sync.card_status(path)
        if status["synced"] and status["project_id"]:
            status["url"] = await sync.task_url(path)
        return json.dumps(status)
    except Exception as e:
        logger.error("kando_card_status failed: %s", e, exc_info=True)
        return json.dumps({"error": str(e)})


# =============================================================================
# Service Tools (2)
# =============================================================================

@mcp.tool()
async def kando_list_projects() -> str:
    """List Vibe Kanban projects with their branches and executor options."""
    sync = _get_sync()
    try:
        projects = await sync.list_projects()
        result = []
        for project in projects:
            branches, executors = await sync.get_execution_options(project.id)
            result.append({
                "id": project.id,
                "name": project.name,
                "branches": [b.name for b in branches],
                "executors": [e.model_dump() for e in executors],
            })
        return json.dumps({"count": len(result), "projects": result})
    except Exception as e:
        logger.error("kando_list_projects failed: %s", e, exc_info=True)
        return json.dumps({"error": str(e)})


@mcp.tool()
def kando_daemon_status(action: str = "status") -> str:
    """Report or control the background status-sync daemon.

    Actions: status (default), start, stop.
    """
    from .daemon import daemon_control, get_daemon_status

    try:
        if action == "status":
            return json.dumps(get_daemon_status())
        return json.dumps(daemon_control(action))
    except Exception as e:
        logger.error("kando_daemon_status failed: %s", e, exc_info=True)
        return json.dumps({"error": str(e)})


# =============================================================================
# Server entry point
# =============================================================================

def main():
    """Run the MCP server."""
    logger.info("KanDo MCP server starting...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
