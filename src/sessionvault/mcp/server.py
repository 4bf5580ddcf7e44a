"""MCP server exposing session memory tools."""

from datetime import datetime

from mcp.server.fastmcp import FastMCP

from sessionvault.config import Config
from sessionvault.memory.models import SessionMemory, Task
from sessionvault.memory.store import SessionStore

mcp = FastMCP("sessionvault")
store = SessionStore()
config = Config()


def _brief(session: SessionMemory) -> dict:
    return {
        "id": session.id,
        "project_path": session.project_path,
        "project_name": session.project_name,
        "summary": session.summary[:200] + ("..." if len(session.summary) > 200 else ""),
        "tags": session.tags,
        "started_at": session.started_at.isoformat(),
        "duration": session.duration,
        "archived": session.archived,
    }


def _full(session: SessionMemory) -> dict:
    data = session.model_dump(mode="json", exclude={"synced", "synced_at"})
    data["tasks_completed"] = session.tasks_completed
    data["tasks_pending"] = session.tasks_pending
    return data


@mcp.tool()
def save_session(
    session_id: str,
    project_path: str,
    started_at: str,
    ended_at: str,
    summary: str,
    description: str = "",
    tasks: list[dict] | None = None,
    files_created: list[str] | None = None,
    files_modified: list[str] | None = None,
    next_steps: list[str] | None = None,
    key_decisions: list[str] | None = None,
    blockers: list[str] | None = None,
    tags: list[str] | None = None,
) -> dict:
    """Save (or replace) a session memory.

    Call this at the end of a coding session, or periodically as a checkpoint.
    Saving again with the same session_id replaces the earlier checkpoint.

    Args:
        session_id: Stable id for this session; reuse it for every checkpoint
        project_path: Absolute path to the project being worked on
        started_at: ISO 8601 start time
        ended_at: ISO 8601 end time (or now, for a checkpoint)
        summary: One-line summary of what was done
        description: Longer description of the work
        tasks: Tasks as {"id", "description", "status"} objects
        files_created: Files created during the session
        files_modified: Files changed during the session
        next_steps: What should happen next
        key_decisions: Important decisions made and why
        blockers: Anything blocking progress
        tags: Tags for categorization (e.g. ["auth", "bugfix"])
    """
    session = SessionMemory(
        id=session_id,
        project_path=project_path,
        started_at=datetime.fromisoformat(started_at),
        ended_at=datetime.fromisoformat(ended_at),
        summary=summary,
        description=description,
        tasks=[Task.model_validate(t) for t in tasks or []],
        files_created=files_created or [],
        files_modified=files_modified or [],
        next_steps=next_steps or [],
        key_decisions=key_decisions or [],
        blockers=blockers or [],
        tags=tags or [],
    )
    result = store.save(session)
    return {"id": result.id, "status": "saved", "summary": result.summary}


@mcp.tool()
def search_sessions(query: str, limit: int = 10) -> list[dict] | str:
    """Search past session memories with full-text search.

    Searches summaries, descriptions, tasks, files, last messages and tags.

    Args:
        query: Search text
        limit: Maximum results to return (default 10)
    """
    if not config.search.enabled:
        return "Search is disabled (search.enabled in config.yml)"
    return [
        {**_brief(r.session), "score": r.score, "matches": [m.highlight for m in r.matches]}
        for r in store.search(query, limit)
    ]


@mcp.tool()
def recent_sessions(project_path: str | None = None, limit: int = 10) -> list[dict]:
    """Browse recent, non-archived session memories.

    Args:
        project_path: Optional - filter to a specific project
        limit: Maximum results to return (default 10)
    """
    return [_brief(s) for s in store.get_recent(limit=limit, project_path=project_path)]


@mcp.tool()
def last_session(project_path: str) -> dict | str:
    """Get the most recent session for a project, to resume where it left off.

    Args:
        project_path: Absolute path to the project
    """
    session = store.get_last_for_project(project_path)
    if not session:
        return f"No sessions found for {project_path}"
    return _full(session)


@mcp.tool()
def get_session(session_id: str) -> dict | str:
    """Get full details of a specific session by ID.

    Args:
        session_id: The session ID to retrieve
    """
    session = store.get_by_id(session_id)
    if not session:
        return f"Session {session_id} not found"
    return _full(session)


@mcp.tool()
def storage_stats() -> dict:
    """Report how many sessions are stored and how much space they use."""
    return store.get_stats().model_dump(mode="json")
