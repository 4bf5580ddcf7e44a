"""SQLite session storage with FTS5 search.

The ``sessions`` table is canonical. ``sessions_fts`` is a projection of a
fixed set of its text columns, maintained only by the triggers below, so
every committed insert, update, or delete of a row rewrites its index
entry in the same transaction.
"""

import json
import re
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from sessionvault.config import db_path as default_db_path
from sessionvault.memory.models import (
    SearchMatch,
    SearchResult,
    SessionMemory,
    StorageStats,
    Task,
)

_logger = structlog.get_logger("sessionvault.memory.store")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MS = timedelta(milliseconds=1)

# Score reported for results of the substring fallback
FALLBACK_SCORE = 1.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    source_session_id TEXT NOT NULL DEFAULT '',
    project_path TEXT NOT NULL,
    project_name TEXT NOT NULL,
    started_at INTEGER NOT NULL,
    ended_at INTEGER NOT NULL,
    duration INTEGER NOT NULL DEFAULT 0,
    summary TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    tasks_json TEXT NOT NULL DEFAULT '[]',
    tasks_completed INTEGER NOT NULL DEFAULT 0,
    tasks_pending INTEGER NOT NULL DEFAULT 0,
    files_created_json TEXT NOT NULL DEFAULT '[]',
    files_modified_json TEXT NOT NULL DEFAULT '[]',
    files_deleted_json TEXT NOT NULL DEFAULT '[]',
    last_user_message TEXT NOT NULL DEFAULT '',
    last_assistant_message TEXT NOT NULL DEFAULT '',
    next_steps_json TEXT NOT NULL DEFAULT '[]',
    key_decisions_json TEXT NOT NULL DEFAULT '[]',
    blockers_json TEXT NOT NULL DEFAULT '[]',
    tokens_used INTEGER NOT NULL DEFAULT 0,
    messages_count INTEGER NOT NULL DEFAULT 0,
    tool_calls_count INTEGER NOT NULL DEFAULT 0,
    tags_json TEXT NOT NULL DEFAULT '[]',
    archived INTEGER NOT NULL DEFAULT 0,
    archived_at INTEGER,
    synced INTEGER NOT NULL DEFAULT 0,
    synced_at INTEGER,
    log_file TEXT NOT NULL DEFAULT '',
    log_file_archived TEXT,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_path);
CREATE INDEX IF NOT EXISTS idx_sessions_started ON sessions(started_at DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_archived ON sessions(archived);
CREATE INDEX IF NOT EXISTS idx_sessions_synced ON sessions(synced);

CREATE VIRTUAL TABLE IF NOT EXISTS sessions_fts USING fts5(
    id UNINDEXED,
    summary,
    description,
    tasks_text,
    files_text,
    last_user_message,
    last_assistant_message,
    tags_text
);

CREATE TRIGGER IF NOT EXISTS sessions_ai AFTER INSERT ON sessions BEGIN
    INSERT INTO sessions_fts(
        rowid, id, summary, description, tasks_text, files_text,
        last_user_message, last_assistant_message, tags_text
    )
    VALUES (
        new.rowid, new.id, new.summary, new.description, new.tasks_json,
        new.files_created_json || ' ' || new.files_modified_json,
        new.last_user_message, new.last_assistant_message, new.tags_json
    );
END;

CREATE TRIGGER IF NOT EXISTS sessions_ad AFTER DELETE ON sessions BEGIN
    DELETE FROM sessions_fts WHERE rowid = old.rowid;
END;

CREATE TRIGGER IF NOT EXISTS sessions_au AFTER UPDATE ON sessions BEGIN
    DELETE FROM sessions_fts WHERE rowid = old.rowid;
    INSERT INTO sessions_fts(
        rowid, id, summary, description, tasks_text, files_text,
        last_user_message, last_assistant_message, tags_text
    )
    VALUES (
        new.rowid, new.id, new.summary, new.description, new.tasks_json,
        new.files_created_json || ' ' || new.files_modified_json,
        new.last_user_message, new.last_assistant_message, new.tags_json
    );
END;
"""

_COLUMNS = (
    "id",
    "source_session_id",
    "project_path",
    "project_name",
    "started_at",
    "ended_at",
    "duration",
    "summary",
    "description",
    "tasks_json",
    "tasks_completed",
    "tasks_pending",
    "files_created_json",
    "files_modified_json",
    "files_deleted_json",
    "last_user_message",
    "last_assistant_message",
    "next_steps_json",
    "key_decisions_json",
    "blockers_json",
    "tokens_used",
    "messages_count",
    "tool_calls_count",
    "tags_json",
    "archived",
    "archived_at",
    "synced",
    "synced_at",
    "log_file",
    "log_file_archived",
    "updated_at",
)

# An upsert (rather than INSERT OR REPLACE) so the row is updated in place
# and the AFTER UPDATE trigger, not a silent REPLACE delete, refreshes the index.
_UPSERT_SQL = "INSERT INTO sessions ({cols}) VALUES ({marks}) ON CONFLICT(id) DO UPDATE SET {sets}".format(
    cols=", ".join(_COLUMNS),
    marks=", ".join("?" for _ in _COLUMNS),
    sets=", ".join(f"{c} = excluded.{c}" for c in _COLUMNS if c != "id"),
)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class SessionVaultError(Exception):
    """Base class for SessionVault storage errors."""


class StoreClosedError(SessionVaultError):
    """Raised when a store is used after ``close()``."""


def to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // _MS


def from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return _EPOCH + timedelta(milliseconds=int(value))


def _now_millis() -> int:
    return to_millis(datetime.now(timezone.utc))


def _cutoff_millis(days: float) -> int:
    return _now_millis() - int(days * 24 * 60 * 60 * 1000)


def build_match_query(query: str) -> str | None:
    """Turn free text into an FTS5 MATCH expression.

    Each word becomes a quoted prefix term and all terms must match.
    Returns ``None`` when the text has no indexable words, in which case
    callers use the substring fallback instead.
    """
    tokens = _TOKEN_RE.findall(query)
    if not tokens:
        return None
    return " ".join(f'"{token}"*' for token in tokens)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _parse_json_list(value: Any) -> list:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return []
    return parsed if isinstance(parsed, list) else []


def _parse_str_list(value: Any) -> list[str]:
    items = _parse_json_list(value)
    return items if all(isinstance(item, str) for item in items) else []


def _parse_tasks(value: Any) -> list[Task]:
    tasks = []
    for item in _parse_json_list(value):
        try:
            tasks.append(Task.model_validate(item))
        except ValidationError:
            return []
    return tasks


class SessionStore:
    """SQLite-backed session memory storage.

    The connection is opened lazily on first use. WAL journaling lets a
    reader in another process see either the previous or the new version
    of a row and its index entry, never a mix.
    """

    def __init__(self, db_path: Path | None = None, busy_timeout: float = 5.0):
        self.db_path = Path(db_path) if db_path else default_db_path()
        self.busy_timeout = busy_timeout
        self._conn: sqlite3.Connection | None = None
        self._closed = False

    def _get_conn(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreClosedError(f"Store at {self.db_path} has been closed")
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
            conn.row_factory = sqlite3.Row
            try:
                # auto_vacuum only takes effect on a fresh database file
                conn.execute("PRAGMA auto_vacuum = FULL")
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
                conn.executescript(SCHEMA)
            except sqlite3.Error:
                conn.close()
                raise
            self._conn = conn
            _logger.debug("store_opened", db_path=str(self.db_path))
        return self._conn

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
        self._closed = True

    def __enter__(self) -> "SessionStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _row_to_session(self, row: sqlite3.Row) -> SessionMemory:
        return SessionMemory(
            id=row["id"],
            source_session_id=row["source_session_id"] or "",
            project_path=row["project_path"],
            project_name=row["project_name"],
            started_at=from_millis(row["started_at"]),
            ended_at=from_millis(row["ended_at"]),
            duration=max(0, row["duration"] or 0),
            summary=row["summary"] or "",
            description=row["description"] or "",
            tasks=_parse_tasks(row["tasks_json"]),
            files_created=_parse_str_list(row["files_created_json"]),
            files_modified=_parse_str_list(row["files_modified_json"]),
            files_deleted=_parse_str_list(row["files_deleted_json"]),
            last_user_message=row["last_user_message"] or "",
            last_assistant_message=row["last_assistant_message"] or "",
            next_steps=_parse_str_list(row["next_steps_json"]),
            key_decisions=_parse_str_list(row["key_decisions_json"]),
            blockers=_parse_str_list(row["blockers_json"]),
            tokens_used=row["tokens_used"] or 0,
            messages_count=row["messages_count"] or 0,
            tool_calls_count=row["tool_calls_count"] or 0,
            tags=_parse_str_list(row["tags_json"]),
            archived=bool(row["archived"]),
            archived_at=from_millis(row["archived_at"]),
            synced=bool(row["synced"]),
            synced_at=from_millis(row["synced_at"]),
            log_file=row["log_file"] or "",
            log_file_archived=row["log_file_archived"],
        )

    def _session_to_params(self, session: SessionMemory) -> tuple:
        tasks = [t.model_dump(mode="json") for t in session.tasks]
        return (
            session.id,
            session.source_session_id,
            session.project_path,
            session.project_name,
            to_millis(session.started_at),
            to_millis(session.ended_at),
            session.duration,
            session.summary,
            session.description,
            json.dumps(tasks),
            session.tasks_completed,
            session.tasks_pending,
            json.dumps(session.files_created),
            json.dumps(session.files_modified),
            json.dumps(session.files_deleted),
            session.last_user_message,
            session.last_assistant_message,
            json.dumps(session.next_steps),
            json.dumps(session.key_decisions),
            json.dumps(session.blockers),
            session.tokens_used,
            session.messages_count,
            session.tool_calls_count,
            json.dumps(session.tags),
            int(session.archived),
            to_millis(session.archived_at) if session.archived_at else None,
            int(session.synced),
            to_millis(session.synced_at) if session.synced_at else None,
            session.log_file,
            session.log_file_archived,
            _now_millis(),
        )

    def _fetch_all(self, sql: str, params: tuple | list = ()) -> list[SessionMemory]:
        rows = self._get_conn().execute(sql, params).fetchall()
        return [self._row_to_session(r) for r in rows]

    def _execute_write(self, sql: str, params: tuple | list = ()) -> int:
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(sql, params)
        return cursor.rowcount

    # ── Writes ───────────────────────────────────────────────────

    def save(self, session: SessionMemory) -> SessionMemory:
        """Insert a session, or replace the one stored under the same id."""
        self._execute_write(_UPSERT_SQL, self._session_to_params(session))
        return session

    def archive_old(self, days: float) -> int:
        """Archive active sessions that started more than ``days`` ago."""
        count = self._execute_write(
            "UPDATE sessions SET archived = 1, archived_at = ?, updated_at = ? "
            "WHERE started_at < ? AND archived = 0",
            (_now_millis(), _now_millis(), _cutoff_millis(days)),
        )
        if count:
            _logger.info("sessions_archived", count=count, older_than_days=days)
        return count

    def delete_old(self, days: float) -> int:
        """Delete every session, archived or not, that started more than ``days`` ago."""
        count = self._execute_write(
            "DELETE FROM sessions WHERE started_at < ?", (_cutoff_millis(days),)
        )
        if count:
            _logger.info("sessions_deleted", count=count, older_than_days=days)
        return count

    def update_archive_path(self, session_id: str, archive_path: str) -> bool:
        """Record where a session's compressed transcript lives."""
        count = self._execute_write(
            "UPDATE sessions SET log_file_archived = ?, updated_at = ? WHERE id = ?",
            (archive_path, _now_millis(), session_id),
        )
        return count > 0

    def mark_synced(self, session_id: str) -> bool:
        now = _now_millis()
        count = self._execute_write(
            "UPDATE sessions SET synced = 1, synced_at = ?, updated_at = ? WHERE id = ?",
            (now, now, session_id),
        )
        return count > 0

    def delete(self, session_id: str) -> bool:
        """Delete a session by ID."""
        return self._execute_write("DELETE FROM sessions WHERE id = ?", (session_id,)) > 0

    # ── Reads ────────────────────────────────────────────────────

    def get_by_id(self, session_id: str) -> SessionMemory | None:
        """Get a session by ID."""
        row = self._get_conn().execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return self._row_to_session(row) if row else None

    def get_last_for_project(self, project_path: str) -> SessionMemory | None:
        """Most recently started session for an exact project path."""
        row = self._get_conn().execute(
            "SELECT * FROM sessions WHERE project_path = ? ORDER BY started_at DESC LIMIT 1",
            (project_path,),
        ).fetchone()
        return self._row_to_session(row) if row else None

    def get_recent(self, limit: int = 10, project_path: str | None = None) -> list[SessionMemory]:
        """List recent active sessions, optionally filtered by project."""
        if project_path:
            return self._fetch_all(
                "SELECT * FROM sessions WHERE archived = 0 AND project_path = ? "
                "ORDER BY started_at DESC LIMIT ?",
                (project_path, limit),
            )
        return self._fetch_all(
            "SELECT * FROM sessions WHERE archived = 0 ORDER BY started_at DESC LIMIT ?",
            (limit,),
        )

    def get_all(self, include_archived: bool = False) -> list[SessionMemory]:
        if include_archived:
            return self._fetch_all("SELECT * FROM sessions ORDER BY started_at DESC")
        return self._fetch_all(
            "SELECT * FROM sessions WHERE archived = 0 ORDER BY started_at DESC"
        )

    def get_archived(self) -> list[SessionMemory]:
        return self._fetch_all(
            "SELECT * FROM sessions WHERE archived = 1 ORDER BY archived_at DESC"
        )

    def get_unsynced_sessions(self) -> list[SessionMemory]:
        """Sessions not yet uploaded, oldest first."""
        return self._fetch_all(
            "SELECT * FROM sessions WHERE synced = 0 ORDER BY started_at ASC"
        )

    def search(self, query: str, limit: int = 20) -> list[SearchResult]:
        """Full-text search across sessions, best match first.

        Text with no indexable words (punctuation only, empty) is matched
        as a plain substring of summary, description and last user message.
        """
        match = build_match_query(query)
        if match is None:
            return self._substring_search(query, limit)
        return self._ranked_search(match, limit)

    def _ranked_search(self, match: str, limit: int) -> list[SearchResult]:
        rows = self._get_conn().execute(
            """
            SELECT s.*,
                highlight(sessions_fts, 1, '<mark>', '</mark>') AS summary_hl,
                highlight(sessions_fts, 2, '<mark>', '</mark>') AS description_hl,
                highlight(sessions_fts, 5, '<mark>', '</mark>') AS last_user_message_hl,
                bm25(sessions_fts) AS relevance
            FROM sessions_fts
            JOIN sessions s ON s.rowid = sessions_fts.rowid
            WHERE sessions_fts MATCH ?
            ORDER BY relevance
            LIMIT ?
            """,
            (match, limit),
        ).fetchall()
        return [self._row_to_search_result(r) for r in rows]

    def _substring_search(self, query: str, limit: int) -> list[SearchResult]:
        pattern = f"%{_escape_like(query)}%"
        rows = self._get_conn().execute(
            """
            SELECT * FROM sessions
            WHERE summary LIKE ? ESCAPE '\\'
                OR description LIKE ? ESCAPE '\\'
                OR last_user_message LIKE ? ESCAPE '\\'
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (pattern, pattern, pattern, limit),
        ).fetchall()
        results = []
        for row in rows:
            summary = row["summary"] or ""
            results.append(
                SearchResult(
                    session=self._row_to_session(row),
                    score=FALLBACK_SCORE,
                    matches=[SearchMatch(field="summary", text=summary, highlight=summary)],
                )
            )
        return results

    def _row_to_search_result(self, row: sqlite3.Row) -> SearchResult:
        matches = []
        for field in ("summary", "description", "last_user_message"):
            highlighted = row[f"{field}_hl"]
            if highlighted and "<mark>" in highlighted:
                matches.append(
                    SearchMatch(field=field, text=row[field] or "", highlight=highlighted)
                )
        # bm25() is more negative for better matches
        return SearchResult(
            session=self._row_to_session(row),
            score=-float(row["relevance"] or 0.0),
            matches=matches,
        )

    def checkpoint(self) -> None:
        """Copy the write-ahead log into the database file and truncate it.

        Deleted pages only leave the database file, and the log only
        shrinks, when a checkpoint runs.
        """
        self._get_conn().execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()

    def storage_used_bytes(self) -> int:
        """Size of the database file plus its write-ahead log."""
        total = 0
        for path in (self.db_path, self.db_path.with_name(self.db_path.name + "-wal")):
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
        return total

    def get_stats(self) -> StorageStats:
        row = self._get_conn().execute(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN archived = 0 THEN 1 ELSE 0 END), 0) AS active,
                COALESCE(SUM(CASE WHEN archived = 1 THEN 1 ELSE 0 END), 0) AS archived,
                MIN(started_at) AS oldest,
                MAX(started_at) AS newest
            FROM sessions
            """
        ).fetchone()
        return StorageStats(
            total_sessions=row["total"],
            active_sessions=row["active"],
            archived_sessions=row["archived"],
            storage_used_bytes=self.storage_used_bytes(),
            oldest_session=from_millis(row["oldest"]),
            newest_session=from_millis(row["newest"]),
        )
