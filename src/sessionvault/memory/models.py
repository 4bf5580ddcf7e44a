"""Session memory data models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_DATETIME = TypeAdapter(datetime)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class Task(BaseModel):
    """A unit of work tracked within a session."""

    id: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    related_files: list[str] | None = None
    notes: str | None = None


class SessionMemory(BaseModel):
    """The persisted record of one agent session.

    ``id`` is chosen by the caller and is stable for the life of the record;
    saving again under the same id replaces the previous checkpoint.
    """

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    source_session_id: str = Field(default="", description="Id of the session in the host application")
    project_path: str = Field(description="Absolute path to the project")
    project_name: str = ""

    started_at: datetime
    ended_at: datetime
    duration: int = Field(default=0, ge=0, description="Minutes between start and end")

    summary: str = ""
    description: str = ""

    tasks: list[Task] = Field(default_factory=list)

    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    files_deleted: list[str] = Field(default_factory=list)

    last_user_message: str = ""
    last_assistant_message: str = ""
    next_steps: list[str] = Field(default_factory=list)
    key_decisions: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)

    tokens_used: int = Field(default=0, ge=0)
    messages_count: int = Field(default=0, ge=0)
    tool_calls_count: int = Field(default=0, ge=0)

    tags: list[str] = Field(default_factory=list)
    archived: bool = False
    archived_at: datetime | None = None
    synced: bool = False
    synced_at: datetime | None = None

    log_file: str = ""
    log_file_archived: str | None = None

    @field_validator("started_at", "ended_at", "archived_at", "synced_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @model_validator(mode="before")
    @classmethod
    def _derive_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if not data.get("project_name") and data.get("project_path"):
            data = {**data, "project_name": data["project_path"].rstrip("/").rsplit("/", 1)[-1]}
        if data.get("duration") is None and data.get("started_at") and data.get("ended_at"):
            try:
                started = as_utc(_DATETIME.validate_python(data["started_at"]))
                ended = as_utc(_DATETIME.validate_python(data["ended_at"]))
            except ValidationError:
                # Field validation reports the bad timestamp
                return data
            minutes = int((ended - started).total_seconds() // 60)
            data = {**data, "duration": max(0, minutes)}
        return data

    @model_validator(mode="after")
    def _archived_has_timestamp(self) -> "SessionMemory":
        if self.archived and self.archived_at is None:
            self.archived_at = utcnow()
        return self

    @property
    def tasks_completed(self) -> int:
        return sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED)

    @property
    def tasks_pending(self) -> int:
        return sum(1 for t in self.tasks if t.status == TaskStatus.PENDING)


class SearchMatch(BaseModel):
    """A highlighted excerpt of one indexed field."""

    field: str
    text: str
    highlight: str


class SearchResult(BaseModel):
    session: SessionMemory
    score: float = Field(description="Higher is more relevant")
    matches: list[SearchMatch] = Field(default_factory=list)


class SearchOptions(BaseModel):
    query: str
    project_path: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    limit: int = Field(default=20, ge=1)
    include_archived: bool = False

    @field_validator("from_date", "to_date")
    @classmethod
    def _normalize_timezone(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class CleanupReport(BaseModel):
    """What one retention run actually did."""

    sessions_archived: int = 0
    sessions_deleted: int = 0
    bytes_freed: int = 0
    log_files_backed_up: int = 0


class StorageStats(BaseModel):
    total_sessions: int = 0
    active_sessions: int = 0
    archived_sessions: int = 0
    storage_used_bytes: int = 0
    oldest_session: datetime | None = None
    newest_session: datetime | None = None
