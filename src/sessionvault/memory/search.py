"""Search features layered over the session store."""

import re
from datetime import datetime, timedelta, timezone

from sessionvault.memory.models import SearchOptions, SearchResult, SessionMemory, as_utc
from sessionvault.memory.store import SessionStore

# Per-match weights for related-session scoring
SAME_PROJECT_SCORE = 5
SHARED_FILE_SCORE = 3
SHARED_TAG_SCORE = 2

_AGO_RE = re.compile(r"^(\d+)\s*(day|week|month)s?\s+ago$")


class SearchIndex:
    """Query composition and ranking on top of ``SessionStore``.

    Filters are applied after the store's full-text search, so a search
    fetches ``fetch_multiplier`` times the requested limit first. Raise the
    multiplier when filters are expected to discard many hits.
    """

    def __init__(self, store: SessionStore, fetch_multiplier: int = 2):
        self.store = store
        self.fetch_multiplier = max(1, fetch_multiplier)

    def search(self, options: SearchOptions) -> list[SearchResult]:
        """Full-text search filtered by project, date range and archived state."""
        results = self.store.search(options.query, options.limit * self.fetch_multiplier)

        def keep(result: SearchResult) -> bool:
            session = result.session
            if options.project_path and options.project_path not in session.project_path:
                return False
            if options.from_date and session.started_at < options.from_date:
                return False
            if options.to_date and session.started_at > options.to_date:
                return False
            if not options.include_archived and session.archived:
                return False
            return True

        filtered = [r for r in results if keep(r)]
        filtered.sort(key=lambda r: r.score, reverse=True)
        return filtered[: options.limit]

    def search_by_file(self, file_path: str, limit: int = 20) -> list[SessionMemory]:
        """Sessions, archived included, that created, modified or deleted a matching file."""
        matches = []
        for session in self.store.get_all(include_archived=True):
            files = session.files_created + session.files_modified + session.files_deleted
            if any(file_path in f for f in files):
                matches.append(session)
                if len(matches) >= limit:
                    break
        return matches

    def search_by_tag(self, tag: str, limit: int = 20) -> list[SessionMemory]:
        wanted = tag.lower()
        matches = [
            s for s in self.store.get_all(include_archived=False)
            if any(t.lower() == wanted for t in s.tags)
        ]
        return matches[:limit]

    def get_by_date_range(
        self,
        from_date: datetime,
        to_date: datetime,
        project_path: str | None = None,
    ) -> list[SessionMemory]:
        """Active sessions started within ``[from_date, to_date]``."""
        from_date, to_date = as_utc(from_date), as_utc(to_date)
        return [
            s for s in self.store.get_all(include_archived=False)
            if from_date <= s.started_at <= to_date
            and (project_path is None or s.project_path == project_path)
        ]

    def get_related(self, session_id: str, limit: int = 5) -> list[SessionMemory]:
        """Active sessions that share a project, files or tags with the given one."""
        target = self.store.get_by_id(session_id)
        if target is None:
            return []

        target_files = target.files_created + target.files_modified
        scored: list[tuple[int, SessionMemory]] = []
        for candidate in self.store.get_all(include_archived=False):
            if candidate.id == session_id:
                continue
            score = 0
            if candidate.project_path == target.project_path:
                score += SAME_PROJECT_SCORE
            candidate_files = set(candidate.files_created + candidate.files_modified)
            score += SHARED_FILE_SCORE * sum(1 for f in target_files if f in candidate_files)
            score += SHARED_TAG_SCORE * sum(1 for t in target.tags if t in candidate.tags)
            if score > 0:
                scored.append((score, candidate))

        # sort() is stable, so equal scores keep the store's newest-first order
        scored.sort(key=lambda item: item[0], reverse=True)
        return [s for _, s in scored[:limit]]

    def get_with_pending_tasks(self, project_path: str | None = None) -> list[SessionMemory]:
        return [s for s in self._active(project_path) if s.tasks_pending > 0]

    def get_with_blockers(self, project_path: str | None = None) -> list[SessionMemory]:
        return [s for s in self._active(project_path) if s.blockers]

    def _active(self, project_path: str | None) -> list[SessionMemory]:
        sessions = self.store.get_all(include_archived=False)
        if project_path is None:
            return sessions
        return [s for s in sessions if s.project_path == project_path]


def _months_ago(now: datetime, months: int) -> datetime:
    month_index = now.year * 12 + (now.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    # Clamp to the last valid day, e.g. March 31 minus one month is Feb 28/29
    day = now.day
    while True:
        try:
            return now.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def parse_date(text: str, now: datetime | None = None) -> datetime | None:
    """Parse a relative phrase or an absolute date into a UTC datetime.

    Understands ``today``, ``yesterday``, ``last week``, ``last month``,
    ``last year``, ``N days/weeks/months ago`` and ISO 8601 dates. Returns
    ``None`` for anything else so the caller can choose a fallback.
    """
    now = as_utc(now or datetime.now(timezone.utc))
    phrase = text.strip().lower()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if phrase == "today":
        return midnight
    if phrase == "yesterday":
        return midnight - timedelta(days=1)
    if phrase == "last week":
        return now - timedelta(days=7)
    if phrase == "last month":
        return _months_ago(now, 1)
    if phrase == "last year":
        return _months_ago(now, 12)

    match = _AGO_RE.match(phrase)
    if match:
        amount, unit = int(match.group(1)), match.group(2)
        if unit == "day":
            return now - timedelta(days=amount)
        if unit == "week":
            return now - timedelta(weeks=amount)
        return _months_ago(now, amount)

    return _parse_absolute(text.strip())


def _parse_absolute(text: str) -> datetime | None:
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)
