"""Retention policy: archive, compress, delete and trim session memories.

A session moves through active -> archived -> (transcript compressed) ->
deleted. ``RetentionManager.run_cleanup`` drives that lifecycle using only
the public ``SessionStore`` API, and is safe to run repeatedly.
"""

import gzip
import math
import re
import shutil
import zlib
from datetime import datetime, timedelta, timezone
from pathlib import Path

import structlog

from sessionvault.config import RetentionConfig
from sessionvault.host import is_host_retention_overridden, override_host_retention
from sessionvault.memory.models import CleanupReport, SessionMemory
from sessionvault.memory.store import SessionStore

_logger = structlog.get_logger("sessionvault.memory.retention")

FOREVER = math.inf
DEFAULT_RETENTION_DAYS = 30
# Rough size of one stored session row, used to report freed bytes
ESTIMATED_SESSION_BYTES = 5000
ARCHIVE_SUFFIX = ".jsonl.gz"

_RETENTION_RE = re.compile(r"^(\d+)(d|m|y)$")
_UNIT_DAYS = {"d": 1, "m": 30, "y": 365}


def parse_days(retention: str) -> float:
    """Convert ``7d`` / ``2m`` / ``3y`` / ``forever`` to a number of days.

    ``forever`` is ``math.inf``. Unrecognized strings mean 30 days.
    """
    value = retention.strip().lower()
    if value == "forever":
        return FOREVER
    match = _RETENTION_RE.match(value)
    if not match:
        _logger.warning("unrecognized_retention", retention=retention, days=DEFAULT_RETENTION_DAYS)
        return DEFAULT_RETENTION_DAYS
    return int(match.group(1)) * _UNIT_DAYS[match.group(2)]


def decompress_log_file(archive_path: str | Path) -> str | None:
    """Return the original transcript text, or ``None`` if it cannot be read."""
    archive_path = Path(archive_path)
    if not archive_path.exists():
        return None
    try:
        with gzip.open(archive_path, "rt", encoding="utf-8") as f:
            return f.read()
    except (OSError, EOFError, zlib.error, UnicodeDecodeError) as exc:
        _logger.warning("log_decompression_failed", archive_path=str(archive_path), error=str(exc))
        return None


def _dir_size(path: Path) -> int:
    if not path.exists():
        return 0
    total = 0
    for entry in path.rglob("*"):
        try:
            if entry.is_file():
                total += entry.stat().st_size
        except OSError:
            continue
    return total


class RetentionManager:
    """Applies a ``RetentionConfig`` to a ``SessionStore``.

    ``data_dir`` is the storage location whose total size is held under
    ``max_storage_gb``; compressed transcripts go to ``archive_dir``.
    """

    def __init__(
        self,
        store: SessionStore,
        config: RetentionConfig,
        archive_dir: Path,
        data_dir: Path | None = None,
        host_settings_path: Path | None = None,
    ):
        self.store = store
        self.config = config
        self.archive_dir = Path(archive_dir)
        self.data_dir = Path(data_dir) if data_dir else self.archive_dir.parent
        self.host_settings_path = host_settings_path
        self.archive_dir.mkdir(parents=True, exist_ok=True)

        if config.override_host_retention:
            override_host_retention(host_settings_path)

    def run_cleanup(self) -> CleanupReport:
        """Run every retention phase once and report what was done."""
        report = CleanupReport()
        full_days = parse_days(self.config.full_sessions)
        archive_days = parse_days(self.config.archives)

        if full_days != FOREVER:
            report.sessions_archived = self.store.archive_old(full_days)

        for session in self.store.get_archived():
            if session.log_file and not session.log_file_archived:
                if self.compress_log_file(session):
                    report.log_files_backed_up += 1

        if archive_days != FOREVER:
            deleted, freed = self._delete_expired(archive_days)
            report.sessions_deleted += deleted
            report.bytes_freed += freed

        max_bytes = self.config.max_storage_bytes
        if self.calculate_storage_used() > max_bytes:
            deleted, freed = self._trim_to_storage_limit(max_bytes)
            report.sessions_deleted += deleted
            report.bytes_freed += freed

        _logger.info("cleanup_finished", **report.model_dump())
        return report

    def compress_log_file(self, session: SessionMemory) -> str | None:
        """Gzip a session's raw transcript into the archive directory.

        Returns the archive path, or ``None`` when the transcript is gone or
        could not be compressed.
        """
        if not session.log_file:
            return None
        source = Path(session.log_file)
        if not source.is_file():
            _logger.debug("log_file_missing", session_id=session.id, log_file=session.log_file)
            return None

        archive_path = self.archive_dir / f"{session.id}{ARCHIVE_SUFFIX}"
        partial = archive_path.with_name(archive_path.name + ".tmp")
        try:
            with source.open("rb") as src, gzip.open(partial, "wb", compresslevel=9) as dst:
                shutil.copyfileobj(src, dst)
            partial.replace(archive_path)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            _logger.warning("log_compression_failed", session_id=session.id, error=str(exc))
            return None

        if not self.store.update_archive_path(session.id, str(archive_path)):
            # The session was deleted while we compressed
            archive_path.unlink(missing_ok=True)
            return None
        return str(archive_path)

    def decompress_log_file(self, archive_path: str | Path) -> str | None:
        return decompress_log_file(archive_path)

    def is_host_retention_overridden(self) -> bool:
        return is_host_retention_overridden(self.host_settings_path)

    def calculate_storage_used(self) -> int:
        """Total bytes under the storage location (database, WAL, archives).

        Checkpoints first so rows deleted since the last checkpoint are
        no longer counted.
        """
        self.store.checkpoint()
        return _dir_size(self.data_dir)

    def list_archived_files(self) -> list[Path]:
        if not self.archive_dir.exists():
            return []
        return sorted(p for p in self.archive_dir.iterdir() if p.name.endswith(".gz"))

    def _remove_archive(self, session: SessionMemory) -> int:
        if not session.log_file_archived:
            return 0
        path = Path(session.log_file_archived)
        try:
            size = path.stat().st_size
            path.unlink()
        except FileNotFoundError:
            return 0
        except OSError as exc:
            _logger.warning("archive_removal_failed", session_id=session.id, error=str(exc))
            return 0
        return size

    def _delete_expired(self, archive_days: float) -> tuple[int, int]:
        expired = [
            s for s in self.store.get_all(include_archived=True)
            if s.log_file_archived and _older_than(s, archive_days)
        ]
        deleted = self.store.delete_old(archive_days)
        freed = deleted * ESTIMATED_SESSION_BYTES
        for session in expired:
            if self.store.get_by_id(session.id) is None:
                freed += self._remove_archive(session)
        return deleted, freed

    def _trim_to_storage_limit(self, max_bytes: int) -> tuple[int, int]:
        """Delete oldest sessions, active ones included, until under ``max_bytes``."""
        deleted = 0
        freed = 0
        sessions = sorted(self.store.get_all(include_archived=True), key=lambda s: s.started_at)
        current = self.calculate_storage_used()
        _logger.info("storage_over_limit", used_bytes=current, max_bytes=max_bytes)

        for session in sessions:
            if current <= max_bytes:
                break
            freed += self._remove_archive(session)
            if self.store.delete(session.id):
                deleted += 1
                freed += ESTIMATED_SESSION_BYTES
            current = self.calculate_storage_used()

        if current > max_bytes:
            _logger.warning("storage_limit_unreachable", used_bytes=current, max_bytes=max_bytes)
        return deleted, freed


def _older_than(session: SessionMemory, days: float) -> bool:
    return session.started_at < datetime.now(timezone.utc) - timedelta(days=days)
