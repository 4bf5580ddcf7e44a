"""Tests for the retention manager."""

import gzip
import json
import math

import pytest

from sessionvault.config import RetentionConfig
from sessionvault.memory.retention import (
    ESTIMATED_SESSION_BYTES,
    RetentionManager,
    decompress_log_file,
    parse_days,
)

from conftest import days_ago


@pytest.fixture
def data_dir(store):
    return store.db_path.parent


@pytest.fixture
def host_settings(tmp_path):
    return tmp_path / "host" / "settings.json"


@pytest.fixture
def make_manager(store, data_dir, host_settings):
    def factory(**config) -> RetentionManager:
        config.setdefault("override_host_retention", False)
        return RetentionManager(
            store,
            RetentionConfig(**config),
            archive_dir=data_dir / "archive",
            data_dir=data_dir,
            host_settings_path=host_settings,
        )

    return factory


@pytest.fixture
def transcript(tmp_path):
    def factory(name: str, content: str = '{"type": "human", "content": "hi"}\n') -> str:
        path = tmp_path / "logs" / f"{name}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return str(path)

    return factory


class TestParseDays:
    @pytest.mark.parametrize(
        ("value", "days"),
        [("7d", 7), ("2m", 60), ("3y", 1095), ("1y", 365), ("forever", math.inf), ("30D", 30)],
    )
    def test_formats(self, value, days):
        assert parse_days(value) == days

    @pytest.mark.parametrize("value", ["", "soon", "7w", "d7", "-5d"])
    def test_unrecognized_defaults_to_30(self, value):
        assert parse_days(value) == 30


class TestInitialization:
    def test_overrides_host_retention_when_configured(self, make_manager, host_settings):
        host_settings.parent.mkdir(parents=True)
        host_settings.write_text(json.dumps({"theme": "dark"}))

        manager = make_manager(override_host_retention=True)

        settings = json.loads(host_settings.read_text())
        assert settings["theme"] == "dark"
        assert settings["cleanupPeriodDays"] == 36500
        assert manager.is_host_retention_overridden()

    def test_leaves_host_settings_alone_when_disabled(self, make_manager, host_settings):
        make_manager(override_host_retention=False)
        assert not host_settings.exists()

    def test_broken_host_settings_do_not_fail_construction(self, make_manager, host_settings):
        host_settings.parent.mkdir(parents=True)
        host_settings.write_text("{not json")

        manager = make_manager(override_host_retention=True)

        assert host_settings.read_text() == "{not json"
        assert not manager.is_host_retention_overridden()

    def test_creates_archive_dir(self, make_manager, data_dir):
        make_manager()
        assert (data_dir / "archive").is_dir()


class TestCompression:
    def test_compress_and_decompress(self, store, make_manager, make_session, transcript):
        content = "".join(json.dumps({"n": i}) + "\n" for i in range(100))
        session = make_session(log_file=transcript("s1", content))
        store.save(session)
        manager = make_manager()

        archive_path = manager.compress_log_file(session)

        assert archive_path.endswith(f"{session.id}.jsonl.gz")
        assert store.get_by_id(session.id).log_file_archived == archive_path
        assert decompress_log_file(archive_path) == content
        with gzip.open(archive_path, "rt") as f:
            assert f.read() == content
        assert manager.list_archived_files()[0].name == f"{session.id}.jsonl.gz"

    def test_missing_log_file_is_skipped(self, store, make_manager, make_session):
        session = make_session(log_file="/does/not/exist.jsonl")
        store.save(session)

        assert make_manager().compress_log_file(session) is None
        assert store.get_by_id(session.id).log_file_archived is None

    def test_decompress_missing_archive(self, tmp_path):
        assert decompress_log_file(tmp_path / "missing.jsonl.gz") is None

    def test_decompress_corrupt_archive(self, tmp_path):
        bad = tmp_path / "bad.jsonl.gz"
        bad.write_bytes(b"definitely not gzip")
        assert decompress_log_file(bad) is None


class TestRunCleanup:
    def test_archives_and_compresses(self, store, make_manager, make_session, transcript):
        store.save(make_session(id="old", started_at=days_ago(100), log_file=transcript("old")))
        store.save(make_session(id="gone", started_at=days_ago(100), log_file="/missing.jsonl"))
        store.save(make_session(id="new", started_at=days_ago(1), log_file=transcript("new")))

        report = make_manager(full_sessions="30d").run_cleanup()

        assert report.sessions_archived == 2
        assert report.log_files_backed_up == 1
        assert report.sessions_deleted == 0
        assert store.get_by_id("old").log_file_archived is not None
        assert store.get_by_id("gone").log_file_archived is None
        assert store.get_by_id("new").log_file_archived is None
        assert not store.get_by_id("new").archived

    def test_is_idempotent(self, store, make_manager, make_session, transcript):
        store.save(make_session(id="old", started_at=days_ago(100), log_file=transcript("old")))
        manager = make_manager(full_sessions="30d")

        first = manager.run_cleanup()
        second = manager.run_cleanup()

        assert first.sessions_archived == 1
        assert first.log_files_backed_up == 1
        assert second.model_dump() == {
            "sessions_archived": 0,
            "sessions_deleted": 0,
            "bytes_freed": 0,
            "log_files_backed_up": 0,
        }

    def test_forever_never_archives_or_deletes(self, store, make_manager, make_session):
        store.save(make_session(id="ancient", started_at=days_ago(3650)))

        report = make_manager(full_sessions="forever", archives="forever").run_cleanup()

        assert report.sessions_archived == 0
        assert report.sessions_deleted == 0
        assert not store.get_by_id("ancient").archived

    def test_deletes_past_archive_window(self, store, make_manager, make_session, transcript, data_dir):
        store.save(make_session(id="expired", started_at=days_ago(800), log_file=transcript("expired")))
        store.save(make_session(id="kept", started_at=days_ago(400), log_file=transcript("kept")))
        store.save(make_session(id="fresh", started_at=days_ago(2)))

        report = make_manager(full_sessions="1y", archives="2y").run_cleanup()

        assert report.sessions_archived == 2
        assert report.log_files_backed_up == 2
        assert report.sessions_deleted == 1
        assert report.bytes_freed > ESTIMATED_SESSION_BYTES
        assert store.get_by_id("expired") is None
        assert store.get_by_id("kept").archived
        assert not (data_dir / "archive" / "expired.jsonl.gz").exists()
        assert (data_dir / "archive" / "kept.jsonl.gz").exists()

    def test_quota_trim_oldest_first(self, store, make_manager, make_session, transcript, monkeypatch):
        for i, age in enumerate([50, 40, 30, 20, 10]):
            store.save(make_session(id=f"s{i}", started_at=days_ago(age)))
        manager = make_manager(full_sessions="forever", max_storage_gb=3.5e-9)

        # Pretend every stored session costs one byte; the ceiling is 3 bytes
        monkeypatch.setattr(
            manager, "calculate_storage_used", lambda: store.get_stats().total_sessions
        )
        report = manager.run_cleanup()

        assert report.sessions_deleted == 2
        assert report.bytes_freed == 2 * ESTIMATED_SESSION_BYTES
        remaining = [s.id for s in store.get_all(include_archived=True)]
        assert remaining == ["s4", "s3", "s2"]

    def test_quota_trim_deletes_only_what_is_needed(self, store, make_manager, make_session):
        for i in range(40):
            description = " ".join(f"word{i}_{n}" for n in range(2000))
            store.save(make_session(id=f"s{i:02d}", started_at=days_ago(100 - i), description=description))
        manager = make_manager(full_sessions="forever")
        ceiling = manager.calculate_storage_used() - 60_000
        manager.config.max_storage_gb = ceiling / 1e9

        report = manager.run_cleanup()

        assert 1 <= report.sessions_deleted <= 5
        assert manager.calculate_storage_used() <= manager.config.max_storage_bytes
        remaining = {s.id for s in store.get_all(include_archived=True)}
        assert "s00" not in remaining
        assert "s39" in remaining
        assert len(remaining) == 40 - report.sessions_deleted

    def test_quota_trim_removes_archives_and_active_sessions(
        self, store, make_manager, make_session, transcript, data_dir
    ):
        store.save(make_session(id="old", started_at=days_ago(100), log_file=transcript("old", "x" * 5000)))
        store.save(make_session(id="new", started_at=days_ago(1)))

        # A ceiling no database file can fit under
        report = make_manager(full_sessions="30d", max_storage_gb=1e-9).run_cleanup()

        assert report.sessions_archived == 1
        assert report.log_files_backed_up == 1
        assert report.sessions_deleted == 2
        assert store.get_all(include_archived=True) == []
        assert list((data_dir / "archive").iterdir()) == []

    def test_under_quota_deletes_nothing(self, store, make_manager, make_session):
        store.save(make_session(id="a"))
        report = make_manager(max_storage_gb=10).run_cleanup()
        assert report.sessions_deleted == 0
        assert store.get_by_id("a") is not None

    def test_storage_used_counts_archives(self, make_manager, data_dir):
        manager = make_manager()
        before = manager.calculate_storage_used()
        (data_dir / "archive" / "blob.jsonl.gz").write_bytes(b"\0" * 4096)
        assert manager.calculate_storage_used() == before + 4096
