"""Tests for configuration loading."""

import yaml

from sessionvault.config import (
    RETENTION_OPTIONS,
    Config,
    RetentionConfig,
    ensure_dirs,
    load_config,
    save_config,
)


class TestDefaults:
    def test_defaults(self):
        config = Config()
        assert config.retention.full_sessions == "1y"
        assert config.retention.archives == "forever"
        assert config.retention.override_host_retention is True
        assert config.retention.max_storage_gb == 10
        assert config.search.enabled is True
        assert config.search.fetch_multiplier == 2
        assert config.ui.recent_count == 10

    def test_max_storage_bytes(self):
        assert RetentionConfig(max_storage_gb=2).max_storage_bytes == 2_000_000_000

    def test_retention_options_cover_forever(self):
        assert RETENTION_OPTIONS["forever"]["days"] is None
        assert RETENTION_OPTIONS["1y"]["days"] == 365


class TestLoadConfig:
    def test_missing_file_is_created(self, tmp_path):
        path = tmp_path / "config.yml"

        config = load_config(path)

        assert config == Config()
        assert path.exists()
        assert yaml.safe_load(path.read_text())["retention"]["full_sessions"] == "1y"

    def test_partial_file_merges_over_defaults(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("retention:\n  full_sessions: 90d\nui:\n  recent_count: 25\n")

        config = load_config(path)

        assert config.retention.full_sessions == "90d"
        assert config.retention.archives == "forever"
        assert config.ui.recent_count == 25
        assert config.search.fetch_multiplier == 2

    def test_invalid_yaml_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("retention: [unclosed\n")
        assert load_config(path) == Config()

    def test_invalid_values_fall_back_to_defaults(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("retention:\n  max_storage_gb: -1\n")
        assert load_config(path) == Config()

    def test_non_mapping_root_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("- just\n- a list\n")
        assert load_config(path) == Config()

    def test_empty_file_is_defaults(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("")
        assert load_config(path) == Config()


class TestSaveConfig:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "config.yml"
        config = Config()
        config.retention.full_sessions = "6m"
        config.search.enabled = False

        save_config(config, path)

        assert load_config(path) == config

    def test_ensure_dirs(self, tmp_path):
        root = tmp_path / "vault"
        ensure_dirs(root)
        assert root.is_dir()
        assert (root / "archive").is_dir()
