"""Tests for engine configuration loading and notification filtering."""

import logging
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from flowrunner.core.config import EngineConfig, NotificationConfig, default_search_paths, load_config
from flowrunner.core.exceptions import ConfigError
from flowrunner.core.notify import CollectingNotifier, FilteringNotifier, LoggingNotifier, safe_notify


def _write(path: Path, content) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content if isinstance(content, str) else yaml.safe_dump(content))
    return path


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.node_timeout is None
        assert config.max_loop_iterations == 10_000
        assert config.history_size == 50
        assert config.history_path is None
        assert config.max_flow_depth == 10
        assert config.flows_dir is None

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            EngineConfig(node_timeout=0)

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValidationError):
            EngineConfig(retries=3)


class TestLoadConfig:
    """Tests for YAML config discovery and validation."""

    def test_explicit_path(self, tmp_path):
        path = _write(tmp_path / "engine.yaml", {"node_timeout": 2.5, "max_loop_iterations": 10})
        config = load_config(path)
        assert config.node_timeout == 2.5
        assert config.max_loop_iterations == 10

    def test_explicit_path_must_exist(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_no_files_gives_defaults(self, tmp_path):
        assert load_config(search_paths=[tmp_path / "a.yaml"]) == EngineConfig()

    def test_first_existing_file_wins(self, tmp_path):
        first = tmp_path / "project/config.yaml"
        second = _write(tmp_path / "home/config.yaml", {"history_size": 5})
        assert load_config(search_paths=[first, second]).history_size == 5

        _write(first, {"history_size": 7})
        assert load_config(search_paths=[first, second]).history_size == 7

    def test_empty_file_gives_defaults(self, tmp_path):
        path = _write(tmp_path / "config.yaml", "")
        assert load_config(path) == EngineConfig()

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path / "config.yaml", "node_timeout: [unclosed")
        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(path)

    def test_non_mapping(self, tmp_path):
        path = _write(tmp_path / "config.yaml", "- 1\n- 2\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(path)

    def test_validation_failure(self, tmp_path):
        path = _write(tmp_path / "config.yaml", {"max_loop_iterations": 0})
        with pytest.raises(ConfigError):
            load_config(path)

    def test_relative_history_path_resolved_against_config(self, tmp_path):
        path = _write(tmp_path / "conf/config.yaml", {"history_path": "data/runs.db"})
        assert load_config(path).history_path == tmp_path / "conf/data/runs.db"

    def test_relative_flows_dir_resolved_against_config(self, tmp_path):
        path = _write(tmp_path / "conf/config.yaml", {"flows_dir": "flows", "max_flow_depth": 2})
        config = load_config(path)
        assert config.flows_dir == tmp_path / "conf/flows"
        assert config.max_flow_depth == 2

    def test_notification_settings(self, tmp_path):
        path = _write(
            tmp_path / "config.yaml",
            {"notifications": {"suppress_levels": ["info"], "suppress_categories": ["node"]}},
        )
        config = load_config(path)
        assert config.notifications.suppress_levels == ["info"]
        assert config.notifications.suppress_categories == ["node"]

    def test_unknown_notification_level(self, tmp_path):
        path = _write(tmp_path / "config.yaml", {"notifications": {"suppress_levels": ["loud"]}})
        with pytest.raises(ConfigError):
            load_config(path)

    def test_default_search_paths(self, tmp_path):
        paths = default_search_paths(tmp_path)
        assert paths[0] == tmp_path / ".flowrunner/config.yaml"
        assert paths[1] == Path.home() / ".flowrunner/config.yaml"


class TestNotifiers:
    def test_filtering_notifier(self):
        inner = CollectingNotifier()
        notifier = FilteringNotifier(
            inner, NotificationConfig(suppress_levels=["info"], suppress_categories=["validation"])
        )
        notifier.notify("info", "hidden", "run")
        notifier.notify("error", "hidden too", "validation")
        notifier.notify("warning", "shown", "user")
        assert inner.messages == [("warning", "shown", "user")]

    def test_logging_notifier(self, caplog):
        with caplog.at_level(logging.WARNING, logger="flowrunner.core.notify"):
            LoggingNotifier().notify("warning", "careful", "run")
        assert "[run] careful" in caplog.text

    def test_safe_notify_logs_failures(self, caplog):
        class Broken:
            def notify(self, level, message, category="user"):
                raise ConnectionError("gone")

        with caplog.at_level(logging.WARNING, logger="flowrunner.core.notify"):
            safe_notify(Broken(), "info", "hello", "user")
        assert "Notification delivery failed" in caplog.text
