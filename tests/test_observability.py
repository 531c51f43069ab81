"""Tests for the observability module.

Tests for metrics collection, operation timing and logging configuration.
"""
import json
import logging
import time
from unittest.mock import patch

import pytest

from notesync.models.schema import Signature
from notesync.observability import (
    MetricsCollector,
    configure_logging,
    is_logging_configured,
    metrics,
    timed_operation,
)
from notesync.services.git_sync_service import GitSyncEngine


@pytest.fixture
def restore_notesync_logger():
    """Remove handlers added by configure_logging after the test."""
    root_logger = logging.getLogger("notesync")
    before = list(root_logger.handlers)
    level = root_logger.level
    yield root_logger
    for handler in list(root_logger.handlers):
        if handler not in before:
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(level)


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    @pytest.fixture
    def metrics_file(self, tmp_path):
        return tmp_path / "metrics.json"

    @pytest.fixture
    def metrics_collector(self, metrics_file):
        return MetricsCollector(metrics_file=metrics_file)

    def test_record_successful_operation(self, metrics_collector):
        """Test recording a successful operation."""
        metrics_collector.record_operation("rebuild", 100.0, True)

        metrics = metrics_collector.get_metrics()
        assert metrics["rebuild"]["count"] == 1
        assert metrics["rebuild"]["success_count"] == 1
        assert metrics["rebuild"]["error_count"] == 0
        assert metrics["rebuild"]["avg_duration_ms"] == 100.0

    def test_record_failed_operation(self, metrics_collector):
        """Test recording a failed operation with error."""
        metrics_collector.record_operation("sync", 50.0, False, "Remote unreachable")

        metrics = metrics_collector.get_metrics()
        assert metrics["sync"]["success_count"] == 0
        assert metrics["sync"]["error_count"] == 1
        assert metrics["sync"]["last_error"] == "Remote unreachable"
        assert metrics["sync"]["last_error_time"] is not None

    def test_multiple_operations_aggregated(self, metrics_collector):
        metrics_collector.record_operation("commit_all", 100.0, True)
        metrics_collector.record_operation("commit_all", 200.0, True)
        metrics_collector.record_operation("commit_all", 300.0, False, "Error")

        metrics = metrics_collector.get_metrics()
        assert metrics["commit_all"]["count"] == 3
        assert metrics["commit_all"]["success_count"] == 2
        assert metrics["commit_all"]["avg_duration_ms"] == 200.0
        assert metrics["commit_all"]["max_duration_ms"] == 300.0

    def test_save_metrics(self, metrics_collector, metrics_file):
        """Test writing the JSON snapshot."""
        metrics_collector.record_operation("op1", 100.0, True)
        metrics_collector.record_operation("op2", 200.0, False, "Error")

        assert metrics_collector.save_metrics() is True

        data = json.loads(metrics_file.read_text())
        assert set(data["operations"]) == {"op1", "op2"}
        assert data["operations"]["op2"]["error_count"] == 1

    def test_save_without_file_is_noop(self):
        assert MetricsCollector().save_metrics() is False

    def test_get_summary(self, metrics_collector):
        metrics_collector.record_operation("op1", 100.0, True)
        metrics_collector.record_operation("op2", 200.0, False, "Error")

        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_errors"] == 1
        assert summary["operations_tracked"] == ["op1", "op2"]

    def test_reset_metrics(self, metrics_collector):
        metrics_collector.record_operation("op", 100.0, True)
        metrics_collector.reset()
        assert metrics_collector.get_metrics() == {}


class TestTimedOperation:
    """Tests for timed_operation context manager."""

    def test_records_success(self):
        collector = MetricsCollector()

        with patch("notesync.observability.metrics", collector):
            with timed_operation("rebuild", root="notes") as op:
                time.sleep(0.01)
                op["indexed"] = 3

        metrics = collector.get_metrics()
        assert metrics["rebuild"]["success_count"] == 1
        assert metrics["rebuild"]["avg_duration_ms"] >= 10

    def test_records_failure_and_reraises(self):
        collector = MetricsCollector()

        with patch("notesync.observability.metrics", collector):
            with pytest.raises(ValueError):
                with timed_operation("sync"):
                    raise ValueError("Test error")

        metrics = collector.get_metrics()
        assert metrics["sync"]["error_count"] == 1
        assert "Test error" in metrics["sync"]["last_error"]

    def test_engine_operations_are_recorded(self, handle):
        handle.write_file("a.md", "x")
        GitSyncEngine(handle).commit_all(Signature.now("T", "t@example.com"), "c").unwrap()

        assert metrics.get_metrics()["commit_all"]["success_count"] == 1


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_creates_directory_and_returns_it(self, tmp_path, restore_notesync_logger):
        log_dir = tmp_path / "logs"

        assert configure_logging(log_dir=log_dir, console=False) == log_dir
        assert log_dir.is_dir()
        assert is_logging_configured()

    def test_sets_level(self, tmp_path, restore_notesync_logger):
        configure_logging(log_dir=tmp_path, level=logging.DEBUG, console=False)
        assert restore_notesync_logger.level == logging.DEBUG

    def test_reconfiguring_replaces_handlers(self, tmp_path, restore_notesync_logger):
        configure_logging(log_dir=tmp_path / "one", console=True)
        configure_logging(log_dir=tmp_path / "two", console=True)

        ours = [
            h for h in restore_notesync_logger.handlers
            if getattr(h, "_notesync_handler", False)
        ]
        assert len(ours) == 2

    def test_messages_reach_log_file(self, tmp_path, restore_notesync_logger):
        configure_logging(log_dir=tmp_path, level=logging.INFO, console=False)

        logging.getLogger("notesync.storage").info("index rebuilt")
        for handler in restore_notesync_logger.handlers:
            handler.flush()

        assert "index rebuilt" in (tmp_path / "notesync.log").read_text()
