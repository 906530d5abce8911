"""
Tests for settings, logging setup, metrics switches and the error taxonomy.
"""
import pytest
import structlog
from pydantic import ValidationError

from synapse_query.shared import config
from synapse_query.shared.config import EngineSettings, Environment, LogFormat, reload_settings
from synapse_query.shared.errors import ApplicationError, CancellationError, PluginError
from synapse_query.shared.logging_config import CorrelationContext, configure_logging
from synapse_query.shared.metrics_collector import get_metrics_collector
from synapse_query.shared.schemas import QueueStats, Response


@pytest.fixture
def restore_settings():
    yield
    reload_settings()


class TestEngineSettings:
    """Test settings defaults and validation."""

    def test_defaults(self):
        settings = EngineSettings()

        assert settings.default_concurrency >= 1
        assert settings.pending_timeout_seconds > 0
        assert settings.log_format in (LogFormat.CONSOLE, LogFormat.JSON)

    def test_invalid_concurrency(self):
        with pytest.raises(ValidationError):
            EngineSettings(default_concurrency=0)

    def test_invalid_pending_timeout(self):
        with pytest.raises(ValidationError):
            EngineSettings(pending_timeout_seconds=0)

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("SYNAPSE_QUERY_DEFAULT_CONCURRENCY", "7")
        monkeypatch.setenv("SYNAPSE_QUERY_ENVIRONMENT", "testing")

        settings = EngineSettings()

        assert settings.default_concurrency == 7
        assert settings.environment == Environment.TESTING
        assert settings.is_testing
        assert not settings.is_development

    def test_reload_replaces_global(self, restore_settings):
        reloaded = reload_settings(default_concurrency=9)

        assert config.get_settings() is reloaded
        assert config.get_settings().default_concurrency == 9


class TestMetricsSwitch:
    """Test that disabled metrics record nothing."""

    def test_disabled_metrics_are_noops(self, restore_settings):
        reload_settings(metrics_enabled=False)
        metrics = get_metrics_collector()

        metrics.cache_invalidations.increment(3)
        metrics.queue_tasks_running.set(2)

        assert metrics.cache_invalidations.get_value() == 0
        assert metrics.queue_tasks_running.get_value() == 0

    def test_snapshot(self):
        metrics = get_metrics_collector()
        metrics.queue_tasks_settled.increment(status="success")
        metrics.queue_tasks_settled.increment(status="error")

        snapshot = metrics.snapshot()

        assert snapshot["queue_tasks_settled_total"] == 2
        assert snapshot["pipeline_middleware_seconds"]["count"] == 0


class TestLogging:
    """Test structlog configuration and correlation context."""

    def test_configure_is_repeatable(self):
        configure_logging()
        configure_logging(level="DEBUG", log_format="json", force=True)
        configure_logging(level="INFO", log_format="console", force=True)

    def test_correlation_context_binds_and_resets(self):
        with CorrelationContext(task_id="q-1") as ctx:
            bound = structlog.contextvars.get_contextvars()
            assert bound["correlation_id"] == ctx.correlation_id
            assert bound["task_id"] == "q-1"

        assert "task_id" not in structlog.contextvars.get_contextvars()


class TestErrorsAndSchemas:
    """Test error serialization and response coercion."""

    def test_error_to_dict(self):
        error = ApplicationError(404, payload={"message": "missing"})

        data = error.to_dict()

        assert data["error"] == "application_error"
        assert data["status"] == 404
        assert data["payload"] == {"message": "missing"}
        assert CancellationError().detail == "Aborted"

    def test_plugin_error_keeps_original(self):
        original = KeyError("x")
        error = PluginError("cache", original)

        assert error.original_error is original
        assert error.to_dict()["plugin"] == "cache"

    def test_response_coerce(self):
        assert Response.coerce(None) == Response()
        assert Response.coerce({"status": 204}).status == 204
        assert not Response.coerce({"error": "x"}).ok
        with pytest.raises(TypeError):
            Response.coerce(42)

    def test_queue_stats_frozen(self):
        stats = QueueStats(total=1)

        with pytest.raises(ValidationError):
            stats.total = 2
