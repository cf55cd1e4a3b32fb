import pytest

from publisher.config import load_settings
from publisher.errors import ScheduleError, error_response


def test_load_settings_defaults(monkeypatch):
    for name in (
        "DISPATCH_SCAN_INTERVAL_SECONDS",
        "DISPATCH_MAX_ATTEMPTS",
        "DISPATCH_WORKER_POOL_SIZE",
        "PUBLISH_TIMEOUT_SECONDS",
        "SCHEDULE_MAX_HORIZON_DAYS",
        "PUBLISHER_CONTEXT_RESOLVER",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.dispatch.scan_interval_seconds == 30
    assert settings.dispatch.max_attempts == 5
    assert settings.dispatch.worker_pool_size == 4
    assert settings.dispatch.publish_timeout_seconds == 15.0
    assert settings.max_schedule_horizon_days == 90
    assert settings.context_resolver_path is None


def test_load_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("DISPATCH_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("DISPATCH_BACKOFF_BASE_SECONDS", "10")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("PUBLISHER_CONTEXT_RESOLVER", "myapp.wiring:resolver")

    settings = load_settings()

    assert settings.dispatch.max_attempts == 3
    assert settings.dispatch.backoff_base_seconds == 10
    assert settings.log_level == "DEBUG"
    assert settings.context_resolver_path == "myapp.wiring:resolver"


@pytest.mark.parametrize("value", ["0", "abc"])
def test_invalid_values_raise_runtime_error(monkeypatch, value):
    monkeypatch.setenv("DISPATCH_WORKER_POOL_SIZE", value)
    with pytest.raises(RuntimeError, match="Invalid settings"):
        load_settings()


def test_error_envelope():
    error = ScheduleError.access_denied()
    body = error_response(error)

    assert body["http_status"] == 403
    assert body["errors"] == [
        {
            "error_code": "SCHEDULE_ACCESS_DENIED",
            "error_description": "Access denied to this schedule",
            "error_severity": "error",
        }
    ]
