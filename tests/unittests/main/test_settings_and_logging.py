import json
import logging

import pytest
from pydantic import ValidationError

from clipscout.main.config import Settings, get_loglevel, get_settings, set_settings
from clipscout.main.job_context import clear_job_context, get_job_context, set_job_context
from clipscout.main.logging import ContextJSONFormatter


class TestSettings:
    def test_lease_renewal_must_be_shorter_than_lease(self):
        with pytest.raises(ValidationError):
            Settings(job_lease_seconds=100, job_lease_renew_seconds=100)

    def test_unknown_store_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(store_backend="sqlite")

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(job_max_attempts=0)

    def test_in_process_cache_lifetime_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(cache_l1_ttl_seconds=0)

    @pytest.mark.parametrize("interval", [0, 7, 45, 90])
    def test_stalled_check_interval_must_divide_a_minute(self, interval):
        with pytest.raises(ValidationError):
            Settings(stalled_check_interval_seconds=interval)

    def test_set_settings_overrides_singleton(self, test_settings):
        set_settings(test_settings)

        assert get_settings() is test_settings

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("JOB_MAX_ATTEMPTS", raising=False)
        settings = Settings(_env_file=None)

        assert settings.job_max_attempts == 2
        assert settings.recrawl_rate_limit_per_window == 3
        assert settings.recrawl_fail_open is False
        assert settings.cache_ttl_seconds == 43200
        assert settings.cache_l1_ttl_seconds == 60
        assert settings.stalled_check_interval_seconds == 30

    @pytest.mark.parametrize(
        "value, expected",
        [("DEBUG", logging.DEBUG), ("ERROR", logging.ERROR), ("nonsense", logging.INFO)],
    )
    def test_loglevel_from_environment(self, monkeypatch, value, expected):
        monkeypatch.setenv("LOGLEVEL", value)

        assert get_loglevel() == expected


class TestJobContext:
    def test_set_merges_and_none_clears(self):
        set_job_context(job_id="j1", cache_key="tiktok:cats:all")
        set_job_context(cache_key=None, worker_id="w1")

        assert get_job_context() == {"job_id": "j1", "worker_id": "w1"}

        clear_job_context()
        assert get_job_context() == {}


class TestContextJSONFormatter:
    def test_includes_job_context_and_extra(self):
        set_job_context(job_id="j1")
        record = logging.LogRecord(
            name="clipscout.worker",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Lease lost",
            args=(),
            exc_info=None,
        )
        record.error_code = "NETWORK_ERROR"

        try:
            payload = json.loads(ContextJSONFormatter().format(record))
        finally:
            clear_job_context()

        assert payload["message"] == "Lease lost"
        assert payload["level"] == "warning"
        assert payload["job_id"] == "j1"
        assert payload["error_code"] == "NETWORK_ERROR"
