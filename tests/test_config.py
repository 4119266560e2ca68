import json
import logging
from decimal import Decimal

from config import Settings
from fee_engine import FeeSchedule
from logging_config import JsonFormatter, configure_logging


def test_defaults_match_standard_fee_schedule():
    settings = Settings()
    assert settings.fee_schedule() == FeeSchedule()


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("REWARDS_BROKERAGE_FEE_BPS", "10")
    monkeypatch.setenv("REWARDS_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("REWARDS_TIMEZONE", "UTC")

    settings = Settings()
    assert settings.storage_backend == "memory"
    assert settings.timezone == "UTC"
    assert settings.fee_schedule().brokerage_bps == Decimal("10")


def test_password_is_masked_for_logging():
    settings = Settings(database_dsn="dbname=r user=u password=hunter2 host=db")
    logged = settings.dict_for_logging()
    assert "hunter2" not in logged["database_dsn"]
    assert "password=***" in logged["database_dsn"]


def test_json_formatter_emits_one_line():
    record = logging.LogRecord("rewards", logging.INFO, __file__, 1, "granted %s", ("TCS",), None)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "granted TCS"
    assert payload["level"] == "INFO"


def test_configure_logging_installs_single_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("DEBUG", use_json=True)
        configure_logging("DEBUG", use_json=True)
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
