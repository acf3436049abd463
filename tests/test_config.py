"""
Tests for configuration and structured logging
"""

import json
import logging

from coinbook import config as config_module
from coinbook.config import CoinbookConfig, get_config, reload_config
from coinbook.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("COINBOOK_PAGE_SIZE", raising=False)
        config = CoinbookConfig()
        assert config.page_size == 10
        assert config.default_permission_level == 0
        assert config.default_coin_name == "Universal Coin"
        assert config.enable_audit_logging

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("COINBOOK_PAGE_SIZE", "25")
        monkeypatch.setenv("COINBOOK_DATABASE_URL", "memory://")
        config = CoinbookConfig()
        assert config.page_size == 25
        assert config.database_url == "memory://"

    def test_reload(self, monkeypatch):
        monkeypatch.setenv("COINBOOK_DEFAULT_COIN_SYMBOL", "X")
        reloaded = reload_config()
        try:
            assert get_config() is reloaded
            assert reloaded.default_coin_symbol == "X"
        finally:
            monkeypatch.delenv("COINBOOK_DEFAULT_COIN_SYMBOL")
            reload_config()
        assert config_module.get_config().default_coin_symbol == "μ"


class CaptureHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestLogging:

    def test_json_formatter(self):
        logger = get_logger("coinbook.test")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "moved", (), None)
        record.user_id = 4
        record.action = "transfer"

        payload = json.loads(JSONFormatter().format(record))
        assert payload["message"] == "moved"
        assert payload["user_id"] == 4
        assert payload["action"] == "transfer"
        assert "resource" not in payload

    def test_log_action_attaches_fields(self):
        logger = setup_logging("DEBUG", logger_name="coinbook.capture")
        handler = CaptureHandler()
        logger.addHandler(handler)

        log_action(logger, "info", "Coin created", user_id=1, action="create_coin",
                   resource="coin:abc", extra={"symbol": "TP"})

        record = handler.records[0]
        assert record.user_id == 1
        assert record.resource == "coin:abc"
        assert record.extra == {"symbol": "TP"}

    def test_log_action_respects_level(self):
        logger = setup_logging("WARNING", logger_name="coinbook.quiet")
        handler = CaptureHandler()
        logger.addHandler(handler)

        log_action(logger, "info", "ignored")
        log_action(logger, "warning", "kept")

        assert [r.getMessage() for r in handler.records] == ["kept"]

    def test_setup_again_closes_previous_file(self, tmp_path):
        logger = setup_logging("INFO", logger_name="coinbook.rotating", log_file=str(tmp_path / "first.log"))
        first = logger.handlers[0]
        try:
            setup_logging("INFO", logger_name="coinbook.rotating", log_file=str(tmp_path / "second.log"))

            assert first not in logger.handlers
            assert first.stream is None
        finally:
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
                handler.close()
