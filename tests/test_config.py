"""
Tests for configuration and logging setup
"""

import logging

import pytest

from sleeve_ledger import LedgerConfig, setup_logging
from sleeve_ledger.logging_config import log_operation


class TestLedgerConfig:
    def test_defaults(self):
        config = LedgerConfig()
        assert config.db_path == ":memory:"
        assert config.verbose is False
        assert config.sample_limit == 100

    def test_invalid_sample_limit(self):
        with pytest.raises(ValueError):
            LedgerConfig(sample_limit=0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SLEEVE_LEDGER_DB_PATH", "/tmp/sleeves.duckdb")
        monkeypatch.setenv("SLEEVE_LEDGER_VERBOSE", "true")
        monkeypatch.setenv("SLEEVE_LEDGER_SAMPLE_LIMIT", "20")
        monkeypatch.setenv("SLEEVE_LEDGER_LOG_LEVEL", "debug")
        config = LedgerConfig.from_env()
        assert config.db_path == "/tmp/sleeves.duckdb"
        assert config.verbose is True
        assert config.sample_limit == 20
        assert config.log_level == logging.DEBUG

    def test_from_env_defaults(self, monkeypatch):
        for name in ("SLEEVE_LEDGER_DB_PATH", "SLEEVE_LEDGER_VERBOSE",
                     "SLEEVE_LEDGER_SAMPLE_LIMIT", "SLEEVE_LEDGER_LOG_LEVEL",
                     "SLEEVE_LEDGER_LOG_FILE"):
            monkeypatch.delenv(name, raising=False)
        config = LedgerConfig.from_env()
        assert config.db_path == ":memory:"
        assert config.verbose is False
        assert config.log_file is None

    def test_from_env_bad_level(self, monkeypatch):
        monkeypatch.setenv("SLEEVE_LEDGER_LOG_LEVEL", "LOUD")
        with pytest.raises(ValueError):
            LedgerConfig.from_env()


class TestLogging:
    def test_setup_logging_does_not_stack_handlers(self):
        setup_logging(logging.INFO)
        setup_logging(logging.DEBUG)
        logger = logging.getLogger("sleeve_ledger")
        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG
        logger.handlers.clear()

    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        setup_logging(logging.INFO, str(log_file))
        logger = logging.getLogger("sleeve_ledger")
        assert len(logger.handlers) == 2
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()

    def test_log_operation_truncates_params(self, caplog):
        logger = logging.getLogger("sleeve_ledger.test")
        with caplog.at_level(logging.DEBUG, logger="sleeve_ledger.test"):
            log_operation(logger, "INSERT", "cluster_sleeves", {'ids': "x" * 500}, 1, "new")
        message = caplog.records[-1].getMessage()
        assert message.startswith("INSERT cluster_sleeves rows=1")
        assert "x" * 101 not in message
        assert message.endswith("new")
