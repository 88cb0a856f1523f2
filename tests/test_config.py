"""
Tests for configuration and structured logging
"""

import io
import json
import logging

from fundflow.config import FundflowConfig, get_config, reload_config
from fundflow.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:

    def test_defaults(self):
        config = FundflowConfig()

        assert config.database_url == "memory://"
        assert config.max_transfer_attempts == 3
        assert config.enable_audit_logging is True
        assert config.reconciliation_grace_seconds == 300

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("FUNDFLOW_MAX_TRANSFER_ATTEMPTS", "7")
        monkeypatch.setenv("FUNDFLOW_DATABASE_URL", "sqlite://")

        config = FundflowConfig()
        assert config.max_transfer_attempts == 7
        assert config.database_url == "sqlite://"

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("FUNDFLOW_LOCK_TIMEOUT_SECONDS", "1.5")
        try:
            assert reload_config().lock_timeout_seconds == 1.5
            assert get_config().lock_timeout_seconds == 1.5
        finally:
            monkeypatch.delenv("FUNDFLOW_LOCK_TIMEOUT_SECONDS")
            reload_config()

        assert get_config().lock_timeout_seconds == 5.0


class TestStructuredLogging:

    def setup_method(self):
        self.stream = io.StringIO()
        self.logger = logging.getLogger("fundflow.tests.structured")
        self.handler = logging.StreamHandler(self.stream)
        self.handler.setFormatter(JSONFormatter())
        self.logger.addHandler(self.handler)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

    def teardown_method(self):
        self.logger.removeHandler(self.handler)

    def test_log_action_fields(self):
        log_action(
            self.logger, "warning", "Transfer aborted",
            user_id="alice", action="transfer_aborted", resource="transfer:t1",
            correlation_id="req-1", extra={"code": "INSUFFICIENT_FUNDS"}
        )

        entry = json.loads(self.stream.getvalue())
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "fundflow.tests.structured"
        assert entry["message"] == "Transfer aborted"
        assert entry["user_id"] == "alice"
        assert entry["action"] == "transfer_aborted"
        assert entry["resource"] == "transfer:t1"
        assert entry["correlation_id"] == "req-1"
        assert entry["extra"] == {"code": "INSUFFICIENT_FUNDS"}

    def test_missing_fields_omitted(self):
        self.logger.info("plain message")

        entry = json.loads(self.stream.getvalue())
        assert entry["message"] == "plain message"
        assert "user_id" not in entry
        assert "extra" not in entry

    def test_disabled_level_emits_nothing(self):
        log_action(self.logger, "debug", "noisy", action="noise")
        assert self.stream.getvalue() == ""

    def test_setup_logging_text_format(self, tmp_path):
        log_file = tmp_path / "fundflow.log"
        logger = setup_logging("DEBUG", logger_name="fundflow.tests.setup",
                               log_format="text", log_file=str(log_file))
        try:
            logger.debug("hello")
            for handler in logger.handlers:
                handler.flush()
            assert "DEBUG [fundflow.tests.setup] hello" in log_file.read_text()
            assert logger.propagate is False
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)
