"""
Tests for configuration and structured JSON logging.
"""

import json
import logging

import pytest

from photoledger.config import Settings
from photoledger.core.structured_logging import (
    SERVICE_NAME,
    execution_id_var,
    setup_logging,
    workflow_id_var,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PHOTOLEDGER_STORAGE_BACKEND", raising=False)
        s = Settings(_env_file=None)
        assert s.storage_backend == "json"
        assert s.rollover_on_active_renewal is False
        assert s.product_id_prefix == "com.photoledger.app"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PHOTOLEDGER_ROLLOVER_ON_ACTIVE_RENEWAL", "true")
        monkeypatch.setenv("PHOTOLEDGER_PROCESSING_TIMEOUT", "30")
        s = Settings(_env_file=None)
        assert s.rollover_on_active_renewal is True
        assert s.processing_timeout == 30.0

    def test_database_url_defaults_to_sqlite_in_data_dir(self, tmp_path):
        s = Settings(_env_file=None, data_directory=str(tmp_path), database_url=None)
        assert s.get_database_url() == f"sqlite:///{tmp_path}/photoledger.db"

    def test_invalid_backend_rejected(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, storage_backend="redis")


class TestStructuredLogging:
    def test_json_lines_with_correlation_ids(self, tmp_path, restore_root_logger):
        setup_logging(log_dir=str(tmp_path), log_file="test.jsonl")

        eid = execution_id_var.set("exec-123")
        wid = workflow_id_var.set("funko-basic")
        try:
            logging.getLogger("photoledger.test").info("Step complete: %s", "funko")
        finally:
            execution_id_var.reset(eid)
            workflow_id_var.reset(wid)
        logging.getLogger("photoledger.test").warning("after")

        for handler in logging.getLogger().handlers:
            handler.flush()
        lines = [json.loads(line) for line in (tmp_path / "test.jsonl").read_text().splitlines()]

        first, second = lines[-2], lines[-1]
        assert first["event"] == "Step complete: funko"
        assert first["level"] == "info"
        assert first["service"] == SERVICE_NAME
        assert first["execution_id"] == "exec-123"
        assert first["workflow_id"] == "funko-basic"
        assert "ts" in first
        assert "execution_id" not in second

    def test_level_filtering(self, tmp_path, restore_root_logger):
        setup_logging(log_dir=str(tmp_path), log_file="test.jsonl", log_level="WARNING")
        logging.getLogger("photoledger.test").info("hidden")
        logging.getLogger("photoledger.test").error("shown")
        for handler in logging.getLogger().handlers:
            handler.flush()
        events = [json.loads(line)["event"] for line in (tmp_path / "test.jsonl").read_text().splitlines()]
        assert events == ["shown"]
