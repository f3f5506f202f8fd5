"""Tests for run-aware logging."""

import json
import logging

import pytest

from restock.config import settings
from restock.logging_config import get_logger, log_paths, setup_logging


@pytest.fixture
def configured_logging(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "log_dir", str(tmp_path / "logs"))
    monkeypatch.setattr(settings, "log_level", "INFO")
    root = logging.getLogger()
    saved_level = root.level

    installed = setup_logging().handlers[:]
    yield log_paths()

    for handler in installed:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(saved_level)


def read_records(path):
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text().splitlines() if line]


def test_log_files_follow_settings(configured_logging, tmp_path):
    log_file, error_log_file = configured_logging

    assert log_file == tmp_path / "logs" / settings.log_file
    assert error_log_file == tmp_path / "logs" / settings.error_log_file
    assert log_file.parent.is_dir()


def test_run_context_is_top_level(configured_logging):
    log_file, _ = configured_logging

    get_logger("restock.worker.runner", run_id="abc123", trigger="http").info("Prediction run started")
    logging.getLogger("restock.store.sql").info("Updated rule 1")

    run_record, plain_record = read_records(log_file)
    assert run_record["message"] == "Prediction run started"
    assert run_record["run_id"] == "abc123"
    assert run_record["trigger"] == "http"
    assert run_record["level"] == "INFO"
    assert "run_id" not in plain_record


def test_errors_also_go_to_error_log(configured_logging):
    log_file, error_log_file = configured_logging

    log = get_logger("restock.worker.runner", run_id="def456", trigger="scheduled")
    log.info("Prediction run started")
    log.error("Prediction run failed: boom")

    [error_record] = read_records(error_log_file)
    assert error_record["run_id"] == "def456"
    assert len(read_records(log_file)) == 2


def test_per_call_extra_is_kept(configured_logging):
    log_file, _ = configured_logging

    get_logger("restock.worker.runner", run_id="ghi789").info("Rule done", extra={"rule_id": 7})

    [record] = read_records(log_file)
    assert record["rule_id"] == 7
    assert record["run_id"] == "ghi789"
    assert "trigger" not in record
