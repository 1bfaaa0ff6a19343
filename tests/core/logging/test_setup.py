"""Tests for logging setup and configuration."""

import logging
import re
from pathlib import Path

import pytest

from core.logging.context import get_log_context
from core.logging.setup import (
    NOISY_LOGGERS,
    ArchivingTimedRotatingFileHandler,
    generate_cycle_id,
    get_log_file_path,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestGetLogFilePath:
    def test_builds_job_and_date_folders(self):
        path = get_log_file_path(Path("logs"), job="ingest")

        assert path.parts[0] == "logs"
        assert path.parts[1] == "ingest"
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}", path.parts[2])
        assert re.fullmatch(r"ingest_\d{4}_\d{4}\.log", path.name)

    def test_default_job_name(self):
        assert get_log_file_path(Path("logs")).name.startswith("blobfeed_")


class TestGenerateCycleId:
    def test_format(self):
        assert re.fullmatch(r"c-[0-9a-f]{8}", generate_cycle_id())

    def test_unique(self):
        assert generate_cycle_id() != generate_cycle_id()


class TestSetupLogging:
    def test_stdout_only_mode(self, tmp_path, restore_root_logger):
        setup_logging(job="sweep", log_dir=tmp_path, log_to_stdout=True)

        root = restore_root_logger
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0], ArchivingTimedRotatingFileHandler)
        assert not any(tmp_path.iterdir())
        assert get_log_context()["job"] == "sweep"

    def test_file_and_console_handlers(self, tmp_path, restore_root_logger):
        logger = setup_logging(job="ingest", log_dir=tmp_path)
        logger.info("hello")

        root = restore_root_logger
        file_handlers = [h for h in root.handlers if isinstance(h, ArchivingTimedRotatingFileHandler)]
        assert len(file_handlers) == 1
        log_file = Path(file_handlers[0].baseFilename)
        assert log_file.is_relative_to(tmp_path / "ingest")
        assert (tmp_path / "archive" / "ingest").is_dir()

    def test_json_file_output(self, tmp_path, restore_root_logger):
        logger = setup_logging(job="ingest", log_dir=tmp_path, json_format=True)
        logger.info("structured", extra={"file_id": "abc"})

        root = restore_root_logger
        handler = next(h for h in root.handlers if isinstance(h, ArchivingTimedRotatingFileHandler))
        handler.flush()
        lines = Path(handler.baseFilename).read_text().splitlines()
        assert any('"file_id": "abc"' in line for line in lines)

    def test_quiets_noisy_loggers(self, tmp_path, restore_root_logger):
        setup_logging(log_dir=tmp_path, log_to_stdout=True)
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
