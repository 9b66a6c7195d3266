"""Tests for logging setup."""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from handoff.logging_config import LOGGER_NAME, setup_logging


@pytest.fixture
def clean_logger():
	logger = logging.getLogger(LOGGER_NAME)
	saved = list(logger.handlers)
	level = logger.level
	logger.handlers.clear()
	yield logger
	for handler in logger.handlers:
		handler.close()
	logger.handlers[:] = saved
	logger.setLevel(level)


def test_console_only_without_log_dir(clean_logger):
	logger = setup_logging(level="debug")
	assert logger is clean_logger
	assert logger.level == logging.DEBUG
	assert len(logger.handlers) == 1
	assert not isinstance(logger.handlers[0], RotatingFileHandler)


def test_rotating_file_handler(clean_logger, tmp_path):
	log_dir = tmp_path / "logs"
	logger = setup_logging(level="WARNING", log_dir=log_dir)
	assert log_dir.is_dir()
	file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
	assert len(file_handlers) == 1
	assert file_handlers[0].baseFilename == str(log_dir / "handoff.log")


def test_level_from_environment(clean_logger, monkeypatch):
	monkeypatch.setenv("HANDOFF_LOG_LEVEL", "ERROR")
	assert setup_logging().level == logging.ERROR


def test_repeated_setup_adds_no_handlers(clean_logger):
	setup_logging(level="INFO")
	setup_logging(level="INFO")
	assert len(clean_logger.handlers) == 1
