"""Logging utilities for BingoTrack."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from config.settings import settings


_LOG_FILE = settings.log_directory / "bingotrack.log"
_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _resolve_level(name: str) -> int:
	return getattr(logging, name.upper(), logging.INFO)


def _configure_root_logger() -> None:
	if logging.getLogger().handlers:
		return

	formatter = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

	console_handler = logging.StreamHandler()
	console_handler.setFormatter(formatter)

	file_handler = RotatingFileHandler(_LOG_FILE, maxBytes=2_000_000, backupCount=3)
	file_handler.setFormatter(formatter)

	root = logging.getLogger()
	root.setLevel(_resolve_level(settings.log_level))
	root.addHandler(console_handler)
	root.addHandler(file_handler)

	# APScheduler logs every job execution at INFO
	logging.getLogger("apscheduler").setLevel(logging.WARNING)


def set_level(level: str) -> None:
	"""Override the root level, e.g. from a ``--log-level`` CLI flag."""

	_configure_root_logger()
	logging.getLogger().setLevel(_resolve_level(level))


def get_logger(name: str) -> logging.Logger:
	"""Return a configured logger for the provided module name."""

	_configure_root_logger()
	return logging.getLogger(name)
