"""Configuration utilities for the backupagent CLI.

This module provides shared functions used across CLI commands.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from backupagent.core.paths import get_data_dir, get_log_dir

LOG_FILE_NAME = "backupagent.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_dir: Path, verbose: bool = False) -> None:
    """Configure logging to output to both file and stdout.

    The file always receives INFO and above; stdout only shows warnings
    unless verbose is set. Handlers installed by a previous call are
    replaced.

    Args:
        log_dir: Directory receiving backupagent.log.
        verbose: Echo INFO messages to stdout as well.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # Root logger for backupagent
    root_logger = logging.getLogger("backupagent")
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root_logger.handlers):
        if getattr(handler, "_backupagent_cli", False):
            root_logger.removeHandler(handler)
            handler.close()

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    stdout_handler.setFormatter(formatter)
    stdout_handler._backupagent_cli = True  # type: ignore[attr-defined]
    root_logger.addHandler(stdout_handler)

    # File handler
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
    except OSError as e:
        root_logger.warning("Cannot write log file in %s: %s", log_dir, e)
        return
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    file_handler._backupagent_cli = True  # type: ignore[attr-defined]
    root_logger.addHandler(file_handler)


def init_cli(verbose: bool = False) -> Path:
    """Resolve the data directory and set up logging for a command.

    Returns:
        The data directory.
    """
    data_dir = get_data_dir()
    setup_logging(get_log_dir(data_dir), verbose)
    return data_dir
