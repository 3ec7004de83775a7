"""
logging_config.py — Centralized Logging Configuration for the Checkout Service

This module configures unified logging behavior for the entire application.
It ensures that all modules log messages consistently to both console and file.

Features:
    • Combined console and file logging output
    • Process ID tagging for multi-process visibility
    • Standardized log format for all modules
    • Reduced verbosity for external dependencies (pika, httpx)
"""

import logging
import sys
from typing import Optional

from .config import Settings


def setup_logging(settings: Optional[Settings] = None):
    """
    Configures the global logging system for the application.

    The configuration includes:
        - Log level: taken from `settings.log_level` (INFO by default)
        - Log format: timestamp, log level, process ID, and message
        - Output destinations:
            1. File: `settings.log_file` (persistent log)
            2. Console (stdout): real-time logs, Docker/Kubernetes compatible
        - Reduced verbosity for third-party libraries such as pika and httpx

    Args:
        settings (Settings, optional): Source of log file and level. Defaults are used when omitted.
    """
    settings = settings or Settings()
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(message)s'

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=log_format,
        handlers=[
            # File output
            logging.FileHandler(settings.log_file),
            # Console output (stdout, Docker-compatible)
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Reduce verbosity from external libraries
    logging.getLogger("pika").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a configured logger instance for a given module or component name.

    Args:
        name (str): The logger name, typically the module's __name__.

    Returns:
        logging.Logger: A preconfigured logger that follows the global format and handlers.
    """
    return logging.getLogger(name)


def short_wallet(address: Optional[str]) -> str:
    """Abbreviates a wallet address for log output."""
    if not address:
        return "anonymous"
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"
