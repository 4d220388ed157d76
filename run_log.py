#!/usr/bin/env python3
"""
Run logging shared by the exporter and importer.

Console output stays clean (message only); the run.log transcript gets
timestamps, levels and the debug detail that is too noisy for the console.
"""

import re
import sys
import logging
from pathlib import Path


class FileAndConsoleLogger:
    """Dual logger: detailed file logging + clean console output."""

    def __init__(self, log_path: Path = None):
        self.log_path = None
        self.file_handler = None
        self.console_logger = logging.getLogger('onenote_sync.console')
        self.file_logger = logging.getLogger('onenote_sync.file')
        self.console_logger.propagate = False
        self.file_logger.propagate = False

        # Console: INFO level, clean format
        if not self.console_logger.handlers:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(logging.Formatter('%(message)s'))
            self.console_logger.addHandler(console_handler)
        self.console_logger.setLevel(logging.INFO)

        if log_path:
            self.set_log_file(log_path)

    def set_log_file(self, log_path: Path):
        """Set up file logging, replacing any previous transcript file."""
        self.close_log_file()
        self.log_path = log_path
        self.file_handler = logging.FileHandler(log_path, encoding='utf-8')
        self.file_handler.setLevel(logging.DEBUG)
        self.file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)s | %(message)s'
        ))
        self.file_logger.addHandler(self.file_handler)
        self.file_logger.setLevel(logging.DEBUG)

    def close_log_file(self):
        """Detach and close the transcript file, if any."""
        if self.file_handler:
            self.file_logger.removeHandler(self.file_handler)
            self.file_handler.close()
        self.file_handler = None
        self.log_path = None

    def info(self, msg: str):
        self.console_logger.info(msg)
        if self.log_path:
            self.file_logger.info(msg)

    def debug(self, msg: str):
        if self.log_path:
            self.file_logger.debug(msg)

    def warning(self, msg: str):
        self.console_logger.warning(f"⚠️  {msg}")
        if self.log_path:
            self.file_logger.warning(msg)

    def error(self, msg: str):
        self.console_logger.error(f"❌ {msg}")
        if self.log_path:
            self.file_logger.error(msg)

    def api_error(self, method: str, url: str, status: int, context: str,
                  attempt: int, error_msg: str = None):
        """Log API error with full details to file."""
        # Redact tokens from URL
        safe_url = redact(url)

        log_entry = (
            f"API ERROR | {method} {safe_url} | "
            f"Status: {status} | Context: {context} | "
            f"Attempt: {attempt} | Error: {redact(error_msg) if error_msg else 'N/A'}"
        )
        if self.log_path:
            self.file_logger.error(log_entry)


def redact(text: str) -> str:
    """Strip bearer tokens and Notion secrets from text headed for a log."""
    text = re.sub(r'access_token=[^&\s]+', 'access_token=REDACTED', text)
    text = re.sub(r'Bearer [^\s]+', 'Bearer REDACTED', text)
    text = re.sub(r'\b(secret|ntn)_[A-Za-z0-9]+', r'\1_REDACTED', text)
    return text


logger = FileAndConsoleLogger()
