"""
Logging setup for IDM Sync.

Configures the root logger with a rotating file handler, an optional console
handler and a filter that masks credentials before records are written.
The audit event stream uses the ``audit`` logger and can be routed to its own
file.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List
from datetime import datetime, timedelta

LOG_FILE = 'idm-sync.log'
AUDIT_LOG_FILE = 'audit.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'client_secret', 'access_token', 'refresh_token', 'api_key', 'credential'
    ]

    HEADER_PATTERNS = [
        re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE),
        re.compile(r'(PRIVATE-TOKEN:\s*)[^\s,}\]]+', re.IGNORECASE),
        re.compile(r"('Authorization':\s*'(?:Bearer|Basic)\s+)[^']+", re.IGNORECASE),
        re.compile(r"('PRIVATE-TOKEN':\s*')[^']+", re.IGNORECASE)
    ]

    def __init__(self):
        super().__init__()
        self._patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value
            self._patterns.append(re.compile(rf'(\b{keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE))
            # "key": "value"
            self._patterns.append(re.compile(rf'("{keyword}"\s*:\s*")[^"]*', re.IGNORECASE))
            # 'key': 'value'
            self._patterns.append(re.compile(rf"('{keyword}'\s*:\s*')[^']*", re.IGNORECASE))

    def mask(self, message: str) -> str:
        for pattern in self.HEADER_PATTERNS:
            message = pattern.sub(r'\1****', message)
        for pattern in self._patterns:
            message = pattern.sub(r'\1****', message)
        return message

    def filter(self, record):
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        record.msg = self.mask(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for IDM Sync.

    Provides file-based logging with rotation and retention, and
    container-friendly console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config or {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()
        audit_file = logging_config.get('audit_file', False)

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(LOG_FILE, rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        if audit_file:
            audit_handler = self._create_file_handler(AUDIT_LOG_FILE, rotation)
            audit_handler.setLevel(logging.INFO)
            audit_handler.setFormatter(logging.Formatter('%(asctime)s %(message)s'))
            logging.getLogger('audit').addHandler(audit_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, filename: str, rotation: str) -> logging.Handler:
        """
        Create a file handler for the rotation setting.

        Args:
            filename: Log file name inside the log directory
            rotation: 'daily', 'midnight' or 'none'
        """
        log_file = os.path.join(self.log_dir, filename)

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')
        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in self.get_log_files():
            if log_file.endswith(LOG_FILE) or log_file.endswith(AUDIT_LOG_FILE):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        files = glob.glob(os.path.join(self.log_dir, f"{LOG_FILE}*"))
        files += glob.glob(os.path.join(self.log_dir, f"{AUDIT_LOG_FILE}*"))
        return sorted(files)


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Set up logging with the global logging manager."""
    _logging_manager.setup_logging(config)
