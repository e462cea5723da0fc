"""
Logging setup for LDAP Group Sync.

File logging with daily rotation and retention, optional console output, and
scrubbing of directory passwords and GLPI API tokens from every record.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, List

LOG_FILE_NAME = 'ldap_group_sync.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'user_token', 'app_token', 'session_token',
        'token', 'secret', 'credential', 'pwd',
    ]

    PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        # key=value
        PATTERNS.append((re.compile(rf'({_keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
        # "key": "value"
        PATTERNS.append((re.compile(rf'("{_keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
        # 'key': 'value' (repr of a dict)
        PATTERNS.append((re.compile(rf"('{_keyword}'\s*:\s*')[^']*(')", re.IGNORECASE), r'\1****\2'))
    del _keyword
    # Authorization: user_token xxx / Basic xxx
    PATTERNS.append((re.compile(r'(Authorization:\s*(?:user_token|Basic|Bearer)\s+)\S+', re.IGNORECASE), r'\1****'))
    # GLPI API headers
    PATTERNS.append((re.compile(r'((?:App|Session)-Token:\s*)\S+', re.IGNORECASE), r'\1****'))

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            for pattern, replacement in self.PATTERNS:
                msg = pattern.sub(replacement, msg)
            record.msg = msg

        return True


class LoggingManager:
    """Configures the root logger once per process."""

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

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

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

        file_handler = self._create_file_handler(rotation)
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

        self._cleanup_old_logs()

        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create a file handler for the given rotation setting.

        Args:
            rotation: 'daily' or 'midnight' to rotate at midnight, anything else to never rotate

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

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
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def cleanup_logs() -> None:
    """Force cleanup of old log files."""
    _logging_manager._cleanup_old_logs()


class AuditLogger:
    """Audit trail of the changes made to local groups."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_group_operation(self, operation: str, group_dn: str, group_id: Any, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Group operation {status}: {operation} dn={group_dn} id={group_id}")

    def log_configuration_access(self, config_file: str):
        self.logger.info(f"Configuration loaded: {config_file}")


# Global audit logger instance
audit_logger = AuditLogger()
