"""
LogManager Component
Responsible for configuring logging for the position tracker,
handling log rotation and keeping per-level message counts.
"""

import logging
import os
import sys
import gzip
import shutil
from typing import Dict, Any, Optional, Union
from logging.handlers import RotatingFileHandler

logger = logging.getLogger(__name__)


class GzipRotatingFileHandler(RotatingFileHandler):
    """
    Extended RotatingFileHandler that compresses rotated logs with gzip
    """

    def doRollover(self):
        """Compress the old log file after rotation"""
        super().doRollover()

        if self.backupCount > 0:
            for i in range(1, self.backupCount + 1):
                source = f"{self.baseFilename}.{i}"
                target = f"{source}.gz"

                if os.path.exists(source):
                    with open(source, 'rb') as f_in:
                        with gzip.open(target, 'wb') as f_out:
                            shutil.copyfileobj(f_in, f_out)

                    os.remove(source)


class LevelCountFilter(logging.Filter):
    """Counts records passing through a handler, by level name"""

    def __init__(self):
        super().__init__()
        self.counts = {level: 0 for level in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')}

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelname in self.counts:
            self.counts[record.levelname] += 1
        return True


class LogManager:
    """
    LogManager handles:
    - Log configuration and formatting
    - Log file rotation and compression
    - Log level management
    - A dedicated logger for ledger and snapshot writes
    """

    def __init__(self,
                 log_dir: str = './logs',
                 log_level: Union[str, int] = logging.INFO,
                 log_to_file: bool = True):
        """
        Initialize the LogManager

        Args:
            log_dir (str): Directory for log files
            log_level (Union[str, int]): Initial log level
            log_to_file (bool): Attach rotating file handlers
        """
        self.log_dir = log_dir
        self.log_to_file = log_to_file
        self.max_file_size = 10 * 1024 * 1024  # 10 MB
        self.backup_count = 5
        self.log_level = self._resolve_level(log_level) or logging.INFO
        self.log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        self.date_format = '%Y-%m-%d %H:%M:%S'

        self.handlers: Dict[str, logging.Handler] = {}
        self.root_logger = logging.getLogger()
        self.counter = LevelCountFilter()

        # Ledger and snapshot writes
        self.accounting_logger = logging.getLogger('accounting')

    @classmethod
    def from_config(cls, config_manager) -> 'LogManager':
        return cls(
            log_dir=config_manager.get('log_dir', './logs'),
            log_level=config_manager.get('log_level', 'INFO'),
            log_to_file=config_manager.get('log_to_file', True)
        )

    @staticmethod
    def _resolve_level(level: Union[str, int]) -> Optional[int]:
        if isinstance(level, int):
            return level
        numeric_level = getattr(logging, str(level).upper(), None)
        return numeric_level if isinstance(numeric_level, int) else None

    def setup(self):
        """Set up logging configuration"""
        formatter = logging.Formatter(self.log_format, self.date_format)

        self.root_logger.setLevel(self.log_level)

        # Replace handlers installed by a previous setup() call
        for handler in list(self.root_logger.handlers):
            self.root_logger.removeHandler(handler)
        for handler in list(self.accounting_logger.handlers):
            self.accounting_logger.removeHandler(handler)
        self.handlers = {}

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(self.counter)
        self.root_logger.addHandler(console_handler)
        self.handlers['console'] = console_handler

        if self.log_to_file:
            os.makedirs(self.log_dir, exist_ok=True)

            file_handler = GzipRotatingFileHandler(
                os.path.join(self.log_dir, 'position_tracker.log'),
                maxBytes=self.max_file_size,
                backupCount=self.backup_count
            )
            file_handler.setFormatter(formatter)
            self.root_logger.addHandler(file_handler)
            self.handlers['general'] = file_handler

            error_handler = GzipRotatingFileHandler(
                os.path.join(self.log_dir, 'error.log'),
                maxBytes=self.max_file_size,
                backupCount=self.backup_count
            )
            error_handler.setFormatter(formatter)
            error_handler.setLevel(logging.ERROR)
            self.root_logger.addHandler(error_handler)
            self.handlers['error'] = error_handler

            accounting_handler = GzipRotatingFileHandler(
                os.path.join(self.log_dir, 'accounting.log'),
                maxBytes=self.max_file_size,
                backupCount=self.backup_count
            )
            accounting_handler.setFormatter(formatter)
            self.accounting_logger.addHandler(accounting_handler)
            self.handlers['accounting'] = accounting_handler

        logger.info(f"Logging setup complete (level: {logging.getLevelName(self.log_level)})")

    def set_log_level(self, level: Union[str, int]):
        """
        Set the log level

        Args:
            level (Union[str, int]): Log level name or numeric value
        """
        numeric_level = self._resolve_level(level)
        if numeric_level is None:
            logger.warning(f"Invalid log level: {level}")
            return

        self.root_logger.setLevel(numeric_level)
        self.log_level = numeric_level

        for name in ('console', 'general'):
            if name in self.handlers:
                self.handlers[name].setLevel(numeric_level)

        # Error handler always stays at ERROR level

        logger.info(f"Log level set to {logging.getLevelName(numeric_level)}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'log_level': logging.getLevelName(self.log_level),
            'message_counts': dict(self.counter.counts),
            'handlers': list(self.handlers)
        }

    def close(self):
        """Detach and close every handler installed by setup()"""
        for handler in self.handlers.values():
            self.root_logger.removeHandler(handler)
            self.accounting_logger.removeHandler(handler)
            handler.close()
        self.handlers = {}
