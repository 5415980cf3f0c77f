"""
ScreenLookup Logging Configuration

A centralized logging system using loguru. Provides separate log files for the
coordinator and the OCR worker process, with automatic rotation and
component tagging.

The OCR worker speaks its protocol over stdout, so it must initialize logging
with ``console_sink=sys.stderr``. Nothing but protocol lines may reach the
worker's stdout.
"""

import os
import sys
from pathlib import Path
from typing import Optional, TextIO, TYPE_CHECKING

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger as _logger

# Remove default handler
_logger.remove()


class LoggerManager:
    """
    Manages the loguru handlers for one process.
    Supports a console handler, a per-process log file and a shared error log.
    """

    # Component to file patterns mapping for automatic context tagging
    COMPONENT_PATTERNS = {
        "WORKER": ["ocr/ocr_worker.py", "ocr/worker_state.py", "ocr/scan.py", "macos_capture", "capture_backend"],
        "BRIDGE": ["ocr_bridge.py", "ocr_protocol.py"],
        "CONTROL": ["control_ipc.py"],
        "OVERLAY": ["overlay_window.py", "overlay_layout.py"],
        "CONFIG": ["configuration.py"],
    }

    def __init__(self):
        self._initialized = False
        self._log_dir: Optional[Path] = None
        self._handlers = {}
        self._console_sink: TextIO = sys.stdout

    def _get_app_directory(self) -> Path:
        """Get the application config directory (platform-aware)."""
        if sys.platform == 'win32':
            appdata_dir = os.getenv('APPDATA')
        else:
            appdata_dir = os.path.expanduser('~/.config')

        config_dir = Path(appdata_dir) / 'ScreenLookup'
        config_dir.mkdir(parents=True, exist_ok=True)
        return config_dir

    def _get_log_directory(self) -> Path:
        """Get or create the logs directory."""
        if self._log_dir is None:
            self._log_dir = self._get_app_directory() / 'logs'
            self._log_dir.mkdir(parents=True, exist_ok=True)
        return self._log_dir

    def _determine_logger_name(self) -> str:
        """Pick the log file name from the entry module of the process."""
        main_module = sys.modules.get("__main__")
        main_file = getattr(main_module, "__file__", "") or ""
        if "ocr_worker" in os.path.basename(main_file):
            return "ocr_worker"
        return "screenlookup"

    def _detect_component_tag(self, record) -> str:
        """
        Detect the component tag based on the file path in the log record.
        Returns fixed-width component tag for consistent formatting.
        """
        try:
            file_path = record.get("file", {})
            if isinstance(file_path, dict):
                file_name = file_path.get("path", "")
            else:
                file_name = getattr(file_path, "path", str(file_path))

            file_name = file_name.replace("\\", "/")

            for component, patterns in self.COMPONENT_PATTERNS.items():
                for pattern in patterns:
                    if pattern in file_name:
                        return f"{component}".ljust(10)

            return "MAIN".ljust(10)
        except Exception:
            return "MAIN".ljust(10)

    def _add_console_handler(self, logger_name: str, level: str = "INFO"):
        """Add a console handler with appropriate formatting and color."""
        def format_with_component(record):
            record["extra"]["component_tag"] = self._detect_component_tag(record)
            return True

        handler_id = _logger.add(
            self._console_sink,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <dim>{extra[component_tag]}</dim> | <level>{message}</level>",
            level=level,
            colorize=True,
            backtrace=False,
            diagnose=False,
            filter=format_with_component,
        )
        self._handlers[f"{logger_name}_console"] = handler_id
        return handler_id

    def _add_file_handler(self, logger_name: str, level: str = "DEBUG"):
        """Add a rotating file handler for the specified logger."""
        log_file = self._get_log_directory() / f"{logger_name}.log"

        def format_with_component(record):
            record["extra"]["component_tag"] = self._detect_component_tag(record)
            return True

        handler_id = _logger.add(
            str(log_file),
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component_tag]}{name}:{function}:{line} | {message}",
            level=level,
            rotation="5 MB",
            retention="7 days",
            compression="zip",
            encoding="utf-8",
            backtrace=True,
            diagnose=True,
            enqueue=True,  # Thread-safe logging
            filter=format_with_component,
        )
        self._handlers[f"{logger_name}_file"] = handler_id
        return handler_id

    def _add_error_handler(self):
        """Add a dedicated error log file for ERROR and CRITICAL messages."""
        error_log = self._get_log_directory() / "error.log"

        def format_with_component(record):
            record["extra"]["component_tag"] = self._detect_component_tag(record)
            return record["level"].no >= 40

        handler_id = _logger.add(
            str(error_log),
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component_tag]}{name}:{function}:{line} - {message}\n{exception}",
            level="ERROR",
            rotation="5 MB",
            retention="14 days",
            compression="zip",
            encoding="utf-8",
            backtrace=True,
            diagnose=True,
            enqueue=True,
            filter=format_with_component,
        )
        self._handlers["error_file"] = handler_id
        return handler_id

    def initialize(self, logger_name: Optional[str] = None, console_level: str = "INFO",
                   file_level: str = "DEBUG", console_sink: Optional[TextIO] = None):
        """
        Initialize the logging system with handlers.

        Args:
            logger_name: Name of the log file (auto-detected if None)
            console_level: Minimum level for console output
            file_level: Minimum level for file output
            console_sink: Stream for console output, stdout unless given
        """
        if self._initialized:
            return

        if logger_name is None:
            logger_name = self._determine_logger_name()
        if console_sink is not None:
            self._console_sink = console_sink

        self._add_console_handler(logger_name, level=console_level)
        self._add_file_handler(logger_name, level=file_level)
        self._add_error_handler()

        _logger.configure(extra={"logger_name": logger_name, "component_tag": "MAIN".ljust(10)})

        self._initialized = True
        _logger.debug(f"Logging initialized for {logger_name}, log directory: {self._get_log_directory()}")

    def reinitialize(self, logger_name: Optional[str] = None, console_level: str = "INFO",
                     file_level: str = "DEBUG", console_sink: Optional[TextIO] = None):
        """Drop every handler and initialize again, e.g. to move console output to stderr."""
        for handler_id in self._handlers.values():
            try:
                _logger.remove(handler_id)
            except ValueError:
                pass
        self._handlers.clear()
        self._initialized = False
        self.initialize(logger_name=logger_name, console_level=console_level,
                        file_level=file_level, console_sink=console_sink)

    def cleanup_old_logs(self, days: int = 7):
        """
        Clean up log files older than specified days.

        Args:
            days: Number of days to retain logs
        """
        import time

        log_dir = self._get_log_directory()
        cutoff = time.time() - (days * 86400)

        if not log_dir.exists():
            return

        cleaned_count = 0
        for log_file in log_dir.iterdir():
            if log_file.is_file():
                try:
                    if log_file.stat().st_mtime < cutoff:
                        log_file.unlink()
                        cleaned_count += 1
                        _logger.debug(f"Deleted old log file: {log_file}")
                except Exception as e:
                    _logger.warning(f"Error deleting log file {log_file}: {e}")

        if cleaned_count > 0:
            _logger.info(f"Cleaned up {cleaned_count} old log files")

    def get_logger(self) -> "Logger":
        """Get the configured loguru logger instance."""
        return _logger


# Global logger manager instance
_manager = LoggerManager()


def get_logger() -> "Logger":
    return _manager.get_logger()


def initialize_logging(logger_name: Optional[str] = None, console_level: str = "INFO",
                       file_level: str = "DEBUG", console_sink: Optional[TextIO] = None):
    """Initialize the logging system, replacing any handlers installed earlier."""
    _manager.reinitialize(logger_name=logger_name, console_level=console_level,
                          file_level=file_level, console_sink=console_sink)


def cleanup_old_logs(days: int = 7):
    """Clean up old log files (convenience function)."""
    _manager.cleanup_old_logs(days=days)


# Export the logger directly for convenience. Handlers are installed by the
# process entry point (initialize_logging), so importing a module never
# writes to stdout behind the worker protocol's back.
logger = get_logger()

__all__ = [
    'logger',
    'get_logger',
    'initialize_logging',
    'cleanup_old_logs',
    'LoggerManager',
]
