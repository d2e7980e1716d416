"""
Structured logging and error reporting for serving-bench.

Provides centralized logging configuration with:
- Structured logging using structlog
- Error context capture and reporting for failed trials
- Multiple output formats (JSON, human-readable)
"""

import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Optional, Iterable, List, Union

import structlog
from structlog.stdlib import LoggerFactory

from .config import BenchmarkConfig


OUTPUT_TAIL_CHARS = 4000


class BenchmarkLogger:
    """
    Centralized logging configuration.

    Routes structlog through the standard library so that both the console
    and the optional rotating log file receive every record.
    """

    def __init__(self, config: BenchmarkConfig):
        self.config = config
        self._configured = False

    def configure_logging(self):
        """
        Configure structured logging based on configuration settings.

        Sets up:
        - Log level and format
        - File and console handlers
        - Structured logging processors
        """
        if self._configured:
            return

        logging.basicConfig(
            level=getattr(logging, self.config.log_level),
            format='%(message)s',  # structlog will handle formatting
            handlers=[]
        )

        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]

        if self.config.log_format == "structured":
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._setup_handlers()

        self._configured = True

        logger = structlog.get_logger(__name__)
        logger.info(
            "Logging configured",
            log_level=self.config.log_level,
            log_format=self.config.log_format,
            log_file=self.config.log_file
        )

    def _setup_handlers(self):
        """Set up logging handlers for console and file output."""
        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, self.config.log_level))
        root_logger.handlers.clear()

        # Console output goes to stderr so stdout stays free for reports
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, self.config.log_level))
        root_logger.addHandler(console_handler)

        if self.config.log_file:
            log_file = Path(self.config.log_file)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(logging.DEBUG)
            root_logger.addHandler(file_handler)
            # Let DEBUG records reach the file handler
            root_logger.setLevel(logging.DEBUG)

    def get_logger(self, name: str) -> structlog.BoundLogger:
        if not self._configured:
            self.configure_logging()

        return structlog.get_logger(name)


def tail_output(output: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    """Keep the end of captured process output, where failures show up."""
    if not output or len(output) <= limit:
        return output or ""
    return "..." + output[-limit:]


def decode_output(output: Union[bytes, str, None]) -> str:
    """Decode captured process output; undecodable bytes become U+FFFD."""
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


class ErrorReporter:
    """
    Centralized error reporting and context capture.

    Failed trials are logged together with the tail of the captured process
    output so the cause survives container cleanup.
    """

    SENSITIVE_KEYS = ("password", "token", "key", "secret", "credential")

    def __init__(self, logger: structlog.BoundLogger):
        self.logger = logger

    def report_trial_error(
        self,
        error: Exception,
        trial: int,
        stage: str,
        severity: str = "error",
        **context
    ):
        """
        Report a failure that ended a trial.

        Args:
            error: Exception that occurred
            trial: Index of the trial
            stage: Orchestration step that failed (e.g. "await_ready")
            severity: "error", "fatal" or "skipped"
            **context: Additional context
        """
        error_context = {
            "error_category": "trial_error",
            "trial": trial,
            "stage": stage,
            "severity": severity,
            "error_type": type(error).__name__,
            "error_message": str(error),
            **context
        }

        output = getattr(error, "output", "")
        if output:
            error_context["output"] = tail_output(output)

        if severity == "skipped":
            self.logger.warning("Trial skipped", **error_context)
        else:
            self.logger.error("Trial failed", **error_context)

    def report_storage_error(
        self,
        error: Exception,
        operation: str,
        file_path: Optional[Union[str, Path]] = None,
        **context
    ):
        """Report a storage-related error."""
        error_context = {
            "error_category": "storage_error",
            "operation": operation,
            "error_type": type(error).__name__,
            "error_message": str(error),
            **context
        }

        if file_path:
            error_context["file_path"] = str(file_path)

        self.logger.error(
            "Storage error occurred",
            **error_context,
            exc_info=error
        )

    def sanitize_env(self, env: Iterable[str]) -> List[str]:
        """Mask the values of environment entries that look like secrets."""
        sanitized = []
        for entry in env:
            key, sep, _ = entry.partition("=")
            if sep and any(sensitive in key.lower() for sensitive in self.SENSITIVE_KEYS):
                sanitized.append(f"{key}=***REDACTED***")
            else:
                sanitized.append(entry)
        return sanitized


def setup_logging(config: BenchmarkConfig) -> BenchmarkLogger:
    """
    Set up logging configuration for the application.

    Args:
        config: BenchmarkConfig instance

    Returns:
        Configured BenchmarkLogger instance
    """
    benchmark_logger = BenchmarkLogger(config)
    benchmark_logger.configure_logging()
    return benchmark_logger


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance (convenience function)."""
    return structlog.get_logger(name)
