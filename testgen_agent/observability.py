"""
Observability
=============
Structured logging for the generate/repair loop: a JSON formatter,
rotating file logging, and a ``StructuredLogger`` with one method per
loop event.
"""

import logging
import json
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict
from datetime import datetime


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logs."""

    _RESERVED = frozenset((
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName",
        "relativeCreated", "thread", "threadName", "exc_info",
        "exc_text", "stack_info", "taskName",
    ))

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_file_logging(
    log_dir: str = "./logs",
    log_name: str = "testgen_agent.log",
    max_bytes: int = 10_000_000,  # 10 MB
    backup_count: int = 5,
) -> Path:
    """Attach a rotating file handler to the ``testgen_agent`` logger.

    Args:
        log_dir: Directory to store logs (created if doesn't exist).
        log_name: Name of the log file.
        max_bytes: Max size before rotation (default 10 MB).
        backup_count: Number of backup files to keep (default 5).

    Returns:
        Path to the log file.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    log_file = log_path / log_name

    handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger("testgen_agent")
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    return log_file


def configure_console_logging(level: str = "INFO", log_format: str = "text") -> None:
    """Send ``testgen_agent`` log records to stderr.

    Progress lines for humans go to stdout from the CLI; log records stay
    on stderr so the two never interleave in redirected output.
    """
    root_logger = logging.getLogger("testgen_agent")
    root_logger.setLevel(getattr(logging, level))

    if any(getattr(h, "_testgen_console", False) for h in root_logger.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    handler._testgen_console = True
    root_logger.addHandler(handler)


class StructuredLogger:
    """Structured logging for repair-loop events.

    Each method emits one record whose ``extra`` fields carry the event
    payload, so a ``JsonFormatter`` handler renders them as JSON keys.
    """

    def __init__(self, name: str = "testgen_agent.events"):
        self.logger = logging.getLogger(name)

    def log_llm_call(
        self,
        provider: str,
        model: str,
        tokens_in: Optional[int],
        tokens_out: Optional[int],
        latency_ms: float,
    ):
        """Log an LLM API call."""
        self.logger.info(
            "LLM Call",
            extra={
                "event": "llm_call",
                "provider": provider,
                "model": model,
                "tokens_in": tokens_in,
                "tokens_out": tokens_out,
                "latency_ms": latency_ms,
            },
        )

    def log_iteration(self, iteration: int, max_iterations: int, repair: bool):
        """Log the start of a loop iteration."""
        self.logger.info(
            "Iteration Started",
            extra={
                "event": "iteration",
                "iteration": iteration,
                "max_iterations": max_iterations,
                "repair": repair,
            },
        )

    def log_stage_failure(self, iteration: int, stage: str, diagnostics: str):
        """Log a failed stage and the diagnostics fed back to the LLM."""
        self.logger.warning(
            "Stage Failed",
            extra={
                "event": "stage_failure",
                "iteration": iteration,
                "stage": stage,
                "diagnostics": diagnostics[:2000],
            },
        )

    def log_loop_finished(self, state: str, iterations: int, last_failed_stage: Optional[str]):
        """Log the terminal state of a repair loop."""
        self.logger.info(
            "Loop Finished",
            extra={
                "event": "loop_finished",
                "state": state,
                "iterations": iterations,
                "last_failed_stage": last_failed_stage,
            },
        )

    def log_error(self, error: Exception, context: Optional[Dict] = None):
        """Log an error with context."""
        self.logger.error(
            "Error",
            extra={
                "event": "error",
                "error_type": type(error).__name__,
                "error_message": str(error),
                "context": context or {},
            },
            exc_info=True,
        )
