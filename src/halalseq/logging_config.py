"""
Logging configuration for halalseq.

Provides console/file logging, a JSON formatter for log aggregation and a
small timer that logs stage durations and read throughput.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per record. Values passed through
    ``extra={"extra_fields": {...}}`` are merged into the object.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def setup_logging(
    verbose: bool = False,
    log_file: Optional[Path] = None,
    json_format: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure logging for the halalseq package.

    Args:
        verbose: Log DEBUG records to the console instead of INFO.
        log_file: Optional path of a rotating log file (always DEBUG).
        json_format: Use `StructuredFormatter` instead of the plain format.
        max_bytes: Maximum size of the log file before rotation.
        backup_count: Number of rotated files to keep.

    Returns:
        The configured ``halalseq`` package logger.
    """
    package_logger = logging.getLogger("halalseq")
    package_logger.setLevel(logging.DEBUG)
    package_logger.handlers.clear()
    package_logger.propagate = False

    formatter: logging.Formatter
    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    return package_logger


class StageTimer:
    """
    Context manager logging how long a pipeline stage took.

    Example:
        >>> with StageTimer(logger, "classify", sample="A") as timer:
        ...     timer.items = 1200
    """

    def __init__(self, logger: logging.Logger, stage: str, **context: Any):
        self.logger = logger
        self.stage = stage
        self.context = context
        self.items: Optional[int] = None
        self.duration_seconds: float = 0.0
        self._start = 0.0

    def __enter__(self) -> "StageTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_seconds = time.perf_counter() - self._start
        fields: Dict[str, Any] = {
            "stage": self.stage,
            "duration_seconds": round(self.duration_seconds, 4),
            **self.context,
        }
        if self.items is not None:
            rate = self.items / self.duration_seconds if self.duration_seconds > 0 else 0.0
            fields["items_processed"] = self.items
            fields["items_per_second"] = round(rate, 1)
            message = (
                f"{self.stage} finished in {self.duration_seconds:.2f}s "
                f"({self.items} items, {rate:.0f}/s)"
            )
        else:
            message = f"{self.stage} finished in {self.duration_seconds:.2f}s"
        if exc_type is None:
            self.logger.debug(message, extra={"extra_fields": fields})
        return False
