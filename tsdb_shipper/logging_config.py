"""
Centralized logging configuration for the shipper.

Implements file-based logging with rotation, separate streams for rejected
datapoints and connectivity transitions, and optional JSON formatting.
"""
# mypy: ignore-errors

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Dict, Any
import json
from datetime import datetime, timezone

BAD_METRICS_LOGGER = "tsdb_shipper.bad_metrics"
CONNECTIVITY_LOGGER = "tsdb_shipper.connectivity"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = ("metric", "file", "duration_ms", "event", "status_code")

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON for better parsing."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter for console and file logs."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        """Initialize formatter with optional color support."""
        self.use_colors = use_colors
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors for console output."""
        if self.use_colors and record.levelname in self.COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record)


def _stream_handler(
    path: Path, formatter: logging.Formatter, max_bytes: int, backup_count: int
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_dir: str = "~/.local/log/tsdb-shipper",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    bad_metrics_level: str = "INFO",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 10,
) -> None:
    """
    Configure logging for the shipper.

    Args:
        log_dir: Directory for log files
        console_level: Console logging level
        file_level: File logging level
        use_json: Use JSON formatting for files
        bad_metrics_level: Level of the rejected-datapoint log
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
    """
    log_path = Path(log_dir).expanduser()
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    # Console handler with color
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level))
    console_handler.setFormatter(HumanReadableFormatter(use_colors=sys.stdout.isatty()))
    root_logger.addHandler(console_handler)

    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

    # Main application log
    main_handler = _stream_handler(log_path / "shipper.log", file_formatter, max_bytes, backup_count)
    main_handler.setLevel(getattr(logging, file_level))
    root_logger.addHandler(main_handler)

    # Error-only log for monitoring
    error_handler = _stream_handler(log_path / "error.log", file_formatter, max_bytes, backup_count)
    error_handler.setLevel(logging.ERROR)
    root_logger.addHandler(error_handler)

    # Datapoints rejected by the endpoint
    bad_logger = logging.getLogger(BAD_METRICS_LOGGER)
    bad_logger.handlers.clear()
    bad_logger.addHandler(
        _stream_handler(log_path / "bad-metrics.log", file_formatter, max_bytes, backup_count)
    )
    bad_logger.setLevel(getattr(logging, bad_metrics_level))
    bad_logger.propagate = False

    # Connectivity transitions, also kept in the main log
    conn_logger = logging.getLogger(CONNECTIVITY_LOGGER)
    conn_logger.handlers.clear()
    conn_logger.addHandler(
        _stream_handler(log_path / "connectivity.log", file_formatter, max_bytes, backup_count)
    )
    conn_logger.setLevel(logging.DEBUG)

    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    root_logger.info(
        f"Logging initialized - Console: {console_level}, File: {file_level}, "
        f"Directory: {log_path}, JSON: {use_json}"
    )


def setup_from_config(config) -> None:
    """Configure logging from a LoggingConfig section."""
    setup_logging(
        log_dir=config.log_dir,
        console_level=config.console_level,
        file_level=config.file_level,
        use_json=config.use_json,
        bad_metrics_level=config.bad_metrics_level,
    )


def log_connectivity_event(
    event: str, url: str, error: Optional[BaseException] = None, details: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log a connectivity state transition.

    Args:
        event: connected, reconnected or disconnected
        url: Probed endpoint URL
        error: Failure that caused a disconnect
        details: Additional counters (good/failed checks)
    """
    logger = logging.getLogger(CONNECTIVITY_LOGGER)

    level = logging.WARNING if error is not None else logging.INFO
    message = f"Endpoint {url} {event.upper()}"
    if error is not None:
        message += f" - {type(error).__name__}: {error}"
    if details:
        message += f" - {json.dumps(details)}"

    logger.log(level, message, extra={"event": event})


def log_bad_metric(datapoint: Dict[str, Any], error: Optional[str], status_code: Optional[int] = None) -> None:
    """
    Log one datapoint rejected by the endpoint.

    Args:
        datapoint: The rejected datapoint as echoed by the endpoint
        error: The endpoint's reason
        status_code: HTTP status of the put response
    """
    logger = logging.getLogger(BAD_METRICS_LOGGER)
    metric = datapoint.get("metric") if isinstance(datapoint, dict) else None
    logger.info(
        f"Bad metric: {json.dumps(datapoint, default=str)} - {error}",
        extra={"metric": metric, "status_code": status_code},
    )
