# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Structured logging for the Code Property Graph engine.

Every build and update logs one summary record. Its numbers travel as
``extra_fields`` (see summary_fields), so the JSON file handler writes them
as top-level keys next to the message while the console keeps a plain line:

    {"timestamp": "...", "level": "INFO", "logger": "cpg_engine.updater",
     "thread": "MainThread", "message": "Updated p1 to version 4: ...",
     "project_id": "p1", "kind": "update", "version_number": 4, ...}

Handlers are attached to the ``cpg_engine`` package logger, never to the
root logger, so an embedding application keeps its own logging setup.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .models import GraphUpdateResult

DEFAULT_LOG_DIR_NAME = ".cpg_engine_logs"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
PACKAGE_LOGGER = "cpg_engine"

# Set on handlers installed by setup_logging
_HANDLER_MARK = "_cpg_engine_handler"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        created = datetime.fromtimestamp(record.created, timezone.utc)
        log_data: Dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            # Extraction workers are named cpg-extract_N
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            for key, value in extra_fields.items():
                log_data.setdefault(key, value)

        return json.dumps(log_data, default=str)


def summary_fields(project_id: str, result: GraphUpdateResult, **context: Any) -> Dict[str, Any]:
    """``extra`` mapping that carries a build or update result as log fields.

    Usage:
        logger.info("Built version 3 of p1", extra=summary_fields("p1", result, kind="build"))
    """
    fields: Dict[str, Any] = {
        "project_id": project_id,
        "success": result.success,
        "version_number": result.version_number,
        "operations_applied": result.operations_applied,
        "nodes_affected": result.nodes_affected,
        "edges_affected": result.edges_affected,
        "error_count": len(result.errors),
        "execution_time_ms": round(result.execution_time_ms, 1),
    }
    fields.update(context)
    return {"extra_fields": fields}


def _level_number(log_level: Union[int, str]) -> int:
    if isinstance(log_level, int):
        return log_level
    name = log_level.upper()
    if name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level '{log_level}', expected one of {LOG_LEVELS}")
    return logging.getLevelName(name)


def teardown_logging() -> None:
    """Remove the handlers installed by setup_logging."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            package_logger.removeHandler(handler)
            handler.close()


def setup_logging(
    log_dir: Optional[Path] = None,
    log_level: Union[int, str] = logging.INFO,
    console_output: bool = True,
) -> Path:
    """Send the engine's logs to a daily JSON file and optionally the console.

    Calling it again replaces the handlers of the previous call.

    Args:
        log_dir: Directory for log files. If None, uses .cpg_engine_logs/
            under the working directory.
        log_level: Level number or one of LOG_LEVELS (default: INFO).
        console_output: Whether to also write plain lines to stdout.

    Returns:
        Path of the JSON log file written by the file handler.

    Raises:
        ValueError: If log_level is an unknown level name.
    """
    level = _level_number(log_level)
    if log_dir is None:
        log_dir = Path.cwd() / DEFAULT_LOG_DIR_NAME
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    teardown_logging()
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)

    log_file = log_dir / f"cpg_engine_{datetime.now(timezone.utc).strftime('%Y%m%d')}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(StructuredFormatter())
    handlers: List[logging.Handler] = [file_handler]

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        handlers.append(console_handler)

    for handler in handlers:
        handler.setLevel(level)
        setattr(handler, _HANDLER_MARK, True)
        package_logger.addHandler(handler)

    package_logger.info(f"Logging initialized. Log directory: {log_dir}")
    return log_file
