"""
Centralized logging for the Press chain indexer.

Each component gets its own file under ``<log_dir>/<module_folder>/``, with a
human-readable or JSON layout, mirrored to stderr unless disabled in app.json.
An optional deep-dive trace log follows raw logs from the RPC fetch through to
the projected record.

``INDEXER_LOG_DIR`` overrides ``logging.log_dir`` from app.json.

Usage:
    from indexer_logging.logger_manager import setup_module_logger

    logger = setup_module_logger("pipeline", "pipeline.log", module_folder="Pipeline_Logs")
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_PROJECT_ROOT = Path(__file__).parent.parent

try:
    from config.loader import get_config

    _logging_config: dict[str, Any] = get_config().get_app_config().get("logging", {})
except ImportError:
    _logging_config = {}

_LOG_DIR = Path(os.getenv("INDEXER_LOG_DIR") or _PROJECT_ROOT / _logging_config.get("log_dir", "logs"))
_CONSOLE_ENABLED = bool(_logging_config.get("console", True))
_DEEP_DIVE_ENABLED = bool(_logging_config.get("deep_dive_enabled", False))
_DEEP_DIVE_FOLDER = _logging_config.get("module_folders", {}).get("deep_dive", "Deep_Dive_Logs")

# extra= keys copied into JSON records
_STRUCTURED_FIELDS = ("pipeline_id", "block_number", "tx_hash", "event_type", "error")


# ============================================================================
# FORMATTERS
# ============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with any structured ``extra=`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(
            {key: getattr(record, key) for key in _STRUCTURED_FIELDS if hasattr(record, key)}
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``time | LEVEL | logger | message`` for console and plain log files."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


# ============================================================================
# LOGGER FACTORY
# ============================================================================


def _log_path(log_file: str, module_folder: str | None) -> Path:
    folder = _LOG_DIR / module_folder if module_folder else _LOG_DIR
    folder.mkdir(parents=True, exist_ok=True)
    return folder / log_file


def setup_module_logger(
    name: str,
    log_file: str,
    level: int = logging.INFO,
    module_folder: str | None = None,
    use_json_formatter: bool = False,
    console: bool | None = None,
) -> logging.Logger:
    """
    Logger writing to ``<log_dir>/<module_folder>/<log_file>``.

    Loggers are process-wide by name: a second call with the same name returns
    the already configured logger without adding handlers.

    Args:
        name: Logger name, one per component (e.g. "pipeline").
        log_file: File name inside module_folder.
        level: Minimum level (default INFO).
        module_folder: Sub-folder of the log dir (e.g. "Pipeline_Logs").
        use_json_formatter: JSON lines instead of the human-readable layout.
        console: Mirror to stderr. Defaults to app.json ``logging.console``.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)
    logger.propagate = False

    file_handler = logging.FileHandler(_log_path(log_file, module_folder), encoding="utf-8")
    file_handler.setFormatter(JSONFormatter() if use_json_formatter else HumanReadableFormatter())
    logger.addHandler(file_handler)

    if _CONSOLE_ENABLED if console is None else console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(HumanReadableFormatter())
        logger.addHandler(console_handler)

    return logger


# ============================================================================
# DEEP-DIVE TRACING
# ============================================================================


def get_deep_dive_logger() -> logging.Logger:
    return setup_module_logger(
        "deep_dive",
        "deep_dive_trace.log",
        module_folder=_DEEP_DIVE_FOLDER,
        use_json_formatter=True,
        console=False,
    )


def _trace(event: str, **fields: Any) -> None:
    if not _DEEP_DIVE_ENABLED:
        return
    from shared.serialization_utils import RecordEncoder

    fields["event"] = event
    fields["timestamp"] = datetime.now(timezone.utc).isoformat()
    get_deep_dive_logger().info(json.dumps(fields, cls=RecordEncoder))


def log_data_entry(
    trace_id: str,
    source_module: str,
    what: str,
    data_type: str,
    data: Any,
) -> None:
    """Trace data entering a stage (raw logs fetched for a block range)."""
    _trace(
        "DATA_ENTRY",
        trace_id=trace_id,
        source_module=source_module,
        what=what,
        data_type=data_type,
        data=data,
    )


def log_data_output(
    trace_id: str,
    source_module: str,
    what: str,
    data_type: str,
    data: Any,
    next_stage: str,
) -> None:
    """Trace data leaving a stage (a record handed to the projection store)."""
    _trace(
        "DATA_OUTPUT",
        trace_id=trace_id,
        source_module=source_module,
        what=what,
        data_type=data_type,
        data=data,
        next_stage=next_stage,
    )
