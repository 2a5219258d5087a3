"""
Structured logging system for installer events.
Provides JSON-formatted logs with context and metadata.
"""

import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any


class StructuredLogger:
    """
    Enhanced logger that outputs both human-readable and machine-parseable logs.

    Usage:
        logger = StructuredLogger("market_installer")
        logger.info("job_transition",
                    job_id="4f0c...",
                    app_id="notes",
                    status="downloading")
    """

    def __init__(
        self,
        name: str,
        log_dir: Path | None = None,
        enable_json: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize structured logger.

        Args:
            name: Logger name
            log_dir: Directory for JSON log files (None = disabled)
            enable_json: Enable JSON file logging
            enable_console: Enable console output
        """
        self.name = name
        self.log_dir = log_dir
        self.enable_json = enable_json and log_dir is not None
        self.enable_console = enable_console

        self._logger = logging.getLogger(name)

        self._json_file = None
        if self.enable_json:
            log_dir.mkdir(parents=True, exist_ok=True)
            json_log_path = log_dir / "events.jsonl"
            self._json_file = open(json_log_path, "a", encoding="utf-8")  # noqa: SIM115

        # Session context (added to all log entries)
        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
        }

    def set_session_context(self, **kwargs) -> None:
        """Set session-level context that appears in all logs."""
        self._session_context.update(kwargs)

    def _format_message(self, event: str, **context) -> str:
        """Format message for console output."""
        parts = [f"[{event}]"]
        for key, value in context.items():
            if key not in ("level", "timestamp"):
                parts.append(f"{key}={value}")
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context) -> None:
        """Write structured log entry to JSON file."""
        if not self._json_file or self._json_file.closed:
            return

        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }

        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except (OSError, ValueError) as e:
            print(f"JSON logging failed: {e}", file=sys.stderr)

    def _emit(self, level: int, event: str, **context) -> None:
        if self.enable_console:
            # Plain text: values may contain brackets that Rich would parse.
            self._logger.log(
                level, self._format_message(event, **context), extra={"markup": False}
            )
        if self.enable_json:
            self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context) -> None:
        """Log debug event."""
        self._emit(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        """Log info event."""
        self._emit(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        """Log warning event."""
        self._emit(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        """Log error event."""
        self._emit(logging.ERROR, event, **context)

    def close(self) -> None:
        """Close JSON log file."""
        if self._json_file and not self._json_file.closed:
            self._json_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class JobEventLogger:
    """Specialized logger for job and lock events."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def job_created(self, job_id: str, kind: str, app_id: str, source_url: str | None):
        self.logger.info(
            "job_created", job_id=job_id, kind=kind, app_id=app_id, source_url=source_url
        )

    def job_transition(self, job_id: str, app_id: str, old: str, new: str):
        self.logger.debug(
            "job_transition", job_id=job_id, app_id=app_id, old=old, new=new
        )

    def job_succeeded(self, job_id: str, app_id: str, version: str | None, duration_s: float):
        self.logger.info(
            "job_succeeded",
            job_id=job_id,
            app_id=app_id,
            version=version,
            duration_s=round(duration_s, 2),
        )

    def job_failed(self, job_id: str, app_id: str, kind: str, message: str):
        self.logger.error(
            "job_failed", job_id=job_id, app_id=app_id, kind=kind, message=message
        )

    def job_cancelled(self, job_id: str, app_id: str):
        self.logger.info("job_cancelled", job_id=job_id, app_id=app_id)

    def lock_acquired(self, key: str, holder: str, waited_s: float):
        self.logger.debug(
            "lock_acquired", key=key, holder=holder, waited_s=round(waited_s, 3)
        )

    def lock_reclaimed(self, key: str, previous_holder: str, new_holder: str):
        self.logger.warning(
            "lock_reclaimed",
            key=key,
            previous_holder=previous_holder,
            new_holder=new_holder,
        )

    def orphan_removed(self, path: str, age_s: float):
        self.logger.info("orphan_removed", path=path, age_s=round(age_s, 1))


def create_structured_logger(
    log_dir: Path | None = None, enable_json: bool = False
) -> tuple[StructuredLogger, JobEventLogger]:
    """
    Create the structured loggers.

    Returns:
        Tuple of (base_logger, job_event_logger)
    """
    base = StructuredLogger("market_installer.events", log_dir=log_dir, enable_json=enable_json)
    return base, JobEventLogger(base)
