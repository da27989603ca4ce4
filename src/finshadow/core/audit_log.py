# FinShadow Core - Pipeline Audit Trail
#
# Append-only JSON Lines record of every pipeline stage outcome:
# ingestion runs, scoring runs, detected spikes and created alerts.
# Downstream consumers (dashboards, reviewers) read this file to
# reconstruct what the pipeline did and why.

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Optional, TextIO
from uuid import uuid4

import structlog

logger = logging.getLogger(__name__)


class AuditEvent(str, Enum):
    """Kinds of entries written to the audit trail."""

    INGESTION_RUN = "ingestion_run"
    SCORING_RUN = "scoring_run"
    SPIKE_DETECTED = "spike_detected"
    ALERT_CREATED = "alert_created"


class AuditLog:
    """Structured, append-only audit logger for pipeline events.

    Each entry is one JSON object per line with ``event``, ``event_id``,
    ``timestamp`` and the event-specific fields.  Write failures are
    logged and swallowed: the audit trail must never abort a pipeline run.

    Args:
        log_path: File to append to.  Parent directories are created.
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self._lock = threading.Lock()
        self._file: Optional[TextIO] = None
        self._logger = None

    def _bind(self):
        if self._logger is None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.log_path, "a", encoding="utf-8")
            self._logger = structlog.wrap_logger(
                structlog.PrintLogger(file=self._file),
                processors=[
                    structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
                    structlog.processors.JSONRenderer(sort_keys=True),
                ],
            )
        return self._logger

    def record(self, event: AuditEvent, **fields: Any) -> str:
        """Append one audit entry.  Returns the generated event ID."""
        event_id = str(uuid4())
        with self._lock:
            try:
                self._bind().info(event.value, event_id=event_id, **fields)
                self._file.flush()
            except OSError as exc:
                logger.warning("Failed to write audit log %s: %s", self.log_path, exc)
        return event_id

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
                self._logger = None


class NullAuditLog(AuditLog):
    """Audit log that discards entries (used when no path is configured)."""

    def __init__(self):
        super().__init__(log_path="")

    def record(self, event: AuditEvent, **fields: Any) -> str:
        return str(uuid4())

    def close(self) -> None:
        return None

