# Core Module - Analysis Audit Trail
#
# Append-only structured record of what the analysis pipeline decided:
# patterns detected, reputation quota exhausted, geo databases reloaded,
# analysis cycles completed, retention purges.  Every decision the
# pipeline makes is rule-based, so the audit trail is what makes a
# classification or a suppressed lookup explainable after the fact.
#
# Events are rendered as JSON lines by structlog into a daily file.
# Operational logging stays on the stdlib ``logging`` module.

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Kinds of pipeline events recorded in the audit trail."""

    # Analysis
    CYCLE_COMPLETED = "analysis.cycle_completed"
    CYCLE_FAILED = "analysis.cycle_failed"
    PATTERN_DETECTED = "analysis.pattern_detected"
    DETECTOR_FAILED = "analysis.detector_failed"
    ANALYSIS_FAILED = "analysis.analysis_failed"

    # Enrichment
    QUOTA_EXHAUSTED = "reputation.quota_exhausted"
    GEO_DATABASES_RELOADED = "geo.databases_reloaded"
    GEO_DOWNLOAD_FAILED = "geo.download_failed"
    GEO_BACKFILL_COMPLETED = "geo.backfill_completed"

    # Maintenance
    RETENTION_PURGE = "maintenance.retention_purge"


class EventSeverity(str, Enum):
    """Severity of an audit event."""

    INFO = "info"
    WARNING = "warning"
    ALERT = "alert"


class AuditLogger:
    """Append-only JSON audit logger for pipeline decisions.

    Each instance owns its own file handler so several pipelines (or
    tests) in one process never interleave into the same file.
    """

    def __init__(self, log_dir: Optional[Path] = None):
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._std_logger = logging.getLogger(
            f"gateway_sentry.audit.{uuid4().hex[:8]}"
        )
        self._std_logger.setLevel(logging.INFO)
        self._std_logger.propagate = False
        self._handler = self._setup_file_handler()

        self.logger = structlog.wrap_logger(
            self._std_logger,
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
        )

    @property
    def log_file(self) -> Path:
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.log_dir / f"audit_{today}.log"

    def _setup_file_handler(self) -> logging.FileHandler:
        handler = logging.FileHandler(self.log_file, mode="a", encoding="utf-8")
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(message)s"))
        self._std_logger.addHandler(handler)
        return handler

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append one event to the audit trail.

        Returns:
            The generated event ID.
        """
        event_id = str(uuid4())
        self.logger.info(
            "pipeline_event",
            event_id=event_id,
            event_type=event_type.value,
            severity=severity.value,
            message=message,
            details=details or {},
        )
        return event_id

    def query_events(
        self,
        event_types: Optional[List[EventType]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Read back today's events, newest last."""
        if not self.log_file.exists():
            return []

        wanted = {t.value for t in event_types} if event_types else None
        events: List[Dict[str, Any]] = []
        with open(self.log_file, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if wanted is not None and entry.get("event_type") not in wanted:
                    continue
                events.append(entry)
        return events[-limit:]

    def close(self) -> None:
        """Detach and close the file handler."""
        self._std_logger.removeHandler(self._handler)
        self._handler.close()


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def log_pipeline_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs,
) -> str:
    """Convenience wrapper around ``get_audit_logger().log_event``.

    Usage:
        log_pipeline_event(
            EventType.PATTERN_DETECTED,
            EventSeverity.ALERT,
            "Brute force from 203.0.113.7 targeting port 22",
            details={"dedup_key": "bf:203.0.113.7:22"},
        )
    """
    return get_audit_logger().log_event(event_type, severity, message, **kwargs)
