# Core Module - Shared Utilities
#
# Core module provides shared functionality across gateway-sentry:
# - Audit trail (structured JSON pipeline events)
# - Configuration (environment / .env)
# - SQLite connection helper

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    log_pipeline_event,
)
from .config import ThreatSettings
from .db import connect

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "log_pipeline_event",
    # Configuration
    "ThreatSettings",
    # Database
    "connect",
]
