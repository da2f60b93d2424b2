# Gateway Sentry - Main Package
#
# Deterministic threat intelligence for network gateways: classifies,
# correlates and enriches IPS and traffic-flow telemetry with
# explainable rules only.

__version__ = "0.1.0"
__author__ = "Gateway Sentry Team"
__description__ = "Deterministic gateway threat analysis pipeline"

from .core import (
    EventType,
    EventSeverity,
    ThreatSettings,
    get_audit_logger,
)

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "ThreatSettings",
    "get_audit_logger",
]
