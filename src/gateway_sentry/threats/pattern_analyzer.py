# Threats Module - Pattern Orchestrator
#
# Runs every registered detector over the same event batch and
# concatenates their output.  Each detector call is isolated: an
# exception is logged and that detector is skipped, the remaining
# detectors still run.

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from .detectors import PatternDetector, default_detectors
from .models import ThreatEvent, ThreatPattern

logger = logging.getLogger(__name__)


class AnalysisReport:
    """Outcome of one orchestrated detection run."""

    def __init__(self, event_count: int = 0):
        self.event_count = event_count
        self.patterns: List[ThreatPattern] = []
        self.failed_detectors: Dict[str, str] = {}

    @property
    def success(self) -> bool:
        return not self.failed_detectors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_count": self.event_count,
            "patterns": len(self.patterns),
            "failed_detectors": dict(self.failed_detectors),
        }


class ThreatPatternAnalyzer:
    """Coordinator over the pattern detectors.

    Usage::

        analyzer = ThreatPatternAnalyzer()
        patterns = analyzer.detect_patterns(recent_events)
    """

    def __init__(self, detectors: Optional[Sequence[PatternDetector]] = None):
        self._lock = threading.RLock()
        self._detectors: List[PatternDetector] = (
            list(detectors) if detectors is not None else default_detectors()
        )

    def register(self, detector: PatternDetector) -> None:
        with self._lock:
            self._detectors.append(detector)

    @property
    def detector_names(self) -> List[str]:
        with self._lock:
            return [d.name for d in self._detectors]

    def detect_patterns(self, events: Sequence[ThreatEvent]) -> List[ThreatPattern]:
        """Return all patterns found in ``events`` by every detector."""
        return self.analyze(events).patterns

    def analyze(self, events: Sequence[ThreatEvent]) -> AnalysisReport:
        """Run all detectors and report per-detector failures."""
        # Detectors iterate the batch several times; work on a snapshot.
        batch = list(events)
        report = AnalysisReport(event_count=len(batch))
        if not batch:
            return report

        with self._lock:
            detectors = list(self._detectors)

        for detector in detectors:
            try:
                found = detector.detect(batch)
            except Exception as exc:
                report.failed_detectors[detector.name] = str(exc)
                logger.warning(
                    "Pattern detector %s failed over %d events: %s",
                    detector.name, len(batch), exc,
                )
                continue
            report.patterns.extend(found)

        if report.patterns:
            logger.info(
                "Detected %d threat patterns in %d events",
                len(report.patterns), len(batch),
            )
        return report
