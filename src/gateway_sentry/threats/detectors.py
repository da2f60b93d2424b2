# Threats Module - Pattern Detectors
#
# Four independent sliding-window analyzers over a batch of classified
# events.  Each one is pure: it reads the batch and returns
# ThreatPattern objects, it never persists anything.
#
#   ScanSweepDetector       - one source touching many ports
#   BruteForceDetector      - repeated hits on one auth-style service
#   DDoSDetector            - many sources flooding one destination
#   ExploitCampaignDetector - one exploit signature fired by many sources
#
# All four are built on sliding_window.scan_windows so the windowing
# rules cannot drift apart between detectors.

import json
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Hashable, List, Sequence, Tuple

from .models import (
    KillChainStage,
    PatternType,
    ThreatEvent,
    ThreatPattern,
    utcnow,
)
from .sliding_window import scan_windows


# ── Tuning Constants ────────────────────────────────────────────────

SCAN_SWEEP_WINDOW = timedelta(hours=1)
SCAN_SWEEP_MIN_PORTS = 10
SCAN_SWEEP_FULL_CONFIDENCE_PORTS = 20

BRUTE_FORCE_WINDOW = timedelta(minutes=10)
BRUTE_FORCE_MIN_EVENTS = 20
BRUTE_FORCE_FULL_CONFIDENCE_EVENTS = 50
BRUTE_FORCE_PORTS = frozenset({21, 22, 23, 25, 110, 143, 443, 993, 995, 3389, 5900, 8443})

DDOS_WINDOW = timedelta(minutes=5)
DDOS_MIN_EVENTS = 100
DDOS_MIN_SOURCES = 10
DDOS_FULL_CONFIDENCE_SOURCES = 50

EXPLOIT_CAMPAIGN_WINDOW = timedelta(hours=1)
EXPLOIT_CAMPAIGN_MIN_SOURCES = 5
EXPLOIT_CAMPAIGN_FULL_CONFIDENCE_SOURCES = 10
EXPLOIT_STAGES = frozenset({
    KillChainStage.ATTEMPTED_EXPLOITATION,
    KillChainStage.ACTIVE_EXPLOITATION,
})

# Max source IPs stored on multi-source patterns
MAX_SAMPLED_SOURCES = 20


def _minutes(window: timedelta) -> int:
    return int(window.total_seconds() // 60)


def _distinct_sources(events: Sequence[ThreatEvent]) -> List[str]:
    """Distinct source IPs in first-seen order."""
    return list(dict.fromkeys(e.source_ip for e in events))


class PatternDetector:
    """Base class for detectors: ``detect(events) -> list[ThreatPattern]``."""

    name = "detector"

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    def detect(self, events: Sequence[ThreatEvent]) -> List[ThreatPattern]:
        raise NotImplementedError

    def _pattern(
        self,
        pattern_type: PatternType,
        window: Sequence[ThreatEvent],
        source_ips: List[str],
        confidence: float,
        dedup_key: str,
        description: str,
        target_port=None,
    ) -> ThreatPattern:
        return ThreatPattern(
            pattern_type=pattern_type,
            detected_at=self._clock(),
            source_ips_json=json.dumps(source_ips),
            target_port=target_port,
            event_count=len(window),
            first_seen=window[0].timestamp,
            last_seen=window[-1].timestamp,
            confidence=min(1.0, confidence),
            dedup_key=dedup_key,
            description=description,
        )


class ScanSweepDetector(PatternDetector):
    """Same source IP probing 10+ distinct destination ports within 1 hour."""

    name = "scan_sweep"

    def detect(self, events: Sequence[ThreatEvent]) -> List[ThreatPattern]:
        return scan_windows(
            events,
            group_key=lambda e: e.source_ip,
            window=SCAN_SWEEP_WINDOW,
            evaluate=self._evaluate,
            accepts=lambda e: e.kill_chain_stage == KillChainStage.RECONNAISSANCE,
            min_events=SCAN_SWEEP_MIN_PORTS,
        )

    def _evaluate(self, source_ip: Hashable, window: Sequence[ThreatEvent]):
        ports = len({e.dest_port for e in window})
        if ports < SCAN_SWEEP_MIN_PORTS:
            return None
        return self._pattern(
            PatternType.SCAN_SWEEP,
            window,
            source_ips=[source_ip],
            confidence=ports / SCAN_SWEEP_FULL_CONFIDENCE_PORTS,
            dedup_key=f"ss:{source_ip}",
            description=(
                f"Port scan from {source_ip}: {ports} ports targeted in "
                f"{_minutes(SCAN_SWEEP_WINDOW)}min"
            ),
        )


class BruteForceDetector(PatternDetector):
    """20+ attempts from one source against one auth-style port in 10 minutes."""

    name = "brute_force"

    def detect(self, events: Sequence[ThreatEvent]) -> List[ThreatPattern]:
        return scan_windows(
            events,
            group_key=lambda e: (e.source_ip, e.dest_port),
            window=BRUTE_FORCE_WINDOW,
            evaluate=self._evaluate,
            accepts=lambda e: e.dest_port in BRUTE_FORCE_PORTS,
            min_events=BRUTE_FORCE_MIN_EVENTS,
        )

    def _evaluate(self, key: Tuple[str, int], window: Sequence[ThreatEvent]):
        source_ip, port = key
        count = len(window)
        if count < BRUTE_FORCE_MIN_EVENTS:
            return None
        return self._pattern(
            PatternType.BRUTE_FORCE,
            window,
            source_ips=[source_ip],
            confidence=count / BRUTE_FORCE_FULL_CONFIDENCE_EVENTS,
            dedup_key=f"bf:{source_ip}:{port}",
            description=(
                f"Brute force from {source_ip} targeting port {port}: "
                f"{count} attempts in {_minutes(BRUTE_FORCE_WINDOW)}min"
            ),
            target_port=port,
        )


class DDoSDetector(PatternDetector):
    """100+ events from 10+ distinct sources at one destination in 5 minutes."""

    name = "ddos"

    def detect(self, events: Sequence[ThreatEvent]) -> List[ThreatPattern]:
        return scan_windows(
            events,
            group_key=lambda e: (e.dest_ip, e.dest_port),
            window=DDOS_WINDOW,
            evaluate=self._evaluate,
            min_events=DDOS_MIN_EVENTS,
        )

    def _evaluate(self, key: Tuple[str, int], window: Sequence[ThreatEvent]):
        dest_ip, port = key
        count = len(window)
        if count < DDOS_MIN_EVENTS:
            return None
        sources = _distinct_sources(window)
        if len(sources) < DDOS_MIN_SOURCES:
            return None
        return self._pattern(
            PatternType.DDOS,
            window,
            source_ips=sources[:MAX_SAMPLED_SOURCES],
            confidence=len(sources) / DDOS_FULL_CONFIDENCE_SOURCES,
            dedup_key=f"ddos:{dest_ip}:{port}",
            description=(
                f"DDoS targeting {dest_ip}:{port}: {count} events from "
                f"{len(sources)} sources in {_minutes(DDOS_WINDOW)}min"
            ),
            target_port=port,
        )


def _signature_key(event: ThreatEvent) -> str:
    if event.signature_id:
        return str(event.signature_id)
    return event.signature_name


class ExploitCampaignDetector(PatternDetector):
    """One exploit signature fired by 5+ distinct sources within 1 hour."""

    name = "exploit_campaign"

    def detect(self, events: Sequence[ThreatEvent]) -> List[ThreatPattern]:
        return scan_windows(
            events,
            group_key=_signature_key,
            window=EXPLOIT_CAMPAIGN_WINDOW,
            evaluate=self._evaluate,
            accepts=lambda e: (
                e.kill_chain_stage in EXPLOIT_STAGES and bool(_signature_key(e))
            ),
            min_events=EXPLOIT_CAMPAIGN_MIN_SOURCES,
        )

    def _evaluate(self, signature: Hashable, window: Sequence[ThreatEvent]):
        sources = _distinct_sources(window)
        if len(sources) < EXPLOIT_CAMPAIGN_MIN_SOURCES:
            return None
        target_port = Counter(e.dest_port for e in window).most_common(1)[0][0]
        label = window[-1].signature_name or signature
        return self._pattern(
            PatternType.EXPLOIT_CAMPAIGN,
            window,
            source_ips=sources[:MAX_SAMPLED_SOURCES],
            confidence=len(sources) / EXPLOIT_CAMPAIGN_FULL_CONFIDENCE_SOURCES,
            dedup_key=f"ec:{signature}",
            description=(
                f"Exploit campaign '{label}': {len(sources)} sources in "
                f"{_minutes(EXPLOIT_CAMPAIGN_WINDOW)}min"
            ),
            target_port=target_port,
        )


def default_detectors(clock: Callable[[], datetime] = utcnow) -> List[PatternDetector]:
    return [
        ScanSweepDetector(clock),
        BruteForceDetector(clock),
        DDoSDetector(clock),
        ExploitCampaignDetector(clock),
    ]
