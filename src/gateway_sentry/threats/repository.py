# Threats Module - Repository Contract
#
# Defines the ThreatRepository abstract base class every storage
# backend implements, plus the read-only DTOs its aggregate queries
# return.  Analysis components depend only on this contract; the
# SQLite implementation lives in store.py.
#
# Query-time suppression: once set_noise_filters() / set_severity_filter()
# are called, every event query of the repository instance excludes
# matching events.

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import (
    KillChainStage,
    PatternType,
    ReputationCacheEntry,
    ThreatAction,
    ThreatEvent,
    ThreatPattern,
)
from .noise_filter import ThreatNoiseFilter


# ---------------------------------------------------------------------------
# Aggregate DTOs
# ---------------------------------------------------------------------------


@dataclass
class ThreatSummary:
    total_events: int = 0
    blocked_count: int = 0
    detected_count: int = 0
    unique_source_ips: int = 0
    unique_dest_ports: int = 0


@dataclass
class SourceIpSummary:
    source_ip: str
    event_count: int
    max_severity: int
    country_code: Optional[str] = None
    city: Optional[str] = None
    asn: Optional[int] = None
    asn_org: Optional[str] = None


@dataclass
class TargetPortSummary:
    port: int
    event_count: int
    unique_source_ips: int
    top_signature: str = ""


@dataclass
class TimelineBucket:
    """Event counts per severity for one time bucket."""

    bucket_start: datetime
    severity_counts: Dict[int, int] = field(
        default_factory=lambda: {s: 0 for s in range(1, 6)}
    )

    @property
    def total(self) -> int:
        return sum(self.severity_counts.values())


@dataclass
class SequenceStage:
    stage: KillChainStage
    first_seen: datetime
    last_seen: datetime
    event_count: int
    top_signature: str = ""


@dataclass
class AttackSequence:
    """Multi-stage activity from one source IP."""

    source_ip: str
    country_code: Optional[str] = None
    asn_org: Optional[str] = None
    stages: List[SequenceStage] = field(default_factory=list)


@dataclass
class GeoBackfillResult:
    scanned: int  # rows loaded in this batch; 0 means done
    enriched: int  # rows that received geo data
    cursor: int  # id of the last row scanned


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class ThreatRepository(ABC):
    """Persistence and query surface for the threat pipeline."""

    # ── Query-time filtering ────────────────────────────────────────

    @abstractmethod
    def set_noise_filters(self, filters: Sequence[ThreatNoiseFilter]) -> None:
        """Exclude events matched by any enabled filter from later queries."""

    @abstractmethod
    def set_severity_filter(self, severities: Optional[Sequence[int]]) -> None:
        """Only include these severities in later queries; None means all."""

    # ── Events ──────────────────────────────────────────────────────

    @abstractmethod
    def save_events(self, events: Sequence[ThreatEvent]) -> int:
        """Insert events, skipping any whose inner_alert_id already exists.

        Returns:
            Number of newly inserted events.
        """

    @abstractmethod
    def get_events(
        self,
        start: datetime,
        end: datetime,
        source_ip: Optional[str] = None,
        dest_port: Optional[int] = None,
        stage: Optional[KillChainStage] = None,
        protocol: Optional[str] = None,
        limit: int = 1000,
    ) -> List[ThreatEvent]:
        """Events in [start, end], newest first."""

    def get_events_by_ip(
        self, ip: str, start: datetime, end: datetime, limit: int = 5000
    ) -> List[ThreatEvent]:
        return self.get_events(start, end, source_ip=ip, limit=limit)

    def get_events_by_port(
        self, port: int, start: datetime, end: datetime, limit: int = 5000
    ) -> List[ThreatEvent]:
        return self.get_events(start, end, dest_port=port, limit=limit)

    def get_events_by_protocol(
        self, protocol: str, start: datetime, end: datetime, limit: int = 5000
    ) -> List[ThreatEvent]:
        return self.get_events(start, end, protocol=protocol, limit=limit)

    @abstractmethod
    def get_latest_timestamp(self) -> Optional[datetime]:
        """Timestamp of the newest stored event, if any."""

    @abstractmethod
    def purge_old_events(self, before: datetime) -> int:
        """Delete events (and patterns) older than ``before``."""

    @abstractmethod
    def backfill_geo(
        self,
        enrich: Callable[[List[ThreatEvent]], Any],
        batch_size: int = 1000,
        cursor: int = 0,
    ) -> GeoBackfillResult:
        """Enrich one batch of rows that have no geo data.

        Loads up to ``batch_size`` events with id > ``cursor`` and null
        geo fields, passes them to ``enrich`` (which mutates them in
        place), and writes the geo fields back.  Call again with the
        returned cursor until ``scanned`` is 0; rows that stay without
        geo data (private addresses) are not revisited in the same run.
        """

    # ── Aggregates ──────────────────────────────────────────────────

    @abstractmethod
    def get_threat_summary(self, start: datetime, end: datetime) -> ThreatSummary: ...

    @abstractmethod
    def get_top_sources(
        self, start: datetime, end: datetime, count: int = 10
    ) -> List[SourceIpSummary]: ...

    @abstractmethod
    def get_top_targeted_ports(
        self, start: datetime, end: datetime, count: int = 10
    ) -> List[TargetPortSummary]: ...

    @abstractmethod
    def get_country_distribution(
        self,
        start: datetime,
        end: datetime,
        action: Optional[ThreatAction] = None,
    ) -> Dict[str, int]: ...

    @abstractmethod
    def get_timeline(
        self, start: datetime, end: datetime, bucket_minutes: int = 60
    ) -> List[TimelineBucket]: ...

    @abstractmethod
    def get_kill_chain_distribution(
        self, start: datetime, end: datetime
    ) -> Dict[KillChainStage, int]: ...

    @abstractmethod
    def get_attack_sequences(
        self, start: datetime, end: datetime, limit: int = 50
    ) -> List[AttackSequence]:
        """Source IPs seen in two or more distinct kill chain stages."""

    @abstractmethod
    def get_threat_counts_by_port(self, start: datetime, end: datetime) -> Dict[int, int]: ...

    def get_threat_count_by_port(self, port: int, start: datetime, end: datetime) -> int:
        return self.get_threat_counts_by_port(start, end).get(port, 0)

    # ── Patterns ────────────────────────────────────────────────────

    @abstractmethod
    def save_pattern(self, pattern: ThreatPattern) -> int:
        """Insert or, when ``dedup_key`` already exists, update a pattern.

        Returns:
            The pattern's row id.
        """

    @abstractmethod
    def get_patterns(
        self,
        start: datetime,
        end: datetime,
        pattern_type: Optional[PatternType] = None,
        limit: int = 50,
    ) -> List[ThreatPattern]: ...

    @abstractmethod
    def mark_pattern_alerted(self, pattern_id: int, when: datetime) -> None: ...

    # ── Reputation cache ────────────────────────────────────────────

    @abstractmethod
    def get_reputation_cache(self, ip: str) -> Optional[ReputationCacheEntry]: ...

    @abstractmethod
    def save_reputation_cache(self, entry: ReputationCacheEntry) -> None: ...

    @abstractmethod
    def purge_expired_reputation_cache(self, now: datetime) -> int: ...

    # ── Noise filters ───────────────────────────────────────────────

    @abstractmethod
    def get_noise_filters(self) -> List[ThreatNoiseFilter]: ...

    @abstractmethod
    def save_noise_filter(self, noise_filter: ThreatNoiseFilter) -> int: ...

    @abstractmethod
    def delete_noise_filter(self, filter_id: int) -> bool: ...

    @abstractmethod
    def toggle_noise_filter(self, filter_id: int, enabled: bool) -> bool: ...

    # ── System settings ─────────────────────────────────────────────

    @abstractmethod
    def get_setting(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def save_setting(self, key: str, value: str) -> None: ...
