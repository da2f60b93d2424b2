# Threats Module - Data Models
#
# Defines the structured records the analysis pipeline works on:
#   ThreatEvent   - one normalized IPS alert or traffic-flow entry
#   ThreatPattern - a multi-event correlation found by a detector
#   GeoInfo       - ephemeral geo/ASN lookup result
#   FlowRecord    - typed traffic-flow record seen by the interest filter
#   PortForwardRule, ExposureReport, ExposedService, GeoBlockRecommendation
#                 - exposure cross-referencing inputs and outputs
#
# Timestamps are timezone-aware UTC datetimes throughout.

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


MIN_SEVERITY = 1
MAX_SEVERITY = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class EventSource(str, Enum):
    """Where a threat event came from."""

    IPS = "ips"
    TRAFFIC_FLOW = "traffic_flow"


class ThreatAction(str, Enum):
    """Whether the gateway blocked the traffic or only detected it."""

    BLOCKED = "blocked"
    DETECTED = "detected"


class KillChainStage(str, Enum):
    """Coarse phase of attack progress.

    MONITORED is explicitly-permitted or benign traffic and is never
    treated as a threat stage.
    """

    RECONNAISSANCE = "reconnaissance"
    ATTEMPTED_EXPLOITATION = "attempted_exploitation"
    ACTIVE_EXPLOITATION = "active_exploitation"
    POST_EXPLOITATION = "post_exploitation"
    MONITORED = "monitored"

    @property
    def rank(self) -> int:
        """Ordering used when rebuilding attack sequences."""
        return _STAGE_RANK[self]

    @property
    def is_threat(self) -> bool:
        return self is not KillChainStage.MONITORED


_STAGE_RANK = {
    KillChainStage.MONITORED: 0,
    KillChainStage.RECONNAISSANCE: 1,
    KillChainStage.ATTEMPTED_EXPLOITATION: 2,
    KillChainStage.ACTIVE_EXPLOITATION: 3,
    KillChainStage.POST_EXPLOITATION: 4,
}


class PatternType(str, Enum):
    """Kinds of multi-event correlation the detectors produce."""

    SCAN_SWEEP = "scan_sweep"
    BRUTE_FORCE = "brute_force"
    EXPLOIT_CAMPAIGN = "exploit_campaign"
    DDOS = "ddos"


# ---------------------------------------------------------------------------
# Geo / ASN
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GeoInfo:
    """Result of one geo/ASN lookup. Not persisted on its own."""

    country_code: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    asn: Optional[int] = None
    asn_org: Optional[str] = None

    @classmethod
    def empty(cls) -> "GeoInfo":
        return cls()

    @property
    def is_empty(self) -> bool:
        return all(
            v is None
            for v in (
                self.country_code,
                self.city,
                self.latitude,
                self.longitude,
                self.asn,
                self.asn_org,
            )
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Events and patterns
# ---------------------------------------------------------------------------


@dataclass
class ThreatEvent:
    """Normalized threat event.

    IPS alerts carry signature_id / signature_name / category; traffic
    flow entries carry direction / risk_level instead.  The geo fields
    are only ever written together through ``apply_geo``.
    """

    timestamp: datetime
    source_ip: str
    dest_ip: str = ""
    source_port: int = 0
    dest_port: int = 0
    protocol: str = ""
    severity: int = MIN_SEVERITY
    action: ThreatAction = ThreatAction.DETECTED
    event_source: EventSource = EventSource.IPS
    signature_id: int = 0
    signature_name: str = ""
    category: str = ""
    direction: str = ""  # flow only: "incoming" / "outgoing"
    risk_level: str = ""  # flow only: "low" / "medium" / "high"
    inner_alert_id: str = ""  # source-system id used for dedup
    country_code: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    asn: Optional[int] = None
    asn_org: Optional[str] = None
    kill_chain_stage: KillChainStage = KillChainStage.RECONNAISSANCE
    pattern_id: Optional[int] = None
    event_id: Optional[int] = None

    def __post_init__(self):
        if not MIN_SEVERITY <= self.severity <= MAX_SEVERITY:
            raise ValueError(
                f"severity must be between {MIN_SEVERITY} and {MAX_SEVERITY}, "
                f"got {self.severity}"
            )

    @property
    def is_blocked(self) -> bool:
        return self.action == ThreatAction.BLOCKED

    @property
    def has_geo(self) -> bool:
        return self.country_code is not None or self.asn is not None

    def apply_geo(self, geo: GeoInfo) -> None:
        """Overwrite all geo/ASN fields from a single lookup."""
        self.country_code = geo.country_code
        self.city = geo.city
        self.latitude = geo.latitude
        self.longitude = geo.longitude
        self.asn = geo.asn
        self.asn_org = geo.asn_org

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = _iso(self.timestamp)
        d["action"] = self.action.value
        d["event_source"] = self.event_source.value
        d["kill_chain_stage"] = self.kill_chain_stage.value
        return d


@dataclass
class ThreatPattern:
    """A correlation across several events found by one detector run."""

    pattern_type: PatternType
    detected_at: datetime
    first_seen: datetime
    last_seen: datetime
    event_count: int
    confidence: float
    source_ips_json: str = "[]"
    target_port: Optional[int] = None
    dedup_key: Optional[str] = None
    last_alerted_at: Optional[datetime] = None
    description: str = ""
    pattern_id: Optional[int] = None

    def __post_init__(self):
        if self.first_seen > self.last_seen:
            raise ValueError("first_seen must not be after last_seen")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @property
    def source_ips(self) -> List[str]:
        return json.loads(self.source_ips_json)

    def needs_alert(self) -> bool:
        """True when the pattern was never alerted or has grown since."""
        if self.last_alerted_at is None:
            return True
        return self.last_seen > self.last_alerted_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "pattern_type": self.pattern_type.value,
            "detected_at": _iso(self.detected_at),
            "source_ips": self.source_ips,
            "target_port": self.target_port,
            "event_count": self.event_count,
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
            "confidence": self.confidence,
            "dedup_key": self.dedup_key,
            "last_alerted_at": _iso(self.last_alerted_at),
            "description": self.description,
        }


# ---------------------------------------------------------------------------
# Reputation cache
# ---------------------------------------------------------------------------

# Stored in place of a payload when the reputation API confirmed it has
# no data for an IP.  Distinct from "no cache row" (never queried).
NOT_FOUND_SENTINEL = "__not_found__"


@dataclass
class ReputationCacheEntry:
    ip: str
    reputation_json: str
    fetched_at: datetime
    expires_at: datetime

    @property
    def is_negative(self) -> bool:
        return self.reputation_json == NOT_FOUND_SENTINEL

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


# ---------------------------------------------------------------------------
# Ingestion inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FlowRecord:
    """One traffic-flow entry as produced by the gateway log client."""

    timestamp: datetime
    action: str = ""
    risk: str = ""
    direction: str = ""
    source_ip: str = ""
    source_port: int = 0
    dest_ip: str = ""
    dest_port: int = 0
    protocol: str = ""
    flow_id: str = ""


@dataclass
class PortForwardRule:
    """Gateway port-forward rule.

    ``dst_port`` is the raw gateway spec, e.g. ``"22"`` or
    ``"8000-8010,9000"``.
    """

    name: str = ""
    dst_port: str = ""
    forward_ip: str = ""
    forward_port: Optional[str] = None
    protocol: Optional[str] = None
    enabled: bool = True


# ---------------------------------------------------------------------------
# Exposure report DTOs
# ---------------------------------------------------------------------------


@dataclass
class ExposedService:
    port: int
    protocol: str = "tcp"
    service_name: str = ""
    forward_target: str = ""
    rule_name: Optional[str] = None
    threat_count: int = 0
    unique_source_ips: int = 0
    top_signatures: List[str] = field(default_factory=list)
    severity_breakdown: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GeoBlockRecommendation:
    countries: List[str] = field(default_factory=list)
    prevention_percentage: float = 0.0
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExposureReport:
    exposed_services: List[ExposedService] = field(default_factory=list)
    total_exposed_ports: int = 0
    total_threats_targeting_exposed: int = 0
    geo_block_recommendation: Optional[GeoBlockRecommendation] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exposed_services": [s.to_dict() for s in self.exposed_services],
            "total_exposed_ports": self.total_exposed_ports,
            "total_threats_targeting_exposed": self.total_threats_targeting_exposed,
            "geo_block_recommendation": (
                self.geo_block_recommendation.to_dict()
                if self.geo_block_recommendation
                else None
            ),
        }
