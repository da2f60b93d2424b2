# Threats Module - Gateway Threat Analysis
#
# Turns IPS alerts and traffic-flow telemetry into classified,
# correlated and enriched threat intelligence: flow pre-filtering,
# kill chain classification, sliding-window pattern detection,
# geo/ASN and reputation enrichment, exposure validation and noise
# filtering, plus the SQLite repository and scheduled pipeline.

from .models import (
    EventSource,
    ThreatAction,
    KillChainStage,
    PatternType,
    GeoInfo,
    ThreatEvent,
    ThreatPattern,
    ReputationCacheEntry,
    NOT_FOUND_SENTINEL,
    FlowRecord,
    PortForwardRule,
    ExposureReport,
    ExposedService,
    GeoBlockRecommendation,
)
from .exceptions import ThreatAnalysisError, GeoDownloadError
from .flow_filter import is_interesting, filter_interesting
from .kill_chain import KillChainClassifier, classify
from .sliding_window import scan_windows
from .detectors import (
    PatternDetector,
    ScanSweepDetector,
    BruteForceDetector,
    DDoSDetector,
    ExploitCampaignDetector,
    default_detectors,
)
from .pattern_analyzer import ThreatPatternAnalyzer, AnalysisReport
from .geo_enrichment import GeoEnrichmentService
from .reputation import (
    CrowdSecClient,
    CrowdSecIpInfo,
    DailyQuotaCounter,
    ReputationLookup,
    ReputationStatus,
)
from .reputation_cache import ReputationService, reputation_badge, threat_score
from .exposure import ExposureValidator, parse_ports
from .noise_filter import ThreatNoiseFilter, filter_events
from .repository import (
    ThreatRepository,
    ThreatSummary,
    SourceIpSummary,
    TargetPortSummary,
    TimelineBucket,
    AttackSequence,
    SequenceStage,
    GeoBackfillResult,
)
from .store import SqliteThreatRepository
from .pipeline import ThreatPipeline, CycleReport

__all__ = [
    # Data models
    "EventSource",
    "ThreatAction",
    "KillChainStage",
    "PatternType",
    "GeoInfo",
    "ThreatEvent",
    "ThreatPattern",
    "ReputationCacheEntry",
    "NOT_FOUND_SENTINEL",
    "FlowRecord",
    "PortForwardRule",
    "ExposureReport",
    "ExposedService",
    "GeoBlockRecommendation",
    # Errors
    "ThreatAnalysisError",
    "GeoDownloadError",
    # Classification and filtering
    "is_interesting",
    "filter_interesting",
    "KillChainClassifier",
    "classify",
    # Pattern detection
    "scan_windows",
    "PatternDetector",
    "ScanSweepDetector",
    "BruteForceDetector",
    "DDoSDetector",
    "ExploitCampaignDetector",
    "default_detectors",
    "ThreatPatternAnalyzer",
    "AnalysisReport",
    # Enrichment
    "GeoEnrichmentService",
    "CrowdSecClient",
    "CrowdSecIpInfo",
    "DailyQuotaCounter",
    "ReputationLookup",
    "ReputationStatus",
    "ReputationService",
    "reputation_badge",
    "threat_score",
    # Query-time analysis
    "ExposureValidator",
    "parse_ports",
    "ThreatNoiseFilter",
    "filter_events",
    # Persistence
    "ThreatRepository",
    "ThreatSummary",
    "SourceIpSummary",
    "TargetPortSummary",
    "TimelineBucket",
    "AttackSequence",
    "SequenceStage",
    "GeoBackfillResult",
    "SqliteThreatRepository",
    # Pipeline
    "ThreatPipeline",
    "CycleReport",
]
