# Threats Module - Analysis Pipeline
#
# Composes the analysis components into the periodic collection cycle:
#
#   collector(since, until) -> events
#     -> geo/ASN enrichment -> kill chain classification -> save
#     -> pattern detection over the last analysis window -> save patterns
#
# Scheduling (APScheduler BackgroundScheduler):
#   - collection cycle every poll interval (default 1 minute)
#   - retention purge + reputation cache purge daily at 03:00 UTC
#   - one-shot geo backfill of historical rows on start
#
# Every failure inside a cycle is logged and recorded in the audit
# trail; a bad cycle never stops the scheduler.

import logging
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..core.audit_log import EventSeverity, EventType, log_pipeline_event
from ..core.config import ThreatSettings
from .detectors import default_detectors
from .exceptions import GeoDownloadError
from .exposure import ExposureValidator
from .flow_filter import filter_interesting
from .geo_enrichment import GeoEnrichmentService
from .kill_chain import KillChainClassifier
from .models import (
    ExposureReport,
    FlowRecord,
    PortForwardRule,
    ThreatEvent,
    ThreatPattern,
    utcnow,
)
from .pattern_analyzer import ThreatPatternAnalyzer
from .reputation import CrowdSecClient
from .reputation_cache import ReputationService
from .repository import ThreatRepository
from .store import SqliteThreatRepository

logger = logging.getLogger(__name__)

Collector = Callable[[datetime, datetime], Iterable[ThreatEvent]]
Normalizer = Callable[[FlowRecord], Optional[ThreatEvent]]

# Max events loaded for one pattern analysis pass
ANALYSIS_EVENT_LIMIT = 5000
BACKFILL_BATCH_SIZE = 1000
PURGE_HOUR_UTC = 3

# System settings keys
SYNC_CURSOR_KEY = "threats.last_sync"
QUOTA_COUNT_KEY = "crowdsec.requests_today"
QUOTA_DATE_KEY = "crowdsec.requests_date"
GEO_DOWNLOAD_KEY = "maxmind.last_download"


class CycleReport:
    """Outcome of one collection/analysis cycle."""

    def __init__(self):
        self.started = utcnow()
        self.finished: Optional[datetime] = None
        self.collected = 0
        self.stored = 0
        self.patterns: List[ThreatPattern] = []
        self.failed_detectors: Dict[str, str] = {}
        self.analysis_error: Optional[str] = None
        self.error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started.isoformat(),
            "finished": self.finished.isoformat() if self.finished else None,
            "success": self.success,
            "collected": self.collected,
            "stored": self.stored,
            "patterns": len(self.patterns),
            "failed_detectors": dict(self.failed_detectors),
            "analysis_error": self.analysis_error,
            "error": self.error,
        }


class ThreatPipeline:
    """Scheduler-driven threat analysis pipeline.

    Usage::

        pipeline = ThreatPipeline.from_settings(ThreatSettings.from_env(), collector)
        pipeline.start()      # schedule cycles and maintenance
        pipeline.run_cycle()  # or drive a cycle by hand
        pipeline.stop()
    """

    def __init__(
        self,
        settings: ThreatSettings,
        repository: ThreatRepository,
        collector: Optional[Collector] = None,
        geo: Optional[GeoEnrichmentService] = None,
        classifier: Optional[KillChainClassifier] = None,
        analyzer: Optional[ThreatPatternAnalyzer] = None,
        reputation: Optional[ReputationService] = None,
        crowdsec: Optional[CrowdSecClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.repository = repository
        self.geo = geo or GeoEnrichmentService()
        self.classifier = classifier or KillChainClassifier()
        self.analyzer = analyzer or ThreatPatternAnalyzer(default_detectors(clock))
        self.exposure = ExposureValidator()
        self.reputation = reputation
        self._crowdsec = crowdsec
        self._collector = collector
        self._clock = clock

        self._scheduler: Optional[BackgroundScheduler] = None
        self._stop = threading.Event()
        self._cycle_lock = threading.Lock()
        self._last_report: Optional[CycleReport] = None

        if crowdsec is not None:
            self._wire_quota_persistence(crowdsec)

    @classmethod
    def from_settings(
        cls, settings: ThreatSettings, collector: Optional[Collector] = None
    ) -> "ThreatPipeline":
        """Build a pipeline with the SQLite repository and default services."""
        repository = SqliteThreatRepository(settings.db_path)
        crowdsec = None
        reputation = None
        if settings.reputation_configured:
            crowdsec = CrowdSecClient(
                api_key=settings.crowdsec_api_key,
                base_url=settings.crowdsec_base_url,
                timeout=settings.http_timeout_seconds,
            )
            reputation = ReputationService(crowdsec, repository)
        return cls(
            settings,
            repository,
            collector=collector,
            reputation=reputation,
            crowdsec=crowdsec,
        )

    # ------------------------------------------------------------------
    # Quota persistence
    # ------------------------------------------------------------------

    def _wire_quota_persistence(self, client: CrowdSecClient) -> None:
        count = self.repository.get_setting(QUOTA_COUNT_KEY)
        day = self.repository.get_setting(QUOTA_DATE_KEY)
        if count is not None and day is not None:
            try:
                client.quota.load_state(int(count), date.fromisoformat(day))
            except ValueError as exc:
                logger.debug("Ignoring malformed persisted quota state: %s", exc)
        client.quota.set_on_change(self._save_quota_state)

    def _save_quota_state(self, requests_today: int, requests_date: date) -> None:
        self.repository.save_setting(QUOTA_COUNT_KEY, str(requests_today))
        self.repository.save_setting(QUOTA_DATE_KEY, requests_date.isoformat())

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest_flows(
        self, flows: Iterable[FlowRecord], normalize: Normalizer
    ) -> List[ThreatEvent]:
        """Filter raw flows, then normalize the interesting ones."""
        events = []
        for flow in filter_interesting(flows):
            event = normalize(flow)
            if event is not None:
                events.append(event)
        return events

    def process_events(
        self, events: Sequence[ThreatEvent], report: Optional[CycleReport] = None
    ) -> CycleReport:
        """Enrich, classify, store and analyse a batch of new events."""
        report = report or CycleReport()
        batch = list(events)
        report.collected = len(batch)

        if batch:
            self.geo.enrich_events(batch)
            self.classifier.classify_all(batch)
            report.stored = self.repository.save_events(batch)

        if self._stop.is_set():
            return report

        try:
            self._analyze_recent(report)
        except Exception as exc:
            # Events are already stored; the next cycle re-analyses the window
            report.analysis_error = str(exc)
            logger.warning("Pattern analysis failed: %s", exc)
            log_pipeline_event(
                EventType.ANALYSIS_FAILED,
                EventSeverity.WARNING,
                "Pattern analysis failed",
                details={"error": str(exc)},
            )
        return report

    def _analyze_recent(self, report: CycleReport) -> None:
        now = self._clock()
        window_start = now - timedelta(minutes=self.settings.analysis_window_minutes)
        recent = self.repository.get_events(window_start, now, limit=ANALYSIS_EVENT_LIMIT)
        analysis = self.analyzer.analyze(recent)
        report.failed_detectors = analysis.failed_detectors

        for name, error in analysis.failed_detectors.items():
            log_pipeline_event(
                EventType.DETECTOR_FAILED,
                EventSeverity.WARNING,
                f"Pattern detector {name} failed",
                details={"detector": name, "error": error},
            )

        for pattern in analysis.patterns:
            self.repository.save_pattern(pattern)
            report.patterns.append(pattern)
            log_pipeline_event(
                EventType.PATTERN_DETECTED,
                EventSeverity.ALERT,
                pattern.description,
                details=pattern.to_dict(),
            )

    def run_cycle(self) -> Optional[CycleReport]:
        """Collect new events since the sync cursor and process them.

        Returns None when the pipeline is stopping or a cycle is
        already running.
        """
        if self._stop.is_set():
            return None
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Previous threat cycle still running, skipping")
            return None

        report = CycleReport()
        try:
            until = self._clock()
            since = self._sync_cursor(until)
            events = list(self._collector(since, until)) if self._collector else []
            self.process_events(events, report)
            self.repository.save_setting(SYNC_CURSOR_KEY, until.isoformat())
        except Exception as exc:
            report.error = str(exc)
            logger.error("Threat analysis cycle failed: %s", exc)
            log_pipeline_event(
                EventType.CYCLE_FAILED,
                EventSeverity.WARNING,
                "Threat analysis cycle failed",
                details={"error": str(exc)},
            )
        else:
            logger.info(
                "Threat cycle complete: %d collected, %d stored, %d patterns",
                report.collected, report.stored, len(report.patterns),
            )
            log_pipeline_event(
                EventType.CYCLE_COMPLETED,
                EventSeverity.INFO,
                "Threat analysis cycle completed",
                details=report.to_dict(),
            )
        finally:
            report.finished = self._clock()
            self._last_report = report
            self._cycle_lock.release()
        return report

    def _sync_cursor(self, now: datetime) -> datetime:
        raw = self.repository.get_setting(SYNC_CURSOR_KEY)
        if raw:
            try:
                return datetime.fromisoformat(raw)
            except ValueError:
                logger.debug("Ignoring malformed sync cursor %r", raw)
        return now - timedelta(minutes=self.settings.analysis_window_minutes)

    def get_last_report(self) -> Optional[Dict[str, Any]]:
        if self._last_report is None:
            return None
        return self._last_report.to_dict()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exposure_report(
        self,
        rules: Sequence[PortForwardRule],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ExposureReport:
        end = end or self._clock()
        start = start or end - timedelta(days=1)
        return self.exposure.validate(rules, self.repository, start, end)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def backfill_geo(self, batch_size: int = BACKFILL_BATCH_SIZE) -> int:
        """Enrich stored events that predate geo data. Returns rows enriched."""
        if not (self.geo.is_city_available or self.geo.is_asn_available):
            logger.debug("Geo databases unavailable, skipping backfill")
            return 0

        cursor = 0
        total = 0
        while not self._stop.is_set():
            result = self.repository.backfill_geo(
                self.geo.enrich_events, batch_size=batch_size, cursor=cursor
            )
            if result.scanned == 0:
                break
            total += result.enriched
            cursor = result.cursor

        if total:
            logger.info("Geo backfill enriched %d historical events", total)
            log_pipeline_event(
                EventType.GEO_BACKFILL_COMPLETED,
                EventSeverity.INFO,
                f"Geo backfill enriched {total} events",
                details={"enriched": total},
            )
        return total

    def purge(self) -> Dict[str, int]:
        """Apply event retention and drop expired reputation cache rows."""
        cutoff = self._clock() - timedelta(days=self.settings.retention_days)
        removed = {"events": 0, "reputation_cache": 0}
        try:
            removed["events"] = self.repository.purge_old_events(cutoff)
            if self.reputation is not None:
                removed["reputation_cache"] = self.reputation.purge_expired()
            else:
                removed["reputation_cache"] = self.repository.purge_expired_reputation_cache(
                    self._clock()
                )
        except Exception as exc:
            logger.error("Retention purge failed: %s", exc)
            return removed

        log_pipeline_event(
            EventType.RETENTION_PURGE,
            EventSeverity.INFO,
            f"Purged events older than {self.settings.retention_days} days",
            details={"cutoff": cutoff.isoformat(), **removed},
        )
        return removed

    def ensure_geo_databases(self) -> Tuple[bool, str]:
        """Download GeoLite2 databases when missing or stale.

        Returns:
            (success, message); never raises.
        """
        data_dir = self.settings.geo_data_dir
        if not self.geo.is_stale(data_dir, now=self._clock()):
            return True, "GeoLite2 databases are up to date"
        if not self.settings.maxmind_license_key:
            logger.info("GeoLite2 databases missing or stale and no MaxMind license key set")
            return False, "No MaxMind license key configured"

        try:
            written = self.geo.download_databases(
                self.settings.maxmind_license_key, data_dir
            )
        except GeoDownloadError as exc:
            logger.warning("GeoLite2 download failed: %s", exc)
            log_pipeline_event(
                EventType.GEO_DOWNLOAD_FAILED,
                EventSeverity.WARNING,
                "GeoLite2 download failed",
                details={"edition": exc.edition, "error": str(exc)},
            )
            return False, str(exc)

        self.repository.save_setting(GEO_DOWNLOAD_KEY, self._clock().isoformat())
        log_pipeline_event(
            EventType.GEO_DATABASES_RELOADED,
            EventSeverity.INFO,
            "GeoLite2 databases downloaded and reloaded",
            details={"files": [str(p) for p in written]},
        )
        return True, f"Downloaded {len(written)} GeoLite2 databases"

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Load geo data and start the background scheduler."""
        if self._scheduler is not None:
            return  # already running

        self._stop.clear()
        self.geo.initialize(self.settings.geo_data_dir)
        ok, message = self.ensure_geo_databases()
        if not ok:
            logger.info("Geo enrichment: %s", message)

        self._scheduler = BackgroundScheduler(daemon=True, timezone=timezone.utc)
        self._scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(minutes=self.settings.poll_interval_minutes),
            id="threat_collection_cycle",
            name="Threat collection and analysis",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.purge,
            trigger=CronTrigger(hour=PURGE_HOUR_UTC, minute=0, timezone="UTC"),
            id="threat_retention_purge",
            name="Daily threat retention purge",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.backfill_geo,
            id="threat_geo_backfill",
            name="Geo backfill of historical events",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "ThreatPipeline scheduler started: every %d min, purge daily at %02d:00 UTC",
            self.settings.poll_interval_minutes,
            PURGE_HOUR_UTC,
        )

    def stop(self) -> None:
        """Signal running work to stop and shut the scheduler down."""
        self._stop.set()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("ThreatPipeline scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
