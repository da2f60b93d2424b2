"""
Tests for ThreatPipeline.

Covers: collection cycles and the sync cursor, pattern persistence and
audit events, failure handling, flow ingestion, quota persistence,
retention purge, GeoLite2 maintenance, backfill and scheduling.
"""

import sqlite3
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from gateway_sentry.core.audit_log import EventType, get_audit_logger
from gateway_sentry.core.config import ThreatSettings
from gateway_sentry.threats.detectors import PatternDetector
from gateway_sentry.threats.exceptions import GeoDownloadError
from gateway_sentry.threats.geo_enrichment import GeoEnrichmentService
from gateway_sentry.threats.models import (
    FlowRecord,
    GeoInfo,
    KillChainStage,
    PatternType,
    PortForwardRule,
    ThreatAction,
    ThreatEvent,
)
from gateway_sentry.threats.pattern_analyzer import ThreatPatternAnalyzer
from gateway_sentry.threats.pipeline import (
    GEO_DOWNLOAD_KEY,
    QUOTA_COUNT_KEY,
    QUOTA_DATE_KEY,
    SYNC_CURSOR_KEY,
    ThreatPipeline,
)
from gateway_sentry.threats.reputation import CrowdSecClient, DailyQuotaCounter
from gateway_sentry.threats.store import SqliteThreatRepository


# ===================================================================
# Fixtures & helpers
# ===================================================================

@pytest.fixture
def settings(tmp_path):
    return ThreatSettings(
        db_path=str(tmp_path / "threats.db"),
        geo_data_dir=str(tmp_path / "geoip"),
    )


@pytest.fixture
def repo(settings):
    store = SqliteThreatRepository(settings.db_path)
    yield store
    store.close()


@pytest.fixture
def geo():
    service = MagicMock(spec=GeoEnrichmentService)
    service.is_city_available = False
    service.is_asn_available = False
    service.is_stale.return_value = False
    return service


def _brute_force(base_time, n=20, alert_prefix="bf"):
    return [
        ThreatEvent(
            timestamp=base_time - timedelta(minutes=10) + timedelta(seconds=10 * i),
            source_ip="45.9.20.1",
            dest_ip="192.168.1.10",
            dest_port=22,
            severity=3,
            action=ThreatAction.BLOCKED,
            signature_name="ET SCAN Potential SSH Scan",
            inner_alert_id=f"{alert_prefix}-{i}",
        )
        for i in range(n)
    ]


def _events(audit_type):
    return get_audit_logger().query_events(event_types=[audit_type])


def _pipeline(settings, repo, geo, base_time, **kwargs):
    return ThreatPipeline(settings, repo, geo=geo, clock=lambda: base_time, **kwargs)


# ===================================================================
# Cycles
# ===================================================================

class TestRunCycle:
    def test_cycle_stores_classifies_and_detects(self, settings, repo, geo, base_time):
        collector = MagicMock(return_value=_brute_force(base_time))
        pipeline = _pipeline(settings, repo, geo, base_time, collector=collector)

        report = pipeline.run_cycle()

        assert report.success
        assert report.collected == 20
        assert report.stored == 20
        assert [p.pattern_type for p in report.patterns] == [PatternType.BRUTE_FORCE]
        geo.enrich_events.assert_called_once()

        stored = repo.get_events(base_time - timedelta(hours=1), base_time)
        assert {e.kill_chain_stage for e in stored} == {KillChainStage.RECONNAISSANCE}

        patterns = repo.get_patterns(base_time - timedelta(hours=1), base_time)
        assert [p.dedup_key for p in patterns] == ["bf:45.9.20.1:22"]

        assert len(_events(EventType.PATTERN_DETECTED)) == 1
        assert len(_events(EventType.CYCLE_COMPLETED)) == 1
        assert pipeline.get_last_report()["patterns"] == 1

    def test_sync_cursor(self, settings, repo, geo, base_time):
        collector = MagicMock(return_value=[])
        pipeline = _pipeline(settings, repo, geo, base_time, collector=collector)

        pipeline.run_cycle()
        since, until = collector.call_args.args
        assert since == base_time - timedelta(minutes=settings.analysis_window_minutes)
        assert until == base_time
        assert repo.get_setting(SYNC_CURSOR_KEY) == base_time.isoformat()

        pipeline.run_cycle()
        assert collector.call_args.args[0] == base_time

    def test_repeat_cycle_reuses_pattern(self, settings, repo, geo, base_time):
        events = _brute_force(base_time)
        collector = MagicMock(side_effect=[events, list(events)])
        pipeline = _pipeline(settings, repo, geo, base_time, collector=collector)

        pipeline.run_cycle()
        second = pipeline.run_cycle()

        assert second.stored == 0
        window = (base_time - timedelta(hours=1), base_time)
        assert len(repo.get_patterns(*window)) == 1

    def test_collector_failure_is_contained(self, settings, repo, geo, base_time):
        collector = MagicMock(side_effect=ConnectionError("gateway unreachable"))
        pipeline = _pipeline(settings, repo, geo, base_time, collector=collector)

        report = pipeline.run_cycle()

        assert not report.success
        assert "gateway unreachable" in report.error
        assert report.finished is not None
        assert repo.get_setting(SYNC_CURSOR_KEY) is None
        assert len(_events(EventType.CYCLE_FAILED)) == 1

    def test_detector_failure_is_audited(self, settings, repo, geo, base_time):
        broken = MagicMock(spec=PatternDetector)
        broken.name = "broken"
        broken.detect.side_effect = RuntimeError("boom")
        pipeline = _pipeline(
            settings, repo, geo, base_time,
            collector=MagicMock(return_value=_brute_force(base_time)),
            analyzer=ThreatPatternAnalyzer([broken]),
        )

        report = pipeline.run_cycle()

        assert report.success
        assert report.failed_detectors == {"broken": "boom"}
        audited = _events(EventType.DETECTOR_FAILED)
        assert audited[0]["details"]["detector"] == "broken"

    def test_analysis_failure_still_completes_cycle(self, settings, repo, geo, base_time):
        pipeline = _pipeline(
            settings, repo, geo, base_time,
            collector=MagicMock(return_value=_brute_force(base_time)),
        )

        with patch.object(
            repo, "save_pattern", side_effect=sqlite3.OperationalError("database is locked")
        ):
            report = pipeline.run_cycle()

        assert report.success
        assert report.stored == 20
        assert report.patterns == []
        assert "database is locked" in report.analysis_error
        assert repo.get_setting(SYNC_CURSOR_KEY) == base_time.isoformat()
        assert len(_events(EventType.ANALYSIS_FAILED)) == 1
        assert len(_events(EventType.CYCLE_COMPLETED)) == 1
        assert pipeline.get_last_report()["analysis_error"] == "database is locked"

    def test_no_collector(self, settings, repo, geo, base_time):
        report = _pipeline(settings, repo, geo, base_time).run_cycle()
        assert report.success
        assert report.collected == 0

    def test_stopped_pipeline_skips(self, settings, repo, geo, base_time):
        collector = MagicMock(return_value=[])
        pipeline = _pipeline(settings, repo, geo, base_time, collector=collector)
        pipeline.stop()

        assert pipeline.run_cycle() is None
        collector.assert_not_called()

    def test_overlapping_cycle_skips(self, settings, repo, geo, base_time):
        collector = MagicMock(return_value=[])
        pipeline = _pipeline(settings, repo, geo, base_time, collector=collector)

        pipeline._cycle_lock.acquire()
        try:
            assert pipeline.run_cycle() is None
        finally:
            pipeline._cycle_lock.release()
        collector.assert_not_called()


class TestIngestFlows:
    def test_only_interesting_flows_normalized(self, settings, repo, geo, base_time):
        flows = [
            FlowRecord(timestamp=base_time, action="blocked", source_ip="45.9.20.1"),
            FlowRecord(timestamp=base_time, action="allowed", risk="low",
                       direction="incoming", dest_port=443),
            FlowRecord(timestamp=base_time, action="allowed", direction="incoming",
                       dest_port=3389, source_ip="45.9.20.2"),
        ]
        normalize = MagicMock(side_effect=lambda f: ThreatEvent(
            timestamp=f.timestamp, source_ip=f.source_ip, severity=2,
        ) if f.source_ip != "45.9.20.2" else None)

        events = _pipeline(settings, repo, geo, base_time).ingest_flows(flows, normalize)

        assert normalize.call_count == 2
        assert [e.source_ip for e in events] == ["45.9.20.1"]


# ===================================================================
# Quota persistence
# ===================================================================

class TestQuotaPersistence:
    def test_state_loaded_and_saved(self, settings, repo, geo, base_time):
        repo.save_setting(QUOTA_COUNT_KEY, "44")
        repo.save_setting(QUOTA_DATE_KEY, base_time.date().isoformat())
        client = CrowdSecClient("key", quota=DailyQuotaCounter(clock=lambda: base_time))

        _pipeline(settings, repo, geo, base_time, crowdsec=client)

        assert client.quota.try_acquire() is True
        assert client.quota.try_acquire() is False
        assert repo.get_setting(QUOTA_COUNT_KEY) == "45"
        assert repo.get_setting(QUOTA_DATE_KEY) == base_time.date().isoformat()

    def test_malformed_state_ignored(self, settings, repo, geo, base_time):
        repo.save_setting(QUOTA_COUNT_KEY, "many")
        repo.save_setting(QUOTA_DATE_KEY, "yesterday")
        client = CrowdSecClient("key", quota=DailyQuotaCounter(clock=lambda: base_time))

        _pipeline(settings, repo, geo, base_time, crowdsec=client)
        assert client.quota.get_state()[0] == 0


# ===================================================================
# Maintenance
# ===================================================================

class TestPurge:
    def test_purge_events_and_cache(self, settings, repo, geo, base_time):
        repo.save_events([
            ThreatEvent(timestamp=base_time - timedelta(days=120), source_ip="45.9.20.1",
                        severity=2),
            ThreatEvent(timestamp=base_time, source_ip="45.9.20.1", severity=2),
        ])
        removed = _pipeline(settings, repo, geo, base_time).purge()

        assert removed == {"events": 1, "reputation_cache": 0}
        audited = _events(EventType.RETENTION_PURGE)
        assert audited[0]["details"]["events"] == 1

    def test_purge_failure_is_contained(self, settings, geo, base_time):
        broken = MagicMock()
        broken.purge_old_events.side_effect = RuntimeError("locked")
        removed = ThreatPipeline(settings, broken, geo=geo, clock=lambda: base_time).purge()
        assert removed == {"events": 0, "reputation_cache": 0}


class TestGeoMaintenance:
    def test_up_to_date(self, settings, repo, geo, base_time):
        ok, msg = _pipeline(settings, repo, geo, base_time).ensure_geo_databases()
        assert ok
        assert msg == "GeoLite2 databases are up to date"
        geo.download_databases.assert_not_called()

    def test_stale_without_license_key(self, settings, repo, geo, base_time):
        geo.is_stale.return_value = True
        ok, msg = _pipeline(settings, repo, geo, base_time).ensure_geo_databases()
        assert (ok, msg) == (False, "No MaxMind license key configured")

    def test_download_success(self, settings, repo, geo, base_time):
        settings.maxmind_license_key = "mm-key"
        geo.is_stale.return_value = True
        geo.download_databases.return_value = ["a.mmdb", "b.mmdb"]

        ok, msg = _pipeline(settings, repo, geo, base_time).ensure_geo_databases()

        assert ok
        assert msg == "Downloaded 2 GeoLite2 databases"
        geo.download_databases.assert_called_once_with("mm-key", settings.geo_data_dir)
        assert repo.get_setting(GEO_DOWNLOAD_KEY) == base_time.isoformat()
        assert len(_events(EventType.GEO_DATABASES_RELOADED)) == 1

    def test_download_failure(self, settings, repo, geo, base_time):
        settings.maxmind_license_key = "mm-key"
        geo.is_stale.return_value = True
        geo.download_databases.side_effect = GeoDownloadError(
            "GeoLite2-City", "invalid MaxMind license key"
        )

        ok, msg = _pipeline(settings, repo, geo, base_time).ensure_geo_databases()

        assert not ok
        assert "invalid MaxMind license key" in msg
        audited = _events(EventType.GEO_DOWNLOAD_FAILED)
        assert audited[0]["details"]["edition"] == "GeoLite2-City"

    def test_backfill(self, settings, repo, geo, base_time):
        repo.save_events([
            ThreatEvent(timestamp=base_time, source_ip=f"81.2.69.{i}", severity=2)
            for i in range(5)
        ])
        geo.is_city_available = True

        def enrich(events):
            for e in events:
                e.apply_geo(GeoInfo(country_code="GB"))
            return events

        geo.enrich_events.side_effect = enrich

        assert _pipeline(settings, repo, geo, base_time).backfill_geo(batch_size=2) == 5
        assert repo.get_country_distribution(base_time, base_time) == {"GB": 5}
        assert len(_events(EventType.GEO_BACKFILL_COMPLETED)) == 1

    def test_backfill_without_databases(self, settings, repo, geo, base_time):
        assert _pipeline(settings, repo, geo, base_time).backfill_geo() == 0
        geo.enrich_events.assert_not_called()


# ===================================================================
# Queries and construction
# ===================================================================

class TestExposureReport:
    def test_defaults_to_last_day(self, settings, repo, geo, base_time):
        repo.save_events(_brute_force(base_time, n=3))
        repo.save_events([ThreatEvent(
            timestamp=base_time - timedelta(days=2), source_ip="45.9.20.9",
            dest_port=22, severity=2,
        )])
        rules = [PortForwardRule(name="SSH", dst_port="22", forward_ip="192.168.1.10")]

        report = _pipeline(settings, repo, geo, base_time).exposure_report(rules)

        assert report.total_exposed_ports == 1
        assert report.total_threats_targeting_exposed == 3


class TestConstruction:
    def test_from_settings_without_reputation(self, settings):
        pipeline = ThreatPipeline.from_settings(settings)
        try:
            assert pipeline.reputation is None
            assert isinstance(pipeline.repository, SqliteThreatRepository)
        finally:
            pipeline.repository.close()

    def test_from_settings_with_reputation(self, settings):
        settings.crowdsec_api_key = "cs-key"
        pipeline = ThreatPipeline.from_settings(settings)
        try:
            assert pipeline.reputation is not None
        finally:
            pipeline.repository.close()


class TestScheduling:
    def test_start_registers_jobs(self, settings, repo, geo, base_time):
        pipeline = _pipeline(settings, repo, geo, base_time)

        with patch("gateway_sentry.threats.pipeline.BackgroundScheduler") as mock_cls:
            scheduler = mock_cls.return_value
            scheduler.running = True
            pipeline.start()
            pipeline.start()  # second call is a no-op

            assert mock_cls.call_count == 1
            job_ids = [c.kwargs["id"] for c in scheduler.add_job.call_args_list]
            assert job_ids == [
                "threat_collection_cycle",
                "threat_retention_purge",
                "threat_geo_backfill",
            ]
            scheduler.start.assert_called_once()
            geo.initialize.assert_called_once_with(settings.geo_data_dir)
            assert pipeline.is_running

            pipeline.stop()
            scheduler.shutdown.assert_called_once_with(wait=False)
            assert not pipeline.is_running
