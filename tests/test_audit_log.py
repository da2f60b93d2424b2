"""
Tests for the pipeline audit trail.
"""

import json

from gateway_sentry.core.audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    log_pipeline_event,
)


class TestAuditLogger:
    def test_writes_json_lines(self, tmp_path):
        audit = AuditLogger(log_dir=tmp_path)
        try:
            event_id = audit.log_event(
                EventType.PATTERN_DETECTED,
                EventSeverity.ALERT,
                "Brute force from 45.9.20.1 targeting port 22",
                details={"dedup_key": "bf:45.9.20.1:22"},
            )
            lines = audit.log_file.read_text(encoding="utf-8").splitlines()
        finally:
            audit.close()

        entry = json.loads(lines[-1])
        assert entry["event_id"] == event_id
        assert entry["event_type"] == "analysis.pattern_detected"
        assert entry["severity"] == "alert"
        assert entry["details"] == {"dedup_key": "bf:45.9.20.1:22"}
        assert "timestamp" in entry

    def test_query_filters_by_type(self, tmp_path):
        audit = AuditLogger(log_dir=tmp_path)
        try:
            audit.log_event(EventType.CYCLE_COMPLETED, EventSeverity.INFO, "ok")
            audit.log_event(EventType.QUOTA_EXHAUSTED, EventSeverity.WARNING, "429")
            audit.log_event(EventType.CYCLE_COMPLETED, EventSeverity.INFO, "ok again")

            cycles = audit.query_events(event_types=[EventType.CYCLE_COMPLETED])
            assert [e["message"] for e in cycles] == ["ok", "ok again"]
            assert len(audit.query_events(limit=1)) == 1
        finally:
            audit.close()

    def test_empty_trail(self, tmp_path):
        audit = AuditLogger(log_dir=tmp_path / "fresh")
        try:
            audit.log_file.unlink()
            assert audit.query_events() == []
        finally:
            audit.close()

    def test_instances_do_not_share_files(self, tmp_path):
        a = AuditLogger(log_dir=tmp_path / "a")
        b = AuditLogger(log_dir=tmp_path / "b")
        try:
            a.log_event(EventType.CYCLE_FAILED, EventSeverity.WARNING, "only in a")
            assert b.query_events() == []
        finally:
            a.close()
            b.close()


class TestGlobalLogger:
    def test_singleton(self):
        assert get_audit_logger() is get_audit_logger()

    def test_log_pipeline_event(self):
        log_pipeline_event(
            EventType.RETENTION_PURGE,
            EventSeverity.INFO,
            "Purged events older than 90 days",
            details={"events": 12},
        )
        events = get_audit_logger().query_events(event_types=[EventType.RETENTION_PURGE])
        assert events[0]["details"] == {"events": 12}
