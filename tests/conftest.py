"""
Shared pytest fixtures for the Gateway Sentry test suite.

Autouse fixtures below isolate tests from live data:
  - Audit logger -> temp directory (prevents test events in ./audit_logs)
"""

from datetime import datetime, timezone

import pytest


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, any test that (directly or indirectly) calls
    ``log_pipeline_event(...)`` writes into the real ``./audit_logs/``
    directory.
    """
    import gateway_sentry.core.audit_log as audit_mod

    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    if audit_mod._audit_logger is not None:
        audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture
def base_time():
    """Fixed UTC reference time used across detector and store tests."""
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
