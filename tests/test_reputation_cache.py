"""
Tests for ReputationService (cache-first reputation lookups).

The client is a MagicMock(spec=CrowdSecClient); the cache is a real
SqliteThreatRepository in tmp_path.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from gateway_sentry.threats.models import NOT_FOUND_SENTINEL, ReputationCacheEntry
from gateway_sentry.threats.reputation import (
    CrowdSecClient,
    CrowdSecIpInfo,
    CrowdSecScoreBreakdown,
    CrowdSecScores,
    DailyQuotaCounter,
    ReputationLookup,
    ReputationStatus,
)
from gateway_sentry.threats.reputation_cache import (
    NEGATIVE_TTL,
    POSITIVE_TTL,
    ReputationService,
    reputation_badge,
    threat_score,
)
from gateway_sentry.threats.store import SqliteThreatRepository


# ===================================================================
# Fixtures & helpers
# ===================================================================

PAYLOAD = {"ip": "45.155.205.233", "reputation": "malicious",
           "scores": {"overall": {"total": 3}}}


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock(base_time):
    return _Clock(base_time)


@pytest.fixture
def repo(tmp_path):
    store = SqliteThreatRepository(str(tmp_path / "threats.db"))
    yield store
    store.close()


@pytest.fixture
def client():
    return MagicMock(spec=CrowdSecClient)


@pytest.fixture
def service(client, repo, clock):
    return ReputationService(client, repo, clock=clock)


# ===================================================================
# Negative caching
# ===================================================================

class TestNotFoundCaching:
    def test_404_caches_sentinel_for_24_hours(self, service, client, repo, clock):
        client.get_ip_reputation.return_value = ReputationLookup(ReputationStatus.NOT_FOUND)

        assert service.resolve("8.8.8.8") == (ReputationStatus.NOT_FOUND, None)

        entry = repo.get_reputation_cache("8.8.8.8")
        assert entry.reputation_json == NOT_FOUND_SENTINEL
        assert entry.expires_at == clock.now + NEGATIVE_TTL

    def test_repeat_lookup_makes_no_api_call(self, service, client):
        client.get_ip_reputation.return_value = ReputationLookup(ReputationStatus.NOT_FOUND)
        service.get_reputation("8.8.8.8")
        client.get_ip_reputation.reset_mock()

        assert service.get_reputation("8.8.8.8") is None
        client.get_ip_reputation.assert_not_called()

    def test_sentinel_expires(self, service, client, clock):
        client.get_ip_reputation.return_value = ReputationLookup(ReputationStatus.NOT_FOUND)
        service.get_reputation("8.8.8.8")

        clock.now += NEGATIVE_TTL
        service.get_reputation("8.8.8.8")
        assert client.get_ip_reputation.call_count == 2


# ===================================================================
# Positive caching
# ===================================================================

class TestFoundCaching:
    def test_found_is_parsed_and_cached_30_days(self, service, client, repo, clock):
        client.get_ip_reputation.return_value = ReputationLookup(ReputationStatus.FOUND, PAYLOAD)

        info = service.get_reputation("45.155.205.233", timeout=3)

        assert info.reputation == "malicious"
        client.get_ip_reputation.assert_called_once_with("45.155.205.233", timeout=3)
        entry = repo.get_reputation_cache("45.155.205.233")
        assert entry.expires_at == clock.now + POSITIVE_TTL

    def test_cached_payload_served_until_expiry(self, service, client, clock):
        client.get_ip_reputation.return_value = ReputationLookup(ReputationStatus.FOUND, PAYLOAD)
        service.get_reputation("45.155.205.233")

        clock.now += POSITIVE_TTL - timedelta(seconds=1)
        status, info = service.resolve("45.155.205.233")
        assert status == ReputationStatus.FOUND
        assert info.scores.overall.total == 3
        assert client.get_ip_reputation.call_count == 1

        clock.now += timedelta(seconds=1)
        service.get_reputation("45.155.205.233")
        assert client.get_ip_reputation.call_count == 2

    def test_unparseable_cache_row_is_a_miss(self, service, client, repo, clock):
        repo.save_reputation_cache(ReputationCacheEntry(
            ip="45.155.205.233",
            reputation_json="{not json",
            fetched_at=clock.now,
            expires_at=clock.now + POSITIVE_TTL,
        ))
        client.get_ip_reputation.return_value = ReputationLookup(ReputationStatus.FOUND, PAYLOAD)

        assert service.get_reputation("45.155.205.233").reputation == "malicious"
        client.get_ip_reputation.assert_called_once()

    def test_bad_payload_is_unavailable_and_not_cached(self, service, client, repo):
        client.get_ip_reputation.return_value = ReputationLookup(
            ReputationStatus.FOUND, ["not", "an", "object"]
        )
        assert service.resolve("45.155.205.233") == (ReputationStatus.UNAVAILABLE, None)
        assert repo.get_reputation_cache("45.155.205.233") is None


# ===================================================================
# Failures
# ===================================================================

class TestFailures:
    def test_unavailable_is_not_cached(self, service, client, repo):
        client.get_ip_reputation.return_value = ReputationLookup.unavailable()
        assert service.resolve("8.8.8.8") == (ReputationStatus.UNAVAILABLE, None)
        assert repo.get_reputation_cache("8.8.8.8") is None

    def test_malformed_address_returns_nothing(self, repo, clock):
        real_client = CrowdSecClient(
            api_key="cs-key", quota=DailyQuotaCounter(clock=clock)
        )
        svc = ReputationService(real_client, repo, clock=clock)

        with patch("gateway_sentry.threats.reputation.httpx.request") as mock_req:
            assert svc.get_reputation("1.2.3.4\x7f") is None

        mock_req.assert_not_called()
        assert real_client.quota.get_state()[0] == 0

    def test_cache_failures_never_raise(self, client, clock):
        broken = MagicMock()
        broken.get_reputation_cache.side_effect = RuntimeError("db locked")
        broken.save_reputation_cache.side_effect = RuntimeError("db locked")
        client.get_ip_reputation.return_value = ReputationLookup(ReputationStatus.FOUND, PAYLOAD)

        info = ReputationService(client, broken, clock=clock).get_reputation("45.155.205.233")
        assert info.reputation == "malicious"

    def test_purge_expired(self, service, repo, clock):
        for ip, ttl in (("1.0.0.1", timedelta(hours=-1)), ("1.0.0.2", timedelta(days=1))):
            repo.save_reputation_cache(ReputationCacheEntry(
                ip=ip, reputation_json=NOT_FOUND_SENTINEL,
                fetched_at=clock.now, expires_at=clock.now + ttl,
            ))
        assert service.purge_expired() == 1
        assert repo.get_reputation_cache("1.0.0.1") is None
        assert repo.get_reputation_cache("1.0.0.2") is not None


# ===================================================================
# Badges and scores
# ===================================================================

def _info(reputation=None, total=None):
    scores = None
    if total is not None:
        scores = CrowdSecScores(overall=CrowdSecScoreBreakdown(total=total))
    return CrowdSecIpInfo(reputation=reputation, scores=scores)


class TestPresentation:
    @pytest.mark.parametrize("value,badge", [
        ("malicious", "malicious"),
        ("Suspicious", "suspicious"),
        ("known", "known"),
        ("safe", "safe"),
        ("weird", "unknown"),
        (None, "unknown"),
    ])
    def test_badge(self, value, badge):
        assert reputation_badge(_info(reputation=value)) == badge

    def test_badge_without_info(self):
        assert reputation_badge(None) == "unknown"

    @pytest.mark.parametrize("total,score", [(5, 5), (4, 5), (3, 4), (2, 3), (1, 2), (0, 1)])
    def test_threat_score(self, total, score):
        assert threat_score(_info(total=total)) == score

    def test_threat_score_without_scores(self):
        assert threat_score(_info()) == 0
        assert threat_score(None) == 0
