# Threats Module - Reputation Enrichment with Tiered Cache
#
# Wraps CrowdSecClient with the repository-backed cache:
#
#   found       -> payload cached 30 days
#   not found   -> NOT_FOUND_SENTINEL cached 24 hours
#   unavailable -> nothing cached, the next call retries
#
# A "not found" answer is reusable, so caching it saves quota that would
# otherwise be burned re-asking about the same unknown scanners.

import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from .models import NOT_FOUND_SENTINEL, ReputationCacheEntry, utcnow
from .reputation import CrowdSecClient, CrowdSecIpInfo, ReputationStatus
from .repository import ThreatRepository

logger = logging.getLogger(__name__)

POSITIVE_TTL = timedelta(days=30)
NEGATIVE_TTL = timedelta(hours=24)

_BADGES = ("malicious", "suspicious", "known", "safe")


def reputation_badge(info: Optional[CrowdSecIpInfo]) -> str:
    """Dashboard badge for a reputation result."""
    if info is None or not info.reputation:
        return "unknown"
    value = info.reputation.lower()
    return value if value in _BADGES else "unknown"


def threat_score(info: Optional[CrowdSecIpInfo]) -> int:
    """Overall threat score on a 0-5 scale (0 = no data)."""
    if info is None or info.scores is None or info.scores.overall is None:
        return 0
    total = info.scores.overall.total
    if total >= 4:
        return 5
    if total == 3:
        return 4
    if total == 2:
        return 3
    if total == 1:
        return 2
    return 1


class ReputationService:
    """Cache-first reputation lookups."""

    def __init__(
        self,
        client: CrowdSecClient,
        repository: ThreatRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._client = client
        self._repository = repository
        self._clock = clock

    def get_reputation(
        self, ip: str, timeout: Optional[float] = None
    ) -> Optional[CrowdSecIpInfo]:
        """Reputation for ``ip`` or None when there is nothing to show."""
        return self.resolve(ip, timeout)[1]

    def resolve(
        self, ip: str, timeout: Optional[float] = None
    ) -> Tuple[ReputationStatus, Optional[CrowdSecIpInfo]]:
        """Like ``get_reputation`` but also reports why a result is absent."""
        now = self._clock()

        cached = self._read_cache(ip)
        if cached is not None and not cached.is_expired(now):
            if cached.is_negative:
                return ReputationStatus.NOT_FOUND, None
            try:
                return (
                    ReputationStatus.FOUND,
                    CrowdSecIpInfo.from_dict(json.loads(cached.reputation_json)),
                )
            except (ValueError, TypeError, AttributeError) as exc:
                logger.debug("Ignoring unreadable cached reputation for %s: %s", ip, exc)

        lookup = self._client.get_ip_reputation(ip, timeout=timeout)

        if lookup.status == ReputationStatus.NOT_FOUND:
            self._write_cache(ip, NOT_FOUND_SENTINEL, now, NEGATIVE_TTL)
            return ReputationStatus.NOT_FOUND, None

        if lookup.status != ReputationStatus.FOUND:
            return ReputationStatus.UNAVAILABLE, None

        try:
            info = CrowdSecIpInfo.from_dict(lookup.payload)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("CrowdSec returned an unexpected payload for %s: %s", ip, exc)
            return ReputationStatus.UNAVAILABLE, None

        self._write_cache(ip, json.dumps(lookup.payload), now, POSITIVE_TTL)
        return ReputationStatus.FOUND, info

    def purge_expired(self) -> int:
        """Delete expired cache rows. Returns the number removed."""
        removed = self._repository.purge_expired_reputation_cache(self._clock())
        if removed:
            logger.info("Purged %d expired reputation cache entries", removed)
        return removed

    # ------------------------------------------------------------------

    def _read_cache(self, ip: str) -> Optional[ReputationCacheEntry]:
        try:
            return self._repository.get_reputation_cache(ip)
        except Exception as exc:
            logger.warning("Reputation cache read failed for %s: %s", ip, exc)
            return None

    def _write_cache(self, ip: str, body: str, now: datetime, ttl: timedelta) -> None:
        entry = ReputationCacheEntry(
            ip=ip, reputation_json=body, fetched_at=now, expires_at=now + ttl
        )
        try:
            self._repository.save_reputation_cache(entry)
        except Exception as exc:
            logger.warning("Failed to cache reputation for %s: %s", ip, exc)
