# Threats Module - CrowdSec CTI Reputation Client
#
# Queries the CrowdSec CTI "smoke" endpoint for IP reputation.
#
#   API: GET {base_url}/v2/smoke/{ip}   header x-api-key
#   Free tier: 50 requests per UTC day.  We stop at 45 to leave a
#   safety margin; an HTTP 429 pins the counter to the quota for the
#   rest of the day.
#
# Reputation is an optional enhancement: every failure returns an
# UNAVAILABLE lookup and is logged, nothing here raises to the caller.
# Caching lives one layer up in reputation_cache.ReputationService.

import ipaddress
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from ..core.audit_log import EventSeverity, EventType, log_pipeline_event
from .models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://cti.api.crowdsec.net"
SMOKE_PATH = "/v2/smoke/"
REQUEST_TIMEOUT_SEC = 10
TEST_IP = "1.1.1.1"

DAILY_QUOTA = 50
SAFETY_MARGIN = 5


# ── Quota ───────────────────────────────────────────────────────────


class DailyQuotaCounter:
    """Thread-safe per-UTC-day request counter.

    ``try_acquire`` checks and increments under one lock so concurrent
    enrichment calls can never overshoot the ceiling.  ``on_change``
    receives ``(requests_today, requests_date)`` after every change so
    the owner can persist it; ``load_state`` restores it on startup.
    """

    def __init__(
        self,
        daily_quota: int = DAILY_QUOTA,
        safety_margin: int = SAFETY_MARGIN,
        clock: Callable[[], datetime] = utcnow,
        on_change: Optional[Callable[[int, date], None]] = None,
    ):
        self.daily_quota = daily_quota
        self.safety_margin = safety_margin
        self._clock = clock
        self._on_change = on_change
        self._lock = threading.Lock()
        self._requests_today = 0
        self._requests_date = clock().date()

    @property
    def ceiling(self) -> int:
        return self.daily_quota - self.safety_margin

    def set_on_change(self, callback: Optional[Callable[[int, date], None]]) -> None:
        self._on_change = callback

    def _roll_over(self) -> None:
        # Caller holds the lock
        today = self._clock().date()
        if today != self._requests_date:
            self._requests_date = today
            self._requests_today = 0

    def try_acquire(self) -> bool:
        """Reserve one request for today. False once the ceiling is hit."""
        with self._lock:
            self._roll_over()
            if self._requests_today >= self.ceiling:
                return False
            self._requests_today += 1
            state = (self._requests_today, self._requests_date)
        self._notify(state)
        return True

    def exhaust(self) -> None:
        """Pin the counter to the quota until the next UTC day."""
        with self._lock:
            self._roll_over()
            self._requests_today = self.daily_quota
            state = (self._requests_today, self._requests_date)
        self._notify(state)

    def load_state(self, requests_today: int, requests_date: date) -> None:
        with self._lock:
            self._requests_today = max(0, int(requests_today))
            self._requests_date = requests_date

    def get_state(self) -> Tuple[int, date]:
        with self._lock:
            return self._requests_today, self._requests_date

    @property
    def remaining(self) -> int:
        with self._lock:
            self._roll_over()
            return max(0, self.ceiling - self._requests_today)

    def _notify(self, state: Tuple[int, date]) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(*state)
        except Exception as exc:
            logger.warning("Failed to persist CrowdSec quota state: %s", exc)


# ── Response models ─────────────────────────────────────────────────


def _labels(items: Any) -> List["CrowdSecLabel"]:
    return [CrowdSecLabel.from_dict(i) for i in (items or [])]


@dataclass
class CrowdSecLabel:
    """name / label / description triple used by several CTI fields."""

    name: str = ""
    label: str = ""
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrowdSecLabel":
        return cls(
            name=data.get("name", ""),
            label=data.get("label", ""),
            description=data.get("description"),
        )


@dataclass
class CrowdSecAttackDetail(CrowdSecLabel):
    references: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrowdSecAttackDetail":
        return cls(
            name=data.get("name", ""),
            label=data.get("label", ""),
            description=data.get("description"),
            references=list(data.get("references") or []),
        )


@dataclass
class CrowdSecScoreBreakdown:
    aggressiveness: int = 0
    threat: int = 0
    trust: int = 0
    anomaly: int = 0
    total: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["CrowdSecScoreBreakdown"]:
        if data is None:
            return None
        return cls(
            aggressiveness=int(data.get("aggressiveness", 0)),
            threat=int(data.get("threat", 0)),
            trust=int(data.get("trust", 0)),
            anomaly=int(data.get("anomaly", 0)),
            total=int(data.get("total", 0)),
        )


@dataclass
class CrowdSecScores:
    overall: Optional[CrowdSecScoreBreakdown] = None
    last_day: Optional[CrowdSecScoreBreakdown] = None
    last_week: Optional[CrowdSecScoreBreakdown] = None
    last_month: Optional[CrowdSecScoreBreakdown] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["CrowdSecScores"]:
        if data is None:
            return None
        return cls(
            overall=CrowdSecScoreBreakdown.from_dict(data.get("overall")),
            last_day=CrowdSecScoreBreakdown.from_dict(data.get("last_day")),
            last_week=CrowdSecScoreBreakdown.from_dict(data.get("last_week")),
            last_month=CrowdSecScoreBreakdown.from_dict(data.get("last_month")),
        )


@dataclass
class CrowdSecLocation:
    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class CrowdSecHistory:
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None
    full_age: int = 0
    days_age: int = 0


@dataclass
class CrowdSecIpInfo:
    """Typed view of a CTI smoke response."""

    ip: str = ""
    reputation: Optional[str] = None
    confidence: Optional[str] = None
    ip_range: Optional[str] = None
    ip_range_score: Optional[int] = None
    background_noise: Optional[str] = None
    background_noise_score: Optional[int] = None
    reverse_dns: Optional[str] = None
    as_name: Optional[str] = None
    as_num: Optional[int] = None
    behaviors: List[CrowdSecLabel] = field(default_factory=list)
    attack_details: List[CrowdSecAttackDetail] = field(default_factory=list)
    references: List[CrowdSecLabel] = field(default_factory=list)
    mitre_techniques: List[CrowdSecLabel] = field(default_factory=list)
    classifications: List[CrowdSecLabel] = field(default_factory=list)
    false_positives: List[CrowdSecLabel] = field(default_factory=list)
    cves: List[str] = field(default_factory=list)
    scores: Optional[CrowdSecScores] = None
    location: Optional[CrowdSecLocation] = None
    history: Optional[CrowdSecHistory] = None
    target_countries: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrowdSecIpInfo":
        """Parse a smoke response body.

        Raises:
            ValueError / TypeError: if the payload is not a CTI object.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")

        classifications = data.get("classifications") or {}
        location = data.get("location")
        history = data.get("history")
        return cls(
            ip=data.get("ip", ""),
            reputation=data.get("reputation"),
            confidence=data.get("confidence"),
            ip_range=data.get("ip_range"),
            ip_range_score=data.get("ip_range_score"),
            background_noise=data.get("background_noise"),
            background_noise_score=data.get("background_noise_score"),
            reverse_dns=data.get("reverse_dns"),
            as_name=data.get("as_name"),
            as_num=data.get("as_num"),
            behaviors=_labels(data.get("behaviors")),
            attack_details=[
                CrowdSecAttackDetail.from_dict(d)
                for d in (data.get("attack_details") or [])
            ],
            references=_labels(data.get("references")),
            mitre_techniques=_labels(data.get("mitre_techniques")),
            classifications=_labels(classifications.get("classifications")),
            false_positives=_labels(classifications.get("false_positives")),
            cves=list(data.get("cves") or []),
            scores=CrowdSecScores.from_dict(data.get("scores")),
            location=(
                CrowdSecLocation(
                    country=location.get("country"),
                    city=location.get("city"),
                    latitude=location.get("latitude"),
                    longitude=location.get("longitude"),
                )
                if location
                else None
            ),
            history=(
                CrowdSecHistory(
                    first_seen=history.get("first_seen"),
                    last_seen=history.get("last_seen"),
                    full_age=int(history.get("full_age", 0)),
                    days_age=int(history.get("days_age", 0)),
                )
                if history
                else None
            ),
            target_countries=dict(data.get("target_countries") or {}),
        )


# ── Client ──────────────────────────────────────────────────────────


class ReputationStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"  # confirmed absent, cacheable
    UNAVAILABLE = "unavailable"  # no answer, retry later


@dataclass
class ReputationLookup:
    status: ReputationStatus
    payload: Optional[Dict[str, Any]] = None

    @classmethod
    def unavailable(cls) -> "ReputationLookup":
        return cls(ReputationStatus.UNAVAILABLE)


class CrowdSecClient:
    """HTTP client for the CrowdSec CTI smoke endpoint."""

    def __init__(
        self,
        api_key: str = "",
        base_url: str = DEFAULT_BASE_URL,
        quota: Optional[DailyQuotaCounter] = None,
        timeout: float = REQUEST_TIMEOUT_SEC,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self.quota = quota or DailyQuotaCounter()
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _url(self, ip: str) -> str:
        return f"{self._base_url}{SMOKE_PATH}{ip}"

    def _get(self, ip: str, api_key: str, timeout: Optional[float]) -> httpx.Response:
        return httpx.request(
            "GET",
            self._url(ip),
            headers={"x-api-key": api_key, "Accept": "application/json"},
            timeout=timeout if timeout is not None else self._timeout,
        )

    def get_ip_reputation(self, ip: str, timeout: Optional[float] = None) -> ReputationLookup:
        """Fetch the reputation of ``ip``.

        Returns FOUND with the decoded payload, NOT_FOUND on a 404, and
        UNAVAILABLE for everything else (no key, malformed address,
        quota exhausted, bad credentials, 429, network errors, malformed
        body).  A malformed address never consumes quota.
        """
        if not self._api_key:
            logger.debug("CrowdSec API key not configured")
            return ReputationLookup.unavailable()

        try:
            ipaddress.ip_address(ip)
        except ValueError:
            logger.debug("Skipping CrowdSec lookup for malformed address %r", ip)
            return ReputationLookup.unavailable()

        if not self.quota.try_acquire():
            logger.debug(
                "CrowdSec daily quota reached (%d/%d), skipping %s",
                self.quota.get_state()[0], self.quota.daily_quota, ip,
            )
            return ReputationLookup.unavailable()

        try:
            resp = self._get(ip, self._api_key, timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("CrowdSec API call failed for %s: %s", ip, exc)
            return ReputationLookup.unavailable()

        if resp.status_code == 404:
            logger.debug("IP %s not found in CrowdSec database", ip)
            return ReputationLookup(ReputationStatus.NOT_FOUND)

        if resp.status_code == 429:
            logger.warning("CrowdSec API rate limit exceeded, pausing until next UTC day")
            self.quota.exhaust()
            log_pipeline_event(
                EventType.QUOTA_EXHAUSTED,
                EventSeverity.WARNING,
                "CrowdSec API returned 429, lookups suspended for today",
                details={"ip": ip},
            )
            return ReputationLookup.unavailable()

        if resp.status_code == 403:
            logger.warning("CrowdSec API key is invalid or expired")
            return ReputationLookup.unavailable()

        if resp.status_code != 200:
            logger.warning("CrowdSec API returned HTTP %d for %s", resp.status_code, ip)
            return ReputationLookup.unavailable()

        try:
            payload = resp.json()
        except ValueError as exc:
            logger.warning("CrowdSec returned a non-JSON body for %s: %s", ip, exc)
            return ReputationLookup.unavailable()

        return ReputationLookup(ReputationStatus.FOUND, payload)

    def test_api_key(self, api_key: Optional[str] = None) -> Tuple[bool, str]:
        """Validate a key against a well-known IP. Does not use quota."""
        key = api_key if api_key is not None else self._api_key
        if not key:
            return False, "API key is empty"

        try:
            resp = self._get(TEST_IP, key, None)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return False, f"Connection error: {exc}"

        if resp.status_code == 200:
            return True, "API key is valid"
        if resp.status_code == 403:
            return False, "API key is invalid or expired"
        if resp.status_code == 429:
            return False, "Rate limit exceeded - try again tomorrow"
        return False, f"Unexpected response: HTTP {resp.status_code}"
