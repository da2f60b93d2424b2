# Threats Module - Geo/ASN Enrichment
#
# Offline lookups against the MaxMind GeoLite2 City and ASN databases.
# Either database may be missing; the corresponding fields then stay
# None.  Lookups never raise.
#
# The service is a long-lived singleton shared by the collection thread
# and query callers.  geoip2 readers are safe for concurrent reads; a
# reload opens the new readers first and then swaps the (city, asn)
# pair under a lock, so a lookup always sees one consistent pair.

import io
import ipaddress
import logging
import os
import tarfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import geoip2.database
import geoip2.errors
import httpx

from .exceptions import GeoDownloadError
from .models import EventSource, GeoInfo, ThreatEvent

logger = logging.getLogger(__name__)

CITY_EDITION = "GeoLite2-City"
ASN_EDITION = "GeoLite2-ASN"
EDITIONS = (CITY_EDITION, ASN_EDITION)

MAXMIND_DOWNLOAD_URL = "https://download.maxmind.com/app/geoip_download"
DOWNLOAD_TIMEOUT_SEC = 120
STALE_AFTER_DAYS = 30

PathLike = Union[str, Path]
ReaderFactory = Callable[[str], Any]


def database_path(data_dir: PathLike, edition: str) -> Path:
    return Path(data_dir) / f"{edition}.mmdb"


def public_address(ip: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """Parse ``ip`` and return it only if it is globally routable.

    Private, loopback, link-local, multicast, reserved and unspecified
    addresses, as well as unparsable input, return None.
    """
    if not ip:
        return None
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return None
    if (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_reserved
        or addr.is_unspecified
    ):
        return None
    return addr


def is_private_or_reserved(ip: str) -> bool:
    return public_address(ip) is None


class GeoEnrichmentService:
    """GeoLite2 City + ASN lookups with atomic reload."""

    def __init__(self, reader_factory: Optional[ReaderFactory] = None):
        self._reader_factory = reader_factory or geoip2.database.Reader
        self._lock = threading.Lock()
        self._readers: Tuple[Any, Any] = (None, None)
        self._retired: Tuple[Any, Any] = (None, None)
        self._initialized = False
        self._data_dir: Optional[Path] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_city_available(self) -> bool:
        return self._readers[0] is not None

    @property
    def is_asn_available(self) -> bool:
        return self._readers[1] is not None

    def initialize(self, data_dir: PathLike) -> None:
        """Open the readers from ``data_dir``. Subsequent calls are no-ops."""
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            self._data_dir = Path(data_dir)
            self._readers = self._open_readers(self._data_dir)

    def reload(self, data_dir: Optional[PathLike] = None) -> None:
        """Reopen both databases and swap them in atomically.

        The replaced pair stays open until the next reload or ``close()``
        so lookups still holding it can finish; at most one retired pair
        is kept.
        """
        target = Path(data_dir) if data_dir is not None else self._data_dir
        if target is None:
            raise ValueError("reload() needs a data directory before initialize()")

        new_readers = self._open_readers(target)
        with self._lock:
            stale = self._retired
            self._retired = self._readers
            self._readers = new_readers
            self._data_dir = target
            self._initialized = True
            keep = new_readers + self._retired
        self._close_readers(stale, keep=keep)
        logger.info(
            "GeoLite2 databases reloaded from %s (city=%s, asn=%s)",
            target, new_readers[0] is not None, new_readers[1] is not None,
        )

    def close(self) -> None:
        with self._lock:
            readers = self._readers + self._retired
            self._readers = (None, None)
            self._retired = (None, None)
            self._initialized = False
        self._close_readers(readers)

    @staticmethod
    def _close_readers(readers: Sequence[Any], keep: Sequence[Any] = ()) -> None:
        closed: List[int] = []
        for reader in readers:
            if reader is None or id(reader) in closed:
                continue
            if any(reader is k for k in keep):
                continue
            closed.append(id(reader))
            try:
                reader.close()
            except Exception as exc:
                logger.debug("Failed to close GeoLite2 reader: %s", exc)

    def _open_readers(self, data_dir: Path) -> Tuple[Any, Any]:
        return (
            self._open_reader(data_dir, CITY_EDITION),
            self._open_reader(data_dir, ASN_EDITION),
        )

    def _open_reader(self, data_dir: Path, edition: str):
        path = database_path(data_dir, edition)
        if not path.exists():
            logger.warning(
                "%s.mmdb not found at %s, %s enrichment unavailable",
                edition, path, "geo" if edition == CITY_EDITION else "ASN",
            )
            return None
        try:
            reader = self._reader_factory(str(path))
        except Exception as exc:
            logger.warning("Failed to load %s database: %s", edition, exc)
            return None
        logger.info("Loaded %s database from %s", edition, path)
        return reader

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def enrich(self, ip: str) -> GeoInfo:
        """Look up geo/ASN data for one IP address."""
        addr = public_address(ip)
        if addr is None:
            return GeoInfo.empty()

        city_reader, asn_reader = self._readers
        if city_reader is None and asn_reader is None:
            return GeoInfo.empty()

        fields: Dict[str, Any] = {}
        if city_reader is not None:
            try:
                city = city_reader.city(str(addr))
                fields.update(
                    country_code=city.country.iso_code,
                    city=city.city.name,
                    latitude=city.location.latitude,
                    longitude=city.location.longitude,
                )
            except geoip2.errors.AddressNotFoundError:
                pass
            except Exception as exc:
                logger.debug("GeoLite2 city lookup failed for %s: %s", ip, exc)

        if asn_reader is not None:
            try:
                asn = asn_reader.asn(str(addr))
                fields.update(
                    asn=asn.autonomous_system_number,
                    asn_org=asn.autonomous_system_organization,
                )
            except geoip2.errors.AddressNotFoundError:
                pass
            except Exception as exc:
                logger.debug("GeoLite2 ASN lookup failed for %s: %s", ip, exc)

        return GeoInfo(**fields)

    @staticmethod
    def lookup_ip(event: ThreatEvent) -> str:
        """The address worth geolocating for ``event``.

        Flow events originating from the local network are enriched
        from their destination, the externally reachable endpoint.
        """
        if (
            event.event_source == EventSource.TRAFFIC_FLOW
            and is_private_or_reserved(event.source_ip)
        ):
            return event.dest_ip
        return event.source_ip

    def enrich_events(self, events: Sequence[ThreatEvent]) -> Sequence[ThreatEvent]:
        """Apply geo/ASN data to each event in place."""
        city_reader, asn_reader = self._readers
        if city_reader is None and asn_reader is None:
            return events

        cache: Dict[str, GeoInfo] = {}
        for event in events:
            ip = self.lookup_ip(event)
            geo = cache.get(ip)
            if geo is None:
                geo = self.enrich(ip)
                cache[ip] = geo
            event.apply_geo(geo)
        return events

    # ------------------------------------------------------------------
    # Database files
    # ------------------------------------------------------------------

    @staticmethod
    def get_database_info(data_dir: PathLike) -> Dict[str, Dict[str, Any]]:
        """Existence and last-modified time (UTC) for each edition."""
        info: Dict[str, Dict[str, Any]] = {}
        for edition in EDITIONS:
            path = database_path(data_dir, edition)
            exists = path.exists()
            modified = (
                datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                if exists
                else None
            )
            info[edition] = {"path": str(path), "exists": exists, "modified": modified}
        return info

    def is_stale(
        self,
        data_dir: PathLike,
        max_age_days: int = STALE_AFTER_DAYS,
        now: Optional[datetime] = None,
    ) -> bool:
        """True if any edition is missing or older than ``max_age_days``."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=max_age_days)
        for entry in self.get_database_info(data_dir).values():
            if not entry["exists"] or entry["modified"] < cutoff:
                return True
        return False

    def download_databases(
        self,
        license_key: str,
        data_dir: Optional[PathLike] = None,
        timeout: float = DOWNLOAD_TIMEOUT_SEC,
    ) -> List[Path]:
        """Download both GeoLite2 editions and reload the readers.

        Each edition tarball is fetched, its ``.mmdb`` member extracted
        to a temp file next to the target, and moved into place with
        ``os.replace``.

        Raises:
            GeoDownloadError: on HTTP, network or archive failure.
        """
        if not license_key:
            raise GeoDownloadError("GeoLite2", "no MaxMind license key configured")

        target_dir = Path(data_dir) if data_dir is not None else self._data_dir
        if target_dir is None:
            raise ValueError("download_databases() needs a data directory")
        target_dir.mkdir(parents=True, exist_ok=True)

        written = [
            self._download_edition(edition, license_key, target_dir, timeout)
            for edition in EDITIONS
        ]
        self.reload(target_dir)
        return written

    @staticmethod
    def _download_edition(
        edition: str, license_key: str, target_dir: Path, timeout: float
    ) -> Path:
        try:
            resp = httpx.request(
                "GET",
                MAXMIND_DOWNLOAD_URL,
                params={
                    "edition_id": edition,
                    "license_key": license_key,
                    "suffix": "tar.gz",
                },
                timeout=timeout,
                follow_redirects=True,
            )
        except httpx.HTTPError as exc:
            raise GeoDownloadError(edition, f"download failed: {exc}") from exc

        if resp.status_code == 401:
            raise GeoDownloadError(edition, "invalid MaxMind license key")
        if resp.status_code != 200:
            raise GeoDownloadError(edition, f"HTTP {resp.status_code}")

        member_name = f"{edition}.mmdb"
        try:
            with tarfile.open(fileobj=io.BytesIO(resp.content), mode="r:gz") as tar:
                member = next(
                    (m for m in tar.getmembers()
                     if m.isfile() and m.name.endswith(member_name)),
                    None,
                )
                if member is None:
                    raise GeoDownloadError(edition, f"{member_name} not found in archive")
                data = tar.extractfile(member).read()
        except tarfile.TarError as exc:
            raise GeoDownloadError(edition, f"corrupt archive: {exc}") from exc

        final_path = database_path(target_dir, edition)
        tmp_path = final_path.with_suffix(".mmdb.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, final_path)
        logger.info("Downloaded %s (%d bytes) to %s", edition, len(data), final_path)
        return final_path
