# Threats Module - SQLite Storage
#
# Reference ThreatRepository backed by SQLite.  Stores threat events,
# detected patterns, the reputation cache, noise filters and key/value
# system settings.
#
# Dedup is enforced by the schema: a partial unique index on
# threat_events.inner_alert_id (INSERT OR IGNORE) and a unique
# threat_patterns.dedup_key (upsert).  Aggregates are computed in
# Python over the time range so query-time noise filters, which may be
# CIDR blocks, apply uniformly to every query.

import logging
import sqlite3
import threading
from collections import Counter, defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.db import connect as db_connect
from .models import (
    EventSource,
    KillChainStage,
    PatternType,
    ReputationCacheEntry,
    ThreatAction,
    ThreatEvent,
    ThreatPattern,
)
from .noise_filter import ThreatNoiseFilter
from .repository import (
    AttackSequence,
    GeoBackfillResult,
    SequenceStage,
    SourceIpSummary,
    TargetPortSummary,
    ThreatRepository,
    ThreatSummary,
    TimelineBucket,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "./data/threats.db"

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_EVENT_COLUMNS = (
    "inner_alert_id", "timestamp", "source_ip", "source_port", "dest_ip",
    "dest_port", "protocol", "severity", "action", "event_source",
    "signature_id", "signature_name", "category", "direction", "risk_level",
    "country_code", "city", "latitude", "longitude", "asn", "asn_org",
    "kill_chain_stage", "pattern_id",
)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so lexical order matches time order."""
    if value is None:
        return None
    return _utc(value).strftime(_TS_FORMAT)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _most_common(values) -> str:
    counted = Counter(values).most_common(1)
    return counted[0][0] if counted else ""


class SqliteThreatRepository(ThreatRepository):
    """SQLite-backed ThreatRepository.

    Thread-safe via a reentrant lock on all write operations.  Query
    filters set with ``set_noise_filters`` / ``set_severity_filter`` are
    per instance.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self._lock = threading.RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = db_connect(db_path, check_same_thread=False, row_factory=True)
        self._noise_filters: List[ThreatNoiseFilter] = []
        self._severities: Optional[frozenset] = None
        self._create_tables()

    def _create_tables(self) -> None:
        """Create the schema if it doesn't already exist."""
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS threat_patterns (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    pattern_type    TEXT    NOT NULL,
                    detected_at     TEXT    NOT NULL,
                    source_ips_json TEXT    NOT NULL DEFAULT '[]',
                    target_port     INTEGER,
                    event_count     INTEGER NOT NULL,
                    first_seen      TEXT    NOT NULL,
                    last_seen       TEXT    NOT NULL,
                    confidence      REAL    NOT NULL,
                    dedup_key       TEXT    UNIQUE,
                    last_alerted_at TEXT,
                    description     TEXT    NOT NULL DEFAULT ''
                );

                CREATE TABLE IF NOT EXISTS threat_events (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    inner_alert_id   TEXT    NOT NULL DEFAULT '',
                    timestamp        TEXT    NOT NULL,
                    source_ip        TEXT    NOT NULL,
                    source_port      INTEGER NOT NULL DEFAULT 0,
                    dest_ip          TEXT    NOT NULL DEFAULT '',
                    dest_port        INTEGER NOT NULL DEFAULT 0,
                    protocol         TEXT    NOT NULL DEFAULT '',
                    severity         INTEGER NOT NULL,
                    action           TEXT    NOT NULL,
                    event_source     TEXT    NOT NULL,
                    signature_id     INTEGER NOT NULL DEFAULT 0,
                    signature_name   TEXT    NOT NULL DEFAULT '',
                    category         TEXT    NOT NULL DEFAULT '',
                    direction        TEXT    NOT NULL DEFAULT '',
                    risk_level       TEXT    NOT NULL DEFAULT '',
                    country_code     TEXT,
                    city             TEXT,
                    latitude         REAL,
                    longitude        REAL,
                    asn              INTEGER,
                    asn_org          TEXT,
                    kill_chain_stage TEXT    NOT NULL,
                    pattern_id       INTEGER REFERENCES threat_patterns(id)
                                     ON DELETE SET NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_events_alert_id
                    ON threat_events(inner_alert_id) WHERE inner_alert_id <> '';
                CREATE INDEX IF NOT EXISTS idx_events_timestamp
                    ON threat_events(timestamp);
                CREATE INDEX IF NOT EXISTS idx_events_source
                    ON threat_events(source_ip);
                CREATE INDEX IF NOT EXISTS idx_events_dest_port
                    ON threat_events(dest_port);
                CREATE INDEX IF NOT EXISTS idx_patterns_detected
                    ON threat_patterns(detected_at);

                CREATE TABLE IF NOT EXISTS reputation_cache (
                    ip              TEXT PRIMARY KEY,
                    reputation_json TEXT NOT NULL,
                    fetched_at      TEXT NOT NULL,
                    expires_at      TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS noise_filters (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_ip   TEXT,
                    dest_ip     TEXT,
                    dest_port   INTEGER,
                    description TEXT    NOT NULL DEFAULT '',
                    enabled     INTEGER NOT NULL DEFAULT 1,
                    created_at  TEXT    NOT NULL
                );

                CREATE TABLE IF NOT EXISTS system_settings (
                    key        TEXT PRIMARY KEY,
                    value      TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                );
                """
            )
            self._conn.execute("PRAGMA foreign_keys=ON")
            row = self._conn.execute(
                "SELECT version FROM schema_version LIMIT 1"
            ).fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Query-time filtering
    # ------------------------------------------------------------------

    def set_noise_filters(self, filters: Sequence[ThreatNoiseFilter]) -> None:
        self._noise_filters = [f for f in filters if f.enabled]

    def set_severity_filter(self, severities: Optional[Sequence[int]]) -> None:
        self._severities = frozenset(severities) if severities else None

    def _suppressed(self, event: ThreatEvent) -> bool:
        return any(f.matches_event(event) for f in self._noise_filters)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> ThreatEvent:
        return ThreatEvent(
            event_id=row["id"],
            inner_alert_id=row["inner_alert_id"],
            timestamp=_parse_ts(row["timestamp"]),
            source_ip=row["source_ip"],
            source_port=row["source_port"],
            dest_ip=row["dest_ip"],
            dest_port=row["dest_port"],
            protocol=row["protocol"],
            severity=row["severity"],
            action=ThreatAction(row["action"]),
            event_source=EventSource(row["event_source"]),
            signature_id=row["signature_id"],
            signature_name=row["signature_name"],
            category=row["category"],
            direction=row["direction"],
            risk_level=row["risk_level"],
            country_code=row["country_code"],
            city=row["city"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            asn=row["asn"],
            asn_org=row["asn_org"],
            kill_chain_stage=KillChainStage(row["kill_chain_stage"]),
            pattern_id=row["pattern_id"],
        )

    @staticmethod
    def _event_params(event: ThreatEvent) -> tuple:
        return (
            event.inner_alert_id,
            _ts(event.timestamp),
            event.source_ip,
            event.source_port,
            event.dest_ip,
            event.dest_port,
            event.protocol,
            event.severity,
            event.action.value,
            event.event_source.value,
            event.signature_id,
            event.signature_name,
            event.category,
            event.direction,
            event.risk_level,
            event.country_code,
            event.city,
            event.latitude,
            event.longitude,
            event.asn,
            event.asn_org,
            event.kill_chain_stage.value,
            event.pattern_id,
        )

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row) -> ThreatPattern:
        return ThreatPattern(
            pattern_id=row["id"],
            pattern_type=PatternType(row["pattern_type"]),
            detected_at=_parse_ts(row["detected_at"]),
            source_ips_json=row["source_ips_json"],
            target_port=row["target_port"],
            event_count=row["event_count"],
            first_seen=_parse_ts(row["first_seen"]),
            last_seen=_parse_ts(row["last_seen"]),
            confidence=row["confidence"],
            dedup_key=row["dedup_key"],
            last_alerted_at=_parse_ts(row["last_alerted_at"]),
            description=row["description"],
        )

    @staticmethod
    def _row_to_filter(row: sqlite3.Row) -> ThreatNoiseFilter:
        return ThreatNoiseFilter(
            filter_id=row["id"],
            source_ip=row["source_ip"],
            dest_ip=row["dest_ip"],
            dest_port=row["dest_port"],
            description=row["description"],
            enabled=bool(row["enabled"]),
            created_at=_parse_ts(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def save_events(self, events: Sequence[ThreatEvent]) -> int:
        if not events:
            return 0

        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        sql = (
            f"INSERT OR IGNORE INTO threat_events ({', '.join(_EVENT_COLUMNS)}) "
            f"VALUES ({placeholders})"
        )
        inserted = 0
        with self._lock:
            try:
                for event in events:
                    cursor = self._conn.execute(sql, self._event_params(event))
                    if cursor.rowcount:
                        event.event_id = cursor.lastrowid
                        inserted += 1
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                logger.error("Failed to save %d threat events: %s", len(events), exc)
                raise

        if inserted:
            logger.info(
                "Saved %d new threat events (%d duplicates skipped)",
                inserted, len(events) - inserted,
            )
        else:
            logger.debug("All %d events already exist, skipping", len(events))
        return inserted

    def _select_events(
        self,
        start: datetime,
        end: datetime,
        source_ip: Optional[str] = None,
        dest_port: Optional[int] = None,
        stage: Optional[KillChainStage] = None,
        protocol: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ThreatEvent]:
        """Events in range after every active filter, newest first."""
        clauses = ["timestamp >= ?", "timestamp <= ?"]
        params: List[Any] = [_ts(start), _ts(end)]

        if source_ip:
            clauses.append("source_ip = ?")
            params.append(source_ip)
        if dest_port is not None:
            clauses.append("dest_port = ?")
            params.append(dest_port)
        if stage is not None:
            clauses.append("kill_chain_stage = ?")
            params.append(stage.value)
        if protocol:
            clauses.append("protocol = ? COLLATE NOCASE")
            params.append(protocol)
        if self._severities is not None:
            clauses.append(
                f"severity IN ({', '.join('?' for _ in self._severities)})"
            )
            params.extend(sorted(self._severities))

        sql = (
            f"SELECT * FROM threat_events WHERE {' AND '.join(clauses)} "
            "ORDER BY timestamp DESC, id DESC"
        )
        # Noise filters run in Python, so the SQL limit only applies
        # when none are active.
        if limit is not None and not self._noise_filters:
            sql += " LIMIT ?"
            params.append(limit)

        events: List[ThreatEvent] = []
        for row in self._conn.execute(sql, params):
            event = self._row_to_event(row)
            if self._noise_filters and self._suppressed(event):
                continue
            events.append(event)
            if limit is not None and len(events) >= limit:
                break
        return events

    def get_events(
        self,
        start: datetime,
        end: datetime,
        source_ip: Optional[str] = None,
        dest_port: Optional[int] = None,
        stage: Optional[KillChainStage] = None,
        protocol: Optional[str] = None,
        limit: int = 1000,
    ) -> List[ThreatEvent]:
        return self._select_events(
            start, end, source_ip=source_ip, dest_port=dest_port,
            stage=stage, protocol=protocol, limit=limit,
        )

    def get_latest_timestamp(self) -> Optional[datetime]:
        row = self._conn.execute("SELECT MAX(timestamp) FROM threat_events").fetchone()
        return _parse_ts(row[0]) if row else None

    def purge_old_events(self, before: datetime) -> int:
        cutoff = _ts(before)
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM threat_events WHERE timestamp < ?", (cutoff,)
            )
            deleted = cursor.rowcount
            self._conn.execute(
                "DELETE FROM threat_patterns WHERE last_seen < ?", (cutoff,)
            )
            self._conn.commit()
        if deleted:
            logger.info("Purged %d threat events before %s", deleted, cutoff)
        return deleted

    def backfill_geo(
        self,
        enrich: Callable[[List[ThreatEvent]], Any],
        batch_size: int = 1000,
        cursor: int = 0,
    ) -> GeoBackfillResult:
        rows = self._conn.execute(
            """
            SELECT * FROM threat_events
            WHERE id > ? AND country_code IS NULL AND asn IS NULL
            ORDER BY id LIMIT ?
            """,
            (cursor, batch_size),
        ).fetchall()
        if not rows:
            return GeoBackfillResult(scanned=0, enriched=0, cursor=cursor)

        events = [self._row_to_event(r) for r in rows]
        enrich(events)
        updated = [e for e in events if e.has_geo]

        with self._lock:
            self._conn.executemany(
                """
                UPDATE threat_events
                SET country_code = ?, city = ?, latitude = ?, longitude = ?,
                    asn = ?, asn_org = ?
                WHERE id = ?
                """,
                [
                    (e.country_code, e.city, e.latitude, e.longitude,
                     e.asn, e.asn_org, e.event_id)
                    for e in updated
                ],
            )
            self._conn.commit()

        return GeoBackfillResult(
            scanned=len(events), enriched=len(updated), cursor=events[-1].event_id
        )

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def get_threat_summary(self, start: datetime, end: datetime) -> ThreatSummary:
        events = self._select_events(start, end)
        blocked = sum(1 for e in events if e.action == ThreatAction.BLOCKED)
        return ThreatSummary(
            total_events=len(events),
            blocked_count=blocked,
            detected_count=len(events) - blocked,
            unique_source_ips=len({e.source_ip for e in events}),
            unique_dest_ports=len({e.dest_port for e in events}),
        )

    def get_top_sources(
        self, start: datetime, end: datetime, count: int = 10
    ) -> List[SourceIpSummary]:
        by_ip: Dict[str, List[ThreatEvent]] = defaultdict(list)
        for event in reversed(self._select_events(start, end)):
            by_ip[event.source_ip].append(event)

        summaries = []
        for ip, events in by_ip.items():
            geo = next((e for e in events if e.has_geo), events[0])
            summaries.append(
                SourceIpSummary(
                    source_ip=ip,
                    event_count=len(events),
                    max_severity=max(e.severity for e in events),
                    country_code=geo.country_code,
                    city=geo.city,
                    asn=geo.asn,
                    asn_org=geo.asn_org,
                )
            )
        summaries.sort(key=lambda s: (-s.event_count, s.source_ip))
        return summaries[:count]

    def get_top_targeted_ports(
        self, start: datetime, end: datetime, count: int = 10
    ) -> List[TargetPortSummary]:
        by_port: Dict[int, List[ThreatEvent]] = defaultdict(list)
        for event in self._select_events(start, end):
            by_port[event.dest_port].append(event)

        summaries = [
            TargetPortSummary(
                port=port,
                event_count=len(events),
                unique_source_ips=len({e.source_ip for e in events}),
                top_signature=_most_common(e.signature_name for e in events),
            )
            for port, events in by_port.items()
        ]
        summaries.sort(key=lambda s: (-s.event_count, s.port))
        return summaries[:count]

    def get_country_distribution(
        self,
        start: datetime,
        end: datetime,
        action: Optional[ThreatAction] = None,
    ) -> Dict[str, int]:
        return dict(
            Counter(
                e.country_code
                for e in self._select_events(start, end)
                if e.country_code is not None and (action is None or e.action == action)
            )
        )

    def get_timeline(
        self, start: datetime, end: datetime, bucket_minutes: int = 60
    ) -> List[TimelineBucket]:
        if bucket_minutes <= 0:
            raise ValueError("bucket_minutes must be positive")
        size = bucket_minutes * 60

        buckets: Dict[int, TimelineBucket] = {}
        for event in self._select_events(start, end):
            epoch = int(event.timestamp.timestamp())
            key = epoch - epoch % size
            bucket = buckets.get(key)
            if bucket is None:
                bucket = TimelineBucket(
                    bucket_start=datetime.fromtimestamp(key, tz=timezone.utc)
                )
                buckets[key] = bucket
            bucket.severity_counts[event.severity] += 1
        return [buckets[k] for k in sorted(buckets)]

    def get_kill_chain_distribution(
        self, start: datetime, end: datetime
    ) -> Dict[KillChainStage, int]:
        return dict(Counter(e.kill_chain_stage for e in self._select_events(start, end)))

    def get_attack_sequences(
        self, start: datetime, end: datetime, limit: int = 50
    ) -> List[AttackSequence]:
        by_ip: Dict[str, List[ThreatEvent]] = defaultdict(list)
        for event in reversed(self._select_events(start, end)):
            by_ip[event.source_ip].append(event)

        candidates = [
            (ip, events)
            for ip, events in by_ip.items()
            if len({e.kill_chain_stage for e in events}) >= 2
        ]
        # Newest campaign first, by when the IP first appeared
        candidates.sort(key=lambda item: item[1][0].timestamp, reverse=True)

        sequences = []
        for ip, events in candidates[:limit]:
            by_stage: Dict[KillChainStage, List[ThreatEvent]] = defaultdict(list)
            for event in events:
                by_stage[event.kill_chain_stage].append(event)
            stages = [
                SequenceStage(
                    stage=stage,
                    first_seen=stage_events[0].timestamp,
                    last_seen=stage_events[-1].timestamp,
                    event_count=len(stage_events),
                    top_signature=_most_common(e.signature_name for e in stage_events),
                )
                for stage, stage_events in sorted(
                    by_stage.items(), key=lambda item: item[0].rank
                )
            ]
            sequences.append(
                AttackSequence(
                    source_ip=ip,
                    country_code=events[0].country_code,
                    asn_org=events[0].asn_org,
                    stages=stages,
                )
            )
        return sequences

    def get_threat_counts_by_port(self, start: datetime, end: datetime) -> Dict[int, int]:
        return dict(Counter(e.dest_port for e in self._select_events(start, end)))

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def save_pattern(self, pattern: ThreatPattern) -> int:
        with self._lock:
            try:
                existing = None
                if pattern.dedup_key:
                    existing = self._conn.execute(
                        "SELECT id, first_seen, last_seen FROM threat_patterns "
                        "WHERE dedup_key = ?",
                        (pattern.dedup_key,),
                    ).fetchone()

                if existing is None:
                    cursor = self._conn.execute(
                        """
                        INSERT INTO threat_patterns
                            (pattern_type, detected_at, source_ips_json, target_port,
                             event_count, first_seen, last_seen, confidence,
                             dedup_key, last_alerted_at, description)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            pattern.pattern_type.value,
                            _ts(pattern.detected_at),
                            pattern.source_ips_json,
                            pattern.target_port,
                            pattern.event_count,
                            _ts(pattern.first_seen),
                            _ts(pattern.last_seen),
                            pattern.confidence,
                            pattern.dedup_key,
                            _ts(pattern.last_alerted_at),
                            pattern.description,
                        ),
                    )
                    pattern_id = cursor.lastrowid
                else:
                    pattern_id = existing["id"]
                    self._conn.execute(
                        """
                        UPDATE threat_patterns
                        SET detected_at = ?, source_ips_json = ?, target_port = ?,
                            event_count = ?, first_seen = MIN(first_seen, ?),
                            last_seen = MAX(last_seen, ?), confidence = ?,
                            description = ?
                        WHERE id = ?
                        """,
                        (
                            _ts(pattern.detected_at),
                            pattern.source_ips_json,
                            pattern.target_port,
                            pattern.event_count,
                            _ts(pattern.first_seen),
                            _ts(pattern.last_seen),
                            pattern.confidence,
                            pattern.description,
                            pattern_id,
                        ),
                    )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                logger.error("Failed to save threat pattern %s: %s", pattern.dedup_key, exc)
                raise

        pattern.pattern_id = pattern_id
        logger.info(
            "Saved threat pattern %d: %s with %d events",
            pattern_id, pattern.pattern_type.value, pattern.event_count,
        )
        return pattern_id

    def get_pattern(self, pattern_id: int) -> Optional[ThreatPattern]:
        row = self._conn.execute(
            "SELECT * FROM threat_patterns WHERE id = ?", (pattern_id,)
        ).fetchone()
        return self._row_to_pattern(row) if row else None

    def get_patterns(
        self,
        start: datetime,
        end: datetime,
        pattern_type: Optional[PatternType] = None,
        limit: int = 50,
    ) -> List[ThreatPattern]:
        clauses = ["detected_at >= ?", "detected_at <= ?"]
        params: List[Any] = [_ts(start), _ts(end)]
        if pattern_type is not None:
            clauses.append("pattern_type = ?")
            params.append(pattern_type.value)
        params.append(limit)
        rows = self._conn.execute(
            f"SELECT * FROM threat_patterns WHERE {' AND '.join(clauses)} "
            "ORDER BY detected_at DESC, id DESC LIMIT ?",
            params,
        ).fetchall()
        return [self._row_to_pattern(r) for r in rows]

    def mark_pattern_alerted(self, pattern_id: int, when: datetime) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE threat_patterns SET last_alerted_at = ? WHERE id = ?",
                (_ts(when), pattern_id),
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Reputation cache
    # ------------------------------------------------------------------

    def get_reputation_cache(self, ip: str) -> Optional[ReputationCacheEntry]:
        row = self._conn.execute(
            "SELECT * FROM reputation_cache WHERE ip = ?", (ip,)
        ).fetchone()
        if row is None:
            return None
        return ReputationCacheEntry(
            ip=row["ip"],
            reputation_json=row["reputation_json"],
            fetched_at=_parse_ts(row["fetched_at"]),
            expires_at=_parse_ts(row["expires_at"]),
        )

    def save_reputation_cache(self, entry: ReputationCacheEntry) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO reputation_cache (ip, reputation_json, fetched_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(ip) DO UPDATE SET
                    reputation_json = excluded.reputation_json,
                    fetched_at = excluded.fetched_at,
                    expires_at = excluded.expires_at
                """,
                (entry.ip, entry.reputation_json, _ts(entry.fetched_at), _ts(entry.expires_at)),
            )
            self._conn.commit()

    def purge_expired_reputation_cache(self, now: datetime) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM reputation_cache WHERE expires_at <= ?", (_ts(now),)
            )
            self._conn.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Noise filters
    # ------------------------------------------------------------------

    def get_noise_filters(self) -> List[ThreatNoiseFilter]:
        rows = self._conn.execute("SELECT * FROM noise_filters ORDER BY id").fetchall()
        return [self._row_to_filter(r) for r in rows]

    def save_noise_filter(self, noise_filter: ThreatNoiseFilter) -> int:
        params = (
            noise_filter.source_ip,
            noise_filter.dest_ip,
            noise_filter.dest_port,
            noise_filter.description,
            int(noise_filter.enabled),
            _ts(noise_filter.created_at),
        )
        with self._lock:
            if noise_filter.filter_id is None:
                cursor = self._conn.execute(
                    """
                    INSERT INTO noise_filters
                        (source_ip, dest_ip, dest_port, description, enabled, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    params,
                )
                noise_filter.filter_id = cursor.lastrowid
            else:
                self._conn.execute(
                    """
                    UPDATE noise_filters
                    SET source_ip = ?, dest_ip = ?, dest_port = ?, description = ?,
                        enabled = ?, created_at = ?
                    WHERE id = ?
                    """,
                    params + (noise_filter.filter_id,),
                )
            self._conn.commit()
        return noise_filter.filter_id

    def delete_noise_filter(self, filter_id: int) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM noise_filters WHERE id = ?", (filter_id,))
            self._conn.commit()
            return cursor.rowcount > 0

    def toggle_noise_filter(self, filter_id: int, enabled: bool) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE noise_filters SET enabled = ? WHERE id = ?",
                (int(enabled), filter_id),
            )
            self._conn.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # System settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM system_settings WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def save_setting(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO system_settings (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, _ts(datetime.now(timezone.utc))),
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
