# Threats Module - Exposure Validator
#
# Cross-references stored threat events with the gateway's port-forward
# rules: which of the services actually exposed to the internet are
# being targeted, by how many sources, with which signatures.  Also
# produces a geo-block recommendation when a handful of countries
# account for most of the traffic.
#
# Reports are recomputed on every call and never persisted.

import logging
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .models import (
    ExposedService,
    ExposureReport,
    GeoBlockRecommendation,
    PortForwardRule,
)
from .repository import ThreatRepository

logger = logging.getLogger(__name__)

MAX_PORTS_PER_RANGE = 100
MAX_EVENTS_PER_PORT = 500
TOP_SIGNATURES = 5

GEO_BLOCK_MIN_THREATS = 10
GEO_BLOCK_MIN_SHARE = 0.05
GEO_BLOCK_MAX_COUNTRIES = 5

WELL_KNOWN_PORTS: Dict[int, str] = {
    20: "FTP Data", 21: "FTP", 22: "SSH", 23: "Telnet",
    25: "SMTP", 53: "DNS", 80: "HTTP", 110: "POP3",
    143: "IMAP", 443: "HTTPS", 993: "IMAPS", 995: "POP3S",
    1433: "MSSQL", 3306: "MySQL", 3389: "RDP", 5432: "PostgreSQL",
    5900: "VNC", 8080: "HTTP Proxy", 8443: "HTTPS Alt",
}


def parse_ports(spec: Optional[str]) -> List[int]:
    """Expand a port spec like ``"22,8000-8010"`` into individual ports.

    Each range contributes at most MAX_PORTS_PER_RANGE ports.  Parts
    that don't parse are skipped.
    """
    if not spec:
        return []

    ports: List[int] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            low, _, high = part.partition("-")
            try:
                start, end = int(low), int(high)
            except ValueError:
                logger.debug("Skipping unparsable port range %r", part)
                continue
            ports.extend(range(start, min(end, start + MAX_PORTS_PER_RANGE - 1) + 1))
        else:
            try:
                ports.append(int(part))
            except ValueError:
                logger.debug("Skipping unparsable port %r", part)
    return ports


def service_name(port: int, rule_name: Optional[str] = None) -> str:
    if rule_name:
        return rule_name
    return WELL_KNOWN_PORTS.get(port, f"Port {port}")


def geo_block_recommendation(
    country_counts: Dict[str, int],
) -> Optional[GeoBlockRecommendation]:
    """Countries worth blocking, or None if the data doesn't justify it."""
    total = sum(country_counts.values())
    if total < GEO_BLOCK_MIN_THREATS:
        return None

    significant = sorted(
        (
            (country, count)
            for country, count in country_counts.items()
            if count / total >= GEO_BLOCK_MIN_SHARE
        ),
        key=lambda item: (-item[1], item[0]),
    )[:GEO_BLOCK_MAX_COUNTRIES]
    if not significant:
        return None

    countries = [country for country, _ in significant]
    percentage = sum(count for _, count in significant) / total * 100
    return GeoBlockRecommendation(
        countries=countries,
        prevention_percentage=round(percentage, 1),
        description=(
            f"Blocking {', '.join(countries)} would have prevented "
            f"{percentage:.0f}% of threats"
        ),
    )


class ExposureValidator:
    """Builds ExposureReports from port-forward rules and stored events."""

    def validate(
        self,
        rules: Optional[Iterable[PortForwardRule]],
        repository: ThreatRepository,
        start: datetime,
        end: datetime,
    ) -> ExposureReport:
        report = ExposureReport()
        active_rules = [r for r in (rules or []) if r.enabled]
        if not active_rules:
            logger.debug("No port forward rules to validate")
            return report

        threats_by_port = repository.get_threat_counts_by_port(start, end)

        seen = set()
        for rule in active_rules:
            for port in parse_ports(rule.dst_port):
                if port in seen:
                    continue
                seen.add(port)

                threats = threats_by_port.get(port, 0)
                if threats == 0:
                    continue
                report.exposed_services.append(
                    self._describe(rule, port, threats, repository, start, end)
                )
                report.total_threats_targeting_exposed += threats

        report.total_exposed_ports = len(report.exposed_services)
        report.geo_block_recommendation = geo_block_recommendation(
            repository.get_country_distribution(start, end)
        )
        return report

    @staticmethod
    def _describe(
        rule: PortForwardRule,
        port: int,
        threats: int,
        repository: ThreatRepository,
        start: datetime,
        end: datetime,
    ) -> ExposedService:
        events = repository.get_events(start, end, dest_port=port, limit=MAX_EVENTS_PER_PORT)
        signatures = Counter(e.signature_name for e in events)
        return ExposedService(
            port=port,
            protocol=rule.protocol or "tcp",
            service_name=service_name(port, rule.name),
            forward_target=f"{rule.forward_ip}:{rule.forward_port or port}",
            rule_name=rule.name or None,
            threat_count=threats,
            unique_source_ips=len({e.source_ip for e in events}),
            top_signatures=[name for name, _ in signatures.most_common(TOP_SIGNATURES)],
            severity_breakdown=dict(Counter(e.severity for e in events)),
        )
