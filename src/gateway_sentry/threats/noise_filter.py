# Threats Module - Noise Filters
#
# User rules that hide known-benign traffic from reports.  A field left
# as None is a wildcard; IP fields accept either an exact address or a
# CIDR block.  A filter with every field None matches everything; the
# matcher does not second-guess that, guarding against it belongs to
# whatever lets users create filters.

import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .models import ThreatEvent, utcnow

logger = logging.getLogger(__name__)


def _ip_matches(rule: str, value: str) -> bool:
    if "/" not in rule:
        return rule == value
    try:
        network = ipaddress.ip_network(rule, strict=False)
    except ValueError:
        logger.debug("Ignoring invalid CIDR in noise filter: %r", rule)
        return False
    try:
        return ipaddress.ip_address(value) in network
    except ValueError:
        return False


@dataclass
class ThreatNoiseFilter:
    source_ip: Optional[str] = None
    dest_ip: Optional[str] = None
    dest_port: Optional[int] = None
    description: str = ""
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    filter_id: Optional[int] = None

    def matches(self, source_ip: str, dest_ip: str, dest_port: Optional[int]) -> bool:
        if self.source_ip is not None and not _ip_matches(self.source_ip, source_ip):
            return False
        if self.dest_ip is not None and not _ip_matches(self.dest_ip, dest_ip):
            return False
        if self.dest_port is not None and self.dest_port != dest_port:
            return False
        return True

    def matches_event(self, event: ThreatEvent) -> bool:
        return self.matches(event.source_ip, event.dest_ip, event.dest_port)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filter_id": self.filter_id,
            "source_ip": self.source_ip,
            "dest_ip": self.dest_ip,
            "dest_port": self.dest_port,
            "description": self.description,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
        }


def filter_events(
    events: Iterable[ThreatEvent], filters: Iterable[ThreatNoiseFilter]
) -> List[ThreatEvent]:
    """Drop events matched by any enabled filter."""
    active = [f for f in filters if f.enabled]
    if not active:
        return list(events)
    return [e for e in events if not any(f.matches_event(e) for f in active)]
