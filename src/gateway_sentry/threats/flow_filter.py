# Threats Module - Flow Interest Filter
#
# Runs per record in the ingestion loop, before normalization, to cut
# the raw traffic-flow volume (~10k/day) down to the few hundred flows
# worth storing.  Besides what the gateway blocked, it keeps allowed
# traffic that looks like a probe that got through or a C2 callback.

from typing import Iterable, Iterator

from .models import FlowRecord

# Ports commonly targeted by attackers (incoming).
SENSITIVE_PORTS = frozenset({
    22, 23, 25, 445, 1433, 1521, 3306, 3389, 5432, 5900,
    5985, 5986, 6379, 8080, 8443, 27017,
})

# Ports commonly used for C2, tunneling or backdoors (outgoing).
SUSPICIOUS_OUTBOUND_PORTS = frozenset({
    4444, 5555, 6666, 6667, 6668, 6669,  # C2, IRC
    1080, 1194, 1723,  # SOCKS, OpenVPN, PPTP
    8888, 9090, 9999,
    31337,
})

_INTERESTING_RISK = ("medium", "high")


def is_interesting(flow: FlowRecord) -> bool:
    """Return True if the flow should be normalized and stored."""
    if flow.action.lower() == "blocked":
        return True

    if flow.risk.lower() in _INTERESTING_RISK:
        return True

    direction = flow.direction.lower()
    if direction == "incoming" and flow.dest_port in SENSITIVE_PORTS:
        return True
    if direction == "outgoing" and flow.dest_port in SUSPICIOUS_OUTBOUND_PORTS:
        return True

    return False


def filter_interesting(flows: Iterable[FlowRecord]) -> Iterator[FlowRecord]:
    """Yield only the interesting flows, one at a time."""
    for flow in flows:
        if is_interesting(flow):
            yield flow
