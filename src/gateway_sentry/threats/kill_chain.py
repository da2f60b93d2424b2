# Threats Module - Kill Chain Classifier
#
# Assigns a kill chain stage to each normalized event.  Every rule is
# explicit so any classification can be explained by pointing at the
# branch that produced it.
#
# IPS alerts are classified by keyword match over "CATEGORY SIGNATURE";
# the keyword sets are checked in precedence order and the first set
# with a hit decides.  Traffic-flow events are classified from their
# direction / action / risk / destination port.

from typing import Iterable, List, Tuple

from .flow_filter import SENSITIVE_PORTS
from .models import EventSource, KillChainStage, ThreatAction, ThreatEvent

POST_EXPLOIT_KEYWORDS: Tuple[str, ...] = (
    "TROJAN", "MALWARE", "CNC", "C2", "COMMAND AND CONTROL",
    "BACKDOOR", "RAT", "EXFILTRATION", "BOTNET",
)

EXPLOIT_KEYWORDS: Tuple[str, ...] = (
    "EXPLOIT", "CVE", "RCE", "OVERFLOW", "INJECTION",
    "SQLI", "XSS", "SHELLCODE", "ATTACK",
)

RECON_KEYWORDS: Tuple[str, ...] = (
    "SCAN", "POLICY", "INFO", "ICMP", "RECON", "DISCOVERY",
)

# Highest precedence first.
KEYWORD_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("post_exploit", POST_EXPLOIT_KEYWORDS),
    ("exploit", EXPLOIT_KEYWORDS),
    ("recon", RECON_KEYWORDS),
)


def _matches_any(text: str, keywords: Tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def match_keyword_rule(category: str, signature_name: str) -> str:
    """Return the name of the first keyword rule that matches, or ''."""
    combined = f"{category} {signature_name}".upper()
    for name, keywords in KEYWORD_RULES:
        if _matches_any(combined, keywords):
            return name
    return ""


class KillChainClassifier:
    """Deterministic rule-based kill chain classification."""

    def classify(self, event: ThreatEvent) -> KillChainStage:
        # Info-level events are explicitly allowed traffic
        if event.severity <= 1:
            return KillChainStage.MONITORED

        if event.event_source == EventSource.TRAFFIC_FLOW:
            return self._classify_flow(event)
        return self._classify_ips(event)

    def classify_all(self, events: Iterable[ThreatEvent]) -> List[ThreatEvent]:
        """Assign ``kill_chain_stage`` on each event in place."""
        classified = []
        for event in events:
            event.kill_chain_stage = self.classify(event)
            classified.append(event)
        return classified

    # ------------------------------------------------------------------
    # IPS
    # ------------------------------------------------------------------

    def _classify_ips(self, event: ThreatEvent) -> KillChainStage:
        rule = match_keyword_rule(event.category, event.signature_name)

        if rule == "post_exploit":
            return KillChainStage.POST_EXPLOITATION

        if rule == "exploit":
            # Low severity can't be active exploitation
            if event.action == ThreatAction.BLOCKED or event.severity <= 2:
                return KillChainStage.ATTEMPTED_EXPLOITATION
            return KillChainStage.ACTIVE_EXPLOITATION

        if rule == "recon":
            return KillChainStage.RECONNAISSANCE

        if event.severity >= 4 and event.action == ThreatAction.DETECTED:
            return KillChainStage.ACTIVE_EXPLOITATION
        if event.severity >= 4:
            return KillChainStage.ATTEMPTED_EXPLOITATION
        return KillChainStage.RECONNAISSANCE

    # ------------------------------------------------------------------
    # Traffic flow
    # ------------------------------------------------------------------

    def _classify_flow(self, event: ThreatEvent) -> KillChainStage:
        direction = event.direction.lower()
        incoming = direction == "incoming"
        outgoing = direction == "outgoing"
        blocked = event.action == ThreatAction.BLOCKED
        sensitive = event.dest_port in SENSITIVE_PORTS
        high_risk = event.risk_level.lower() == "high"

        # Likely exfiltration or C2
        if outgoing and high_risk:
            return KillChainStage.POST_EXPLOITATION

        if incoming and not blocked and sensitive:
            if event.severity >= 3:
                return KillChainStage.ACTIVE_EXPLOITATION
            return KillChainStage.ATTEMPTED_EXPLOITATION

        if incoming and blocked and sensitive:
            return KillChainStage.ATTEMPTED_EXPLOITATION

        if incoming and blocked:
            return KillChainStage.RECONNAISSANCE

        if event.severity >= 4 and not blocked:
            return KillChainStage.ACTIVE_EXPLOITATION
        if event.severity >= 4:
            return KillChainStage.ATTEMPTED_EXPLOITATION
        return KillChainStage.RECONNAISSANCE


_default_classifier = KillChainClassifier()


def classify(event: ThreatEvent) -> KillChainStage:
    """Module-level shortcut for ``KillChainClassifier().classify``."""
    return _default_classifier.classify(event)
