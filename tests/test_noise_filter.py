"""
Tests for noise filter matching.
"""

from datetime import datetime, timezone

import pytest

from gateway_sentry.threats.models import ThreatEvent
from gateway_sentry.threats.noise_filter import ThreatNoiseFilter, filter_events


def _event(source_ip="203.0.113.7", dest_ip="10.0.0.5", dest_port=443):
    return ThreatEvent(
        timestamp=datetime(2026, 3, 1, tzinfo=timezone.utc),
        source_ip=source_ip,
        dest_ip=dest_ip,
        dest_port=dest_port,
        severity=2,
    )


class TestMatches:
    def test_null_fields_are_wildcards(self):
        f = ThreatNoiseFilter(dest_ip="10.0.0.5", dest_port=443)
        assert f.matches("1.2.3.4", "10.0.0.5", 443)
        assert f.matches("5.6.7.8", "10.0.0.5", 443)

    def test_port_must_match_exactly(self):
        f = ThreatNoiseFilter(dest_ip="10.0.0.5", dest_port=443)
        assert not f.matches("1.2.3.4", "10.0.0.5", 8443)

    def test_cidr_source(self):
        f = ThreatNoiseFilter(source_ip="10.0.0.0/8")
        assert f.matches("10.1.2.3", "8.8.8.8", 53)
        assert not f.matches("192.168.1.1", "8.8.8.8", 53)

    def test_exact_ip_does_not_prefix_match(self):
        f = ThreatNoiseFilter(source_ip="10.0.0.1")
        assert not f.matches("10.0.0.10", "", 0)

    def test_ipv6_cidr(self):
        f = ThreatNoiseFilter(dest_ip="2001:db8::/32")
        assert f.matches("", "2001:db8::1", 0)

    @pytest.mark.parametrize("rule", ["10.0.0.0/99", "garbage/8"])
    def test_invalid_cidr_matches_nothing(self, rule):
        assert not ThreatNoiseFilter(source_ip=rule).matches("10.0.0.1", "", 0)

    def test_unparsable_event_ip(self):
        assert not ThreatNoiseFilter(source_ip="10.0.0.0/8").matches("unknown", "", 0)

    def test_all_null_matches_everything(self):
        assert ThreatNoiseFilter().matches("1.2.3.4", "5.6.7.8", 1)

    def test_matches_event(self):
        f = ThreatNoiseFilter(source_ip="203.0.113.0/24", dest_port=443)
        assert f.matches_event(_event())
        assert not f.matches_event(_event(dest_port=22))


class TestFilterEvents:
    def test_drops_matching_events(self):
        events = [_event(), _event(dest_port=22), _event(source_ip="8.8.8.8")]
        kept = filter_events(events, [ThreatNoiseFilter(source_ip="203.0.113.7")])
        assert kept == [events[2]]

    def test_disabled_filters_ignored(self):
        events = [_event()]
        assert filter_events(events, [ThreatNoiseFilter(enabled=False)]) == events

    def test_no_filters(self):
        events = [_event(), _event()]
        assert filter_events(events, []) == events

    def test_to_dict(self):
        f = ThreatNoiseFilter(dest_port=53, description="DNS resolver")
        d = f.to_dict()
        assert d["dest_port"] == 53
        assert d["source_ip"] is None
        assert d["enabled"] is True
