"""
Tests for the shared sliding-window scan.
"""

from datetime import timedelta

from gateway_sentry.threats.models import PatternType, ThreatEvent, ThreatPattern
from gateway_sentry.threats.sliding_window import scan_windows


def _event(ts, source_ip="203.0.113.1", dest_port=22):
    return ThreatEvent(timestamp=ts, source_ip=source_ip, dest_port=dest_port, severity=3)


def _pattern_for(window):
    return ThreatPattern(
        pattern_type=PatternType.SCAN_SWEEP,
        detected_at=window[-1].timestamp,
        first_seen=window[0].timestamp,
        last_seen=window[-1].timestamp,
        event_count=len(window),
        confidence=1.0,
    )


class TestScanWindows:
    def test_window_bounds_and_sorting(self, base_time):
        seen = []

        def evaluate(key, window):
            seen.append([e.timestamp for e in window])
            return None

        # Deliberately unsorted input
        events = [
            _event(base_time + timedelta(minutes=12)),
            _event(base_time),
            _event(base_time + timedelta(minutes=5)),
        ]
        scan_windows(events, lambda e: e.source_ip, timedelta(minutes=10), evaluate)

        assert seen == [
            [base_time],
            [base_time, base_time + timedelta(minutes=5)],
            # 12 - 0 > 10, so the first event drops out
            [base_time + timedelta(minutes=5), base_time + timedelta(minutes=12)],
        ]

    def test_span_equal_to_window_is_kept(self, base_time):
        sizes = []

        def evaluate(key, window):
            sizes.append(len(window))
            return None

        events = [_event(base_time), _event(base_time + timedelta(minutes=10))]
        scan_windows(events, lambda e: e.source_ip, timedelta(minutes=10), evaluate)
        assert sizes == [1, 2]

    def test_one_pattern_per_group(self, base_time):
        calls = []

        def evaluate(key, window):
            calls.append(key)
            if len(window) >= 2:
                return _pattern_for(window)
            return None

        events = [_event(base_time + timedelta(minutes=i)) for i in range(5)]
        patterns = scan_windows(events, lambda e: e.source_ip, timedelta(hours=1), evaluate)

        assert len(patterns) == 1
        assert patterns[0].event_count == 2
        # scanning stopped at the first qualifying window
        assert len(calls) == 2

    def test_groups_are_independent(self, base_time):
        events = [
            _event(base_time, source_ip="a"),
            _event(base_time, source_ip="b"),
            _event(base_time + timedelta(minutes=1), source_ip="a"),
            _event(base_time + timedelta(minutes=1), source_ip="b"),
        ]
        patterns = scan_windows(
            events,
            lambda e: e.source_ip,
            timedelta(hours=1),
            lambda key, window: _pattern_for(window),
            min_events=2,
        )
        assert len(patterns) == 2

    def test_accepts_and_min_events(self, base_time):
        called = []
        events = [_event(base_time + timedelta(minutes=i), dest_port=i) for i in range(6)]

        scan_windows(
            events,
            lambda e: e.source_ip,
            timedelta(hours=1),
            lambda key, window: called.append(len(window)),
            accepts=lambda e: e.dest_port % 2 == 0,
            min_events=3,
        )
        # only ports 0, 2, 4 pass; the window is evaluated once it holds 3
        assert called == [3]

    def test_empty_input(self):
        assert scan_windows([], lambda e: e, timedelta(minutes=1), lambda k, w: None) == []

    def test_input_not_mutated(self, base_time):
        events = [_event(base_time + timedelta(minutes=2)), _event(base_time)]
        snapshot = list(events)
        scan_windows(events, lambda e: e.source_ip, timedelta(hours=1), lambda k, w: None)
        assert events == snapshot
