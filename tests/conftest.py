"""
Shared fixtures: in-memory collaborators and a controllable clock.
"""

import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta

import pytest

from ad_spend_optimizer import (
    InMemoryOptimizationStore, MutationClient, MutationResult, Notifier, OptimizationEngine,
    OptimizerConfig, RawPerformanceRecord, RecordMetricsSource, Segment, SegmentKind, SegmentSource
)
from ad_spend_optimizer.errors import MutationError

T0 = datetime(2024, 3, 10)


class Clock:
    """Callable clock the tests move forward by hand"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMetricsSource(RecordMetricsSource):
    """Raw rows held in a list, aggregated by the real aggregator"""

    def __init__(self, granularity: str = 'daily'):
        self.rows = []
        super().__init__(self._fetch, granularity)

    def _fetch(self, segment_ids, start, end):
        return [r for r in self.rows if r.segment_id in segment_ids]

    def add_daily(self, segment_id, start, days, impressions=0, clicks=0, spend=0.0, sales=0.0, orders=0):
        for offset in range(days):
            self.rows.append(RawPerformanceRecord(
                segment_id=segment_id,
                period=start + timedelta(days=offset),
                impressions=impressions,
                clicks=clicks,
                spend=spend,
                sales=sales,
                orders=orders,
            ))


class FakeSegmentSource(SegmentSource):

    def __init__(self):
        self.scopes = defaultdict(list)

    def add(self, scope_id, *segments):
        self.scopes[scope_id].extend(segments)

    def get_segments(self, scope_id, kinds=None):
        segments = list(self.scopes.get(scope_id, []))
        if kinds:
            segments = [s for s in segments if s.kind in kinds]
        return segments


class FakeMutationClient(MutationClient):
    """Records every call; failures, exceptions, delays and blocking are opt-in per segment"""

    def __init__(self):
        self.calls = []
        self.reject = set()
        self.explode = set()
        self.delays = {}
        self.block = set()
        self.entered = threading.Event()
        self.release = threading.Event()
        self.on_call = None
        self.max_parallel = defaultdict(int)
        self._active = defaultdict(int)
        self._lock = threading.Lock()

    def apply_control_value(self, segment, change):
        with self._lock:
            self._active[segment.segment_id] += 1
            self.max_parallel[segment.segment_id] = max(
                self.max_parallel[segment.segment_id], self._active[segment.segment_id]
            )
        try:
            if segment.segment_id in self.block:
                self.entered.set()
                self.release.wait(5)
            if segment.segment_id in self.delays:
                time.sleep(self.delays[segment.segment_id])
            with self._lock:
                self.calls.append((segment.segment_id, change))
            if self.on_call is not None:
                self.on_call(segment, change)
            if segment.segment_id in self.explode:
                raise MutationError(f"connection reset while updating {segment.segment_id}")
            if segment.segment_id in self.reject:
                return MutationResult(False, 'INVALID_ARGUMENT: bid below minimum')
            return MutationResult(True)
        finally:
            with self._lock:
                self._active[segment.segment_id] -= 1

    def values_for(self, segment_id):
        return [change.value for sid, change in self.calls if sid == segment_id]


class RecordingNotifier(Notifier):

    def __init__(self):
        self.messages = []

    def notify(self, title, body):
        self.messages.append((title, body))


class BrokenNotifier(Notifier):

    def notify(self, title, body):
        raise ConnectionError("webhook unreachable")


def placement(segment_id, value=50.0, campaign_id='cmp-1', name='placementTop'):
    return Segment(segment_id, SegmentKind.PLACEMENT, campaign_id, name, value)


def keyword(segment_id, bid=1.0, state='enabled', text='running shoes'):
    return Segment(segment_id, SegmentKind.KEYWORD, 'cmp-1', text, bid, state)


def search_term(segment_id, text='cheap shoes'):
    return Segment(segment_id, SegmentKind.SEARCH_TERM, 'cmp-1', text, 0.0)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def config():
    return OptimizerConfig(telemetry_exporter='log')


@pytest.fixture
def store():
    return InMemoryOptimizationStore()


@pytest.fixture
def metrics():
    return FakeMetricsSource()


@pytest.fixture
def segments():
    return FakeSegmentSource()


@pytest.fixture
def client():
    return FakeMutationClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_engine(store, metrics, segments, client, notifier, clock):
    """Engine factory so tests can override configuration"""
    def _make(config=None, **overrides):
        config = config or OptimizerConfig(telemetry_exporter='log', **overrides)
        return OptimizationEngine(
            config=config, store=store, metrics=metrics, segments=segments,
            client=client, notifier=notifier, clock=clock,
        )
    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()
