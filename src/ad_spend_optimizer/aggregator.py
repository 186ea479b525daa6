"""
Performance Aggregator

Builds PerformanceWindows from raw daily or hourly rows. Windows are always
recomputed from the raw rows, and a segment-bucket with no row counts as zero.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List

from .interfaces import MetricsSource
from .models import PerformancePoint, PerformanceWindow

GRANULARITIES = {
    'daily': timedelta(days=1),
    'hourly': timedelta(hours=1),
}


@dataclass(frozen=True)
class RawPerformanceRecord:
    """One row as reported by the advertising network"""
    segment_id: str
    period: datetime
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    sales: float = 0.0
    orders: int = 0


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise TypeError(f"Unsupported period type: {type(value).__name__}")


def _bucket_start(moment: datetime, granularity: str) -> datetime:
    if granularity == 'hourly':
        return moment.replace(minute=0, second=0, microsecond=0)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


class PerformanceAggregator:
    """Aggregates raw rows into per-segment windows"""

    def __init__(self, granularity: str = 'daily'):
        if granularity not in GRANULARITIES:
            raise ValueError(f"Unsupported granularity: {granularity}")
        self.granularity = granularity
        self.logger = logging.getLogger(__name__)

    def buckets(self, start: datetime, end: datetime) -> List[datetime]:
        """Bucket starts covering [start, end)"""
        step = GRANULARITIES[self.granularity]
        current = _bucket_start(start, self.granularity)
        result = []
        while current < end:
            result.append(current)
            current += step
        return result

    def aggregate(self, records: Iterable[RawPerformanceRecord], segment_ids: List[str],
                  start: datetime, end: datetime) -> Dict[str, PerformanceWindow]:
        """
        Aggregate raw rows into one window per requested segment

        Args:
            records: Raw rows, may include other segments or periods
            segment_ids: Segments to produce windows for
            start: Inclusive window start
            end: Exclusive window end

        Returns:
            Mapping of segment id to window; segments without rows get a zero window
        """
        if end < start:
            raise ValueError(f"Window end {end} precedes start {start}")

        wanted = set(segment_ids)
        buckets = self.buckets(start, end)
        grid: Dict[str, Dict[datetime, List[float]]] = {
            segment_id: {bucket: [0, 0, 0.0, 0.0, 0] for bucket in buckets}
            for segment_id in wanted
        }

        for record in records:
            if record.segment_id not in wanted:
                continue
            period = _as_datetime(record.period)
            if not start <= period < end:
                continue
            bucket = _bucket_start(period, self.granularity)
            # Bucket may start before the window when start is mid-bucket
            cell = grid[record.segment_id].setdefault(bucket, [0, 0, 0.0, 0.0, 0])
            cell[0] += int(record.impressions or 0)
            cell[1] += int(record.clicks or 0)
            cell[2] += float(record.spend or 0)
            cell[3] += float(record.sales or 0)
            cell[4] += int(record.orders or 0)

        windows = {}
        for segment_id in segment_ids:
            points = tuple(
                PerformancePoint(period=bucket, impressions=c[0], clicks=c[1],
                                 spend=c[2], sales=c[3], orders=c[4])
                for bucket, c in sorted(grid[segment_id].items())
            )
            windows[segment_id] = PerformanceWindow(
                segment_id=segment_id,
                start=start,
                end=end,
                impressions=sum(p.impressions for p in points),
                clicks=sum(p.clicks for p in points),
                spend=sum(p.spend for p in points),
                sales=sum(p.sales for p in points),
                orders=sum(p.orders for p in points),
                points=points,
            )
        return windows


class RecordMetricsSource(MetricsSource):
    """
    MetricsSource over any raw-row provider

    Args:
        fetch_records: callable(segment_ids, start, end) -> iterable of RawPerformanceRecord
        granularity: 'daily' or 'hourly'
    """

    def __init__(self, fetch_records: Callable[[List[str], datetime, datetime], Iterable[RawPerformanceRecord]],
                 granularity: str = 'daily'):
        self.fetch_records = fetch_records
        self.aggregator = PerformanceAggregator(granularity)

    def get_performance_windows(self, segment_ids: List[str], start: datetime,
                                end: datetime) -> List[PerformanceWindow]:
        if not segment_ids:
            return []
        records = self.fetch_records(segment_ids, start, end)
        windows = self.aggregator.aggregate(records, segment_ids, start, end)
        return [windows[segment_id] for segment_id in segment_ids]
