"""
Effect Tracker

Compares a pre-change window with a post-change window that starts after
the attribution delay, scores the change and recommends keep, monitor or
rollback. A report is computed at most once per ledger record.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, Tuple, Union

from .errors import NotTrackableError
from .interfaces import MetricsSource, OptimizationStore
from .models import (
    EffectRating, ExecutionRecord, ExecutionStatus, NotYetEvaluable, PerformanceWindow,
    Recommendation, Tracked, TrackingReport
)
from .utils.ratios import clamp, percent_change, safe_divide

TRACKABLE_STATUSES = (ExecutionStatus.APPLIED, ExecutionStatus.ROLLED_BACK)

COMPARED_METRICS = ('impressions', 'clicks', 'spend', 'sales', 'orders', 'roas', 'acos', 'ctr', 'cvr', 'cpc')


class EffectTracker:
    """Before/after measurement of executed changes"""

    def __init__(self, config: Dict[str, Any], metrics: MetricsSource,
                 store: OptimizationStore, telemetry=None):
        self.config = config
        self.metrics = metrics
        self.store = store
        self.telemetry = telemetry
        self.logger = logging.getLogger(__name__)

        self.attribution_delay = timedelta(days=config.get('attribution_delay_days', 3))
        self.observation_window = timedelta(days=config.get('observation_window_days', 7))

    # ------------------------------------------------------------------ #
    # Windows
    # ------------------------------------------------------------------ #

    def evaluable_at(self, record: ExecutionRecord) -> datetime:
        return record.created_at + self.attribution_delay + self.observation_window

    def is_evaluable(self, record: ExecutionRecord, now: datetime) -> bool:
        return now >= self.evaluable_at(record)

    def windows(self, record: ExecutionRecord) -> Tuple[Tuple[datetime, datetime], Tuple[datetime, datetime]]:
        """(baseline, current) as [start, end) pairs"""
        changed = record.created_at
        baseline = (changed - self.observation_window, changed)
        current_start = changed + self.attribution_delay
        return baseline, (current_start, current_start + self.observation_window)

    # ------------------------------------------------------------------ #
    # Tracking
    # ------------------------------------------------------------------ #

    def track(self, execution_id: int, now: datetime) -> Union[TrackingReport, NotYetEvaluable]:
        """
        Produce the tracking report for one ledger record

        Args:
            execution_id: Ledger record id
            now: Current time

        Returns:
            The stored TrackingReport, or NotYetEvaluable before the window has elapsed

        Raises:
            NotTrackableError: the record is pending or failed
        """
        record = self.store.get_execution(execution_id)
        if record.status not in TRACKABLE_STATUSES:
            raise NotTrackableError(
                f"Execution #{execution_id} is {record.status.value}; only applied changes can be tracked"
            )

        annotation = self.store.get_tracking(execution_id)
        if isinstance(annotation, Tracked):
            self.logger.debug(f"Execution #{execution_id} already tracked")
            return annotation.report

        if not self.is_evaluable(record, now):
            evaluable_at = self.evaluable_at(record)
            self.logger.debug(f"Execution #{execution_id} not evaluable until {evaluable_at.isoformat()}")
            return NotYetEvaluable(execution_id=execution_id, evaluable_at=evaluable_at)

        (base_start, base_end), (cur_start, cur_end) = self.windows(record)
        baseline = self._window(record.segment_id, base_start, base_end)
        current = self._window(record.segment_id, cur_start, cur_end)

        report = self.build_report(execution_id, record.segment_id, baseline, current, now)
        stored = self.store.set_tracking(execution_id, Tracked(report))
        if stored.report is report:
            self.logger.info(
                f"Tracked execution #{execution_id} ({record.segment_id}): score {report.score:.1f}, "
                f"{report.rating.value}, {report.recommendation.value}"
            )
            if self.telemetry:
                self.telemetry.record_tracking(report.recommendation.value, report.rating.value)
        return stored.report

    def _window(self, segment_id: str, start: datetime, end: datetime) -> PerformanceWindow:
        windows = self.metrics.get_performance_windows([segment_id], start, end)
        for window in windows:
            if window.segment_id == segment_id:
                return window
        return PerformanceWindow(segment_id=segment_id, start=start, end=end)

    # ------------------------------------------------------------------ #
    # Scoring
    # ------------------------------------------------------------------ #

    def build_report(self, execution_id: int, segment_id: str, baseline: PerformanceWindow,
                     current: PerformanceWindow, now: datetime) -> TrackingReport:
        before = baseline.metrics()
        after = current.metrics()
        deltas = {name: after[name] - before[name] for name in COMPARED_METRICS}
        percents = {name: percent_change(after[name], before[name]) for name in COMPARED_METRICS}

        score = self.score(percents)
        recommendation = self.recommend(score)
        rating = self.rate(baseline, current)
        return TrackingReport(
            execution_id=execution_id,
            segment_id=segment_id,
            baseline=baseline,
            current=current,
            deltas=deltas,
            percent_changes=percents,
            score=score,
            rating=rating,
            recommendation=recommendation,
            summary=self.summarize(recommendation, percents, deltas),
            generated_at=now,
        )

    def score(self, percents: Dict[str, float]) -> float:
        """Weighted effect score in [-100, 100]"""
        c = self.config
        roas = clamp(percents['roas'] * c.get('roas_score_multiplier', 2.0),
                     -c.get('roas_score_cap', 40.0), c.get('roas_score_cap', 40.0))
        # Lower ACoS is better
        acos = clamp(-percents['acos'] * c.get('acos_score_multiplier', 1.5),
                     -c.get('acos_score_cap', 30.0), c.get('acos_score_cap', 30.0))
        cvr = clamp(percents['cvr'] * c.get('cvr_score_multiplier', 1.0),
                    -c.get('cvr_score_cap', 20.0), c.get('cvr_score_cap', 20.0))
        sales = clamp(percents['sales'] * c.get('sales_score_multiplier', 0.5),
                      -c.get('sales_score_cap', 10.0), c.get('sales_score_cap', 10.0))
        return round(clamp(roas + acos + cvr + sales, -100.0, 100.0), 2)

    def recommend(self, score: float) -> Recommendation:
        if score >= self.config.get('keep_score_threshold', 20.0):
            return Recommendation.KEEP
        if score <= self.config.get('rollback_score_threshold', -20.0):
            return Recommendation.ROLLBACK
        return Recommendation.MONITOR

    @staticmethod
    def rate(baseline: PerformanceWindow, current: PerformanceWindow) -> EffectRating:
        """Five-level rating from ROAS and ACoS change relative to a non-zero baseline"""
        roas_pct = safe_divide(current.roas - baseline.roas, baseline.roas) * 100
        acos_pct = safe_divide(current.acos - baseline.acos, baseline.acos) * 100

        if roas_pct >= 20 and acos_pct <= -10:
            return EffectRating.EXCELLENT
        if roas_pct >= 10 or acos_pct <= -5:
            return EffectRating.GOOD
        if roas_pct >= -5 and acos_pct <= 5:
            return EffectRating.NEUTRAL
        if roas_pct >= -15 or acos_pct <= 15:
            return EffectRating.POOR
        return EffectRating.VERY_POOR

    @staticmethod
    def summarize(recommendation: Recommendation, percents: Dict[str, float],
                  deltas: Dict[str, float]) -> str:
        roas_word = 'up' if deltas['roas'] > 0 else 'down'
        acos_word = 'down' if deltas['acos'] < 0 else 'up'
        movement = (f"ROAS {roas_word} {abs(percents['roas']):.1f}%, "
                    f"ACoS {acos_word} {abs(percents['acos']):.1f}%")
        if recommendation == Recommendation.KEEP:
            return f"Change is working: {movement}"
        if recommendation == Recommendation.ROLLBACK:
            return f"Change underperformed, roll back: {movement}"
        return f"No clear effect yet, keep monitoring: {movement}"

