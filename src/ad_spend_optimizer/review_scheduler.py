"""
Review Scheduler

One review per prediction horizon. Due reviews run the effect tracker over
the batch's ledger records, measure how close the prediction came, and
optionally trigger automatic rollbacks.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List

from .effect_tracker import EffectTracker
from .errors import RollbackError
from .interfaces import MetricsSource, OptimizationStore
from .models import (
    ExecutionStatus, NotYetEvaluable, PerformanceWindow, PredictionRecord, ReviewResult,
    ReviewSchedule, ReviewStatus
)

REVIEWABLE_STATUSES = (ExecutionStatus.APPLIED, ExecutionStatus.ROLLED_BACK)


def prediction_accuracy(predicted: float, actual: float) -> float:
    """Agreement of two signed changes as a 0-100 score"""
    if predicted == 0 and actual == 0:
        return 100.0
    if predicted * actual <= 0:
        return 0.0
    small, large = sorted((abs(predicted), abs(actual)))
    return round(small / large * 100, 2)


class ReviewScheduler:
    """Schedules and processes prediction reviews"""

    def __init__(self, config: Dict[str, Any], store: OptimizationStore,
                 tracker: EffectTracker, metrics: MetricsSource,
                 rollback=None, telemetry=None):
        self.config = config
        self.store = store
        self.tracker = tracker
        self.metrics = metrics
        self.rollback = rollback
        self.telemetry = telemetry
        self.logger = logging.getLogger(__name__)
        self.baseline_days = config.get('baseline_window_days', 7)

    def schedule(self, batch_id: int, predictions: List[PredictionRecord], now: datetime) -> List[int]:
        """Persist predictions and create one pending review per horizon"""
        review_ids = []
        for prediction in predictions:
            stored = self.store.save_prediction(prediction)
            review = self.store.save_review(ReviewSchedule(
                prediction_id=stored.prediction_id,
                batch_id=batch_id,
                horizon_days=stored.horizon_days,
                scheduled_at=now + timedelta(days=stored.horizon_days),
            ))
            review_ids.append(review.review_id)
        self.logger.debug(f"Scheduled {len(review_ids)} reviews for batch #{batch_id}")
        return review_ids

    def list_pending(self, now: datetime) -> List[ReviewSchedule]:
        return self.store.list_reviews(status=ReviewStatus.PENDING, due_before=now)

    def process_review(self, review_id: int, now: datetime) -> ReviewResult:
        """
        Process one review

        Args:
            review_id: Review to process
            now: Current time

        Returns:
            ReviewResult; deferred=True when the review is not due or its
            changes cannot be evaluated yet (the review stays pending)
        """
        review = self.store.get_review(review_id)
        if review.status != ReviewStatus.PENDING:
            self.logger.debug(f"Review #{review_id} already {review.status.value}")
            return ReviewResult(review=review)
        if review.scheduled_at > now:
            return ReviewResult(review=review, deferred=True)

        batch = self.store.get_batch(review.batch_id)
        records = [self.store.get_execution(record_id) for record_id in batch.record_ids]
        records = [r for r in records if r.status in REVIEWABLE_STATUSES]

        if not records:
            review.status = ReviewStatus.SKIPPED
            review.completed_at = now
            review.notes = 'No applied changes to review'
            review = self.store.save_review(review)
            self.logger.info(f"Review #{review_id} skipped: batch #{batch.batch_id} has no applied changes")
            self._count('skipped')
            return ReviewResult(review=review)

        reports = []
        for record in records:
            result = self.tracker.track(record.record_id, now)
            if isinstance(result, NotYetEvaluable):
                self.logger.warning(
                    f"Review #{review_id} deferred: execution #{record.record_id} "
                    f"evaluable at {result.evaluable_at.isoformat()}"
                )
                self._count('deferred')
                return ReviewResult(review=review, reports=tuple(reports), deferred=True)
            reports.append(result)

        rolled_back, failures = self._auto_rollback(reports)
        accuracy = self.measure_accuracy(review, [r.segment_id for r in records])

        counts: Dict[str, int] = {}
        for report in reports:
            counts[report.recommendation.value] = counts.get(report.recommendation.value, 0) + 1
        review.status = ReviewStatus.COMPLETED
        review.completed_at = now
        review.notes = (', '.join(f"{k}: {v}" for k, v in sorted(counts.items()))
                        + f"; prediction accuracy {accuracy['overall']:.1f}%")
        if rolled_back:
            review.notes += f"; auto-rolled back {len(rolled_back)}"
        review = self.store.save_review(review)

        self.logger.info(f"Review #{review_id} ({review.horizon_days} days) completed: {review.notes}")
        self._count('completed')
        return ReviewResult(
            review=review,
            reports=tuple(reports),
            rolled_back=tuple(rolled_back),
            rollback_failures=tuple(failures),
            prediction_accuracy=accuracy,
        )

    def _auto_rollback(self, reports):
        rolled_back, failures = [], []
        if self.rollback is None:
            return rolled_back, failures
        for report in reports:
            if not self.rollback.should_auto_rollback(report):
                continue
            if self.store.get_execution(report.execution_id).status != ExecutionStatus.APPLIED:
                continue
            try:
                record = self.rollback.rollback(report.execution_id, reason=report.summary, trigger='auto')
                rolled_back.append(record.record_id)
            except RollbackError as e:
                self.logger.error(f"Automatic rollback of #{report.execution_id} failed: {e}")
                failures.append(report.execution_id)
        return rolled_back, failures

    def measure_accuracy(self, review: ReviewSchedule, segment_ids: List[str]) -> Dict[str, Any]:
        """Compare predicted spend and sales changes with what happened over the horizon"""
        prediction = self.store.get_prediction(review.prediction_id)
        end = review.scheduled_at
        start = end - timedelta(days=self.baseline_days)
        unique_ids = list(dict.fromkeys(segment_ids))
        actual = PerformanceWindow.combine(
            'actual', self.metrics.get_performance_windows(unique_ids, start, end), start, end
        )

        result: Dict[str, Any] = {}
        for name, baseline, predicted, observed in (
            ('spend', prediction.baseline_spend, prediction.predicted_spend, actual.spend),
            ('sales', prediction.baseline_sales, prediction.predicted_sales, actual.sales),
        ):
            predicted_change = predicted - baseline
            actual_change = observed - baseline
            result[name] = {
                'predicted': predicted,
                'actual': observed,
                'predicted_change': predicted_change,
                'actual_change': actual_change,
                'accuracy': prediction_accuracy(predicted_change, actual_change),
            }
        result['overall'] = (result['spend']['accuracy'] + result['sales']['accuracy']) / 2
        return result

    def _count(self, outcome: str) -> None:
        if self.telemetry:
            self.telemetry.increment('optimizer_reviews_processed_total', labels={'outcome': outcome})

