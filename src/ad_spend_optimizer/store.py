"""
In-memory optimization store

Thread-safe reference implementation of OptimizationStore, used for dry runs
and tests. Mutable objects are copied on the way in and out so callers never
hold a reference into the store.
"""

import copy
import itertools
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from .errors import InvalidTransitionError, RecordNotFoundError
from .interfaces import OptimizationStore
from .models import (
    AllocationPlan, ExecutionBatch, ExecutionRecord, ExecutionStatus, PlanStatus,
    PredictionRecord, ReviewSchedule, ReviewStatus, TrackingAnnotation, Tracked, UNTRACKED
)

# Ledger rows only ever move along these edges
ALLOWED_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.APPLIED, ExecutionStatus.FAILED},
    ExecutionStatus.APPLIED: {ExecutionStatus.ROLLED_BACK},
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.ROLLED_BACK: set(),
}


def check_transition(record: ExecutionRecord, status: ExecutionStatus) -> None:
    if status not in ALLOWED_TRANSITIONS[record.status]:
        raise InvalidTransitionError(
            f"Execution #{record.record_id} cannot move from {record.status.value} to {status.value}"
        )


class InMemoryOptimizationStore(OptimizationStore):

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._ids = {
            'plan': itertools.count(1),
            'execution': itertools.count(1),
            'batch': itertools.count(1),
            'prediction': itertools.count(1),
            'review': itertools.count(1),
        }
        self._plans: Dict[int, AllocationPlan] = {}
        self._executions: Dict[int, ExecutionRecord] = {}
        self._tracking: Dict[int, Tracked] = {}
        self._batches: Dict[int, ExecutionBatch] = {}
        self._predictions: Dict[int, PredictionRecord] = {}
        self._reviews: Dict[int, ReviewSchedule] = {}

    # ------------------------------------------------------------------ #
    # Plans
    # ------------------------------------------------------------------ #

    def save_plan(self, plan: AllocationPlan) -> AllocationPlan:
        with self._lock:
            stored = copy.deepcopy(plan)
            if stored.plan_id is None:
                stored.plan_id = next(self._ids['plan'])
            self._plans[stored.plan_id] = stored
            return copy.deepcopy(stored)

    def get_plan(self, plan_id: int) -> AllocationPlan:
        with self._lock:
            if plan_id not in self._plans:
                raise RecordNotFoundError(f"Plan #{plan_id} not found")
            return copy.deepcopy(self._plans[plan_id])

    def set_plan_status(self, plan_id: int, status: PlanStatus,
                        applied_at: Optional[datetime] = None) -> AllocationPlan:
        with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None:
                raise RecordNotFoundError(f"Plan #{plan_id} not found")
            plan.status = status
            if applied_at is not None:
                plan.applied_at = applied_at
            return copy.deepcopy(plan)

    def get_applied_plan(self, scope_id: str) -> Optional[AllocationPlan]:
        with self._lock:
            for plan in self._plans.values():
                if plan.scope_id == scope_id and plan.status == PlanStatus.APPLIED:
                    return copy.deepcopy(plan)
            return None

    # ------------------------------------------------------------------ #
    # Execution ledger
    # ------------------------------------------------------------------ #

    def append_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.record_id is not None:
            raise ValueError("Execution records are append-only; new rows must not carry an id")
        with self._lock:
            stored = replace(record, record_id=next(self._ids['execution']))
            self._executions[stored.record_id] = stored
            return stored

    def get_execution(self, record_id: int) -> ExecutionRecord:
        with self._lock:
            if record_id not in self._executions:
                raise RecordNotFoundError(f"Execution #{record_id} not found")
            return self._executions[record_id]

    def transition_execution(self, record_id: int, status: ExecutionStatus) -> ExecutionRecord:
        with self._lock:
            record = self.get_execution(record_id)
            check_transition(record, status)
            updated = replace(record, status=status)
            self._executions[record_id] = updated
            return updated

    def list_executions(self, segment_id: Optional[str] = None,
                        batch_id: Optional[int] = None,
                        status: Optional[ExecutionStatus] = None,
                        applied_before: Optional[datetime] = None) -> List[ExecutionRecord]:
        with self._lock:
            records = list(self._executions.values())
        if segment_id is not None:
            records = [r for r in records if r.segment_id == segment_id]
        if batch_id is not None:
            records = [r for r in records if r.batch_id == batch_id]
        if status is not None:
            records = [r for r in records if r.status == status]
        if applied_before is not None:
            records = [r for r in records if r.created_at <= applied_before]
        return sorted(records, key=lambda r: (r.created_at, r.record_id))

    # ------------------------------------------------------------------ #
    # Tracking annotations
    # ------------------------------------------------------------------ #

    def get_tracking(self, record_id: int) -> TrackingAnnotation:
        with self._lock:
            self.get_execution(record_id)
            return self._tracking.get(record_id, UNTRACKED)

    def set_tracking(self, record_id: int, annotation: Tracked) -> TrackingAnnotation:
        with self._lock:
            self.get_execution(record_id)
            existing = self._tracking.get(record_id)
            if existing is not None:
                self.logger.debug(f"Execution #{record_id} already tracked, keeping existing report")
                return existing
            self._tracking[record_id] = annotation
            return annotation

    # ------------------------------------------------------------------ #
    # Batches
    # ------------------------------------------------------------------ #

    def save_batch(self, batch: ExecutionBatch) -> ExecutionBatch:
        with self._lock:
            stored = copy.deepcopy(batch)
            if stored.batch_id is None:
                stored.batch_id = next(self._ids['batch'])
            self._batches[stored.batch_id] = stored
            return copy.deepcopy(stored)

    def get_batch(self, batch_id: int) -> ExecutionBatch:
        with self._lock:
            if batch_id not in self._batches:
                raise RecordNotFoundError(f"Batch #{batch_id} not found")
            return copy.deepcopy(self._batches[batch_id])

    # ------------------------------------------------------------------ #
    # Predictions and reviews
    # ------------------------------------------------------------------ #

    def save_prediction(self, prediction: PredictionRecord) -> PredictionRecord:
        with self._lock:
            stored = prediction
            if stored.prediction_id is None:
                stored = replace(prediction, prediction_id=next(self._ids['prediction']))
            self._predictions[stored.prediction_id] = stored
            return stored

    def get_prediction(self, prediction_id: int) -> PredictionRecord:
        with self._lock:
            if prediction_id not in self._predictions:
                raise RecordNotFoundError(f"Prediction #{prediction_id} not found")
            return self._predictions[prediction_id]

    def save_review(self, review: ReviewSchedule) -> ReviewSchedule:
        with self._lock:
            stored = copy.deepcopy(review)
            if stored.review_id is None:
                stored.review_id = next(self._ids['review'])
            self._reviews[stored.review_id] = stored
            return copy.deepcopy(stored)

    def get_review(self, review_id: int) -> ReviewSchedule:
        with self._lock:
            if review_id not in self._reviews:
                raise RecordNotFoundError(f"Review #{review_id} not found")
            return copy.deepcopy(self._reviews[review_id])

    def list_reviews(self, status: Optional[ReviewStatus] = None,
                     due_before: Optional[datetime] = None) -> List[ReviewSchedule]:
        with self._lock:
            reviews = [copy.deepcopy(r) for r in self._reviews.values()]
        if status is not None:
            reviews = [r for r in reviews if r.status == status]
        if due_before is not None:
            reviews = [r for r in reviews if r.scheduled_at <= due_before]
        return sorted(reviews, key=lambda r: (r.scheduled_at, r.review_id))
