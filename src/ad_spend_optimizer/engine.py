"""
Optimization Engine

Facade wiring the estimator, allocator, suggestion rules, predictor,
execution engine, effect tracker, review scheduler and rollback manager
over injected collaborators. Every entry point is safe to re-run.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from .allocator import ConstrainedAllocator
from .config import OptimizerConfig
from .effect_tracker import EffectTracker
from .errors import DataUnavailableError, PlanStateError
from .execution import ExecutionEngine
from .interfaces import MetricsSource, MutationClient, Notifier, OptimizationStore, SegmentSource
from .marginal_return import MarginalReturnEstimator
from .models import (
    AllocationPlan, ControlBounds, ControlChange, ExecutionRecord, ExecutionStatus,
    ExecutionSummary, NotYetEvaluable, PerformanceWindow, PlanStatus, PredictionRecord, ReviewResult,
    ReviewSchedule, Segment, SegmentKind, Suggestion, Tracked, TrackingReport
)
from .predictor import OutcomePredictor, plan_impacts
from .review_scheduler import ReviewScheduler
from .rollback import RollbackManager
from .suggestions import SuggestionGenerator
from .telemetry import TelemetryClient

ALLOCATION_KINDS = [SegmentKind.PLACEMENT, SegmentKind.KEYWORD, SegmentKind.PRODUCT_TARGET, SegmentKind.CAMPAIGN]
SUGGESTION_KINDS = [SegmentKind.KEYWORD, SegmentKind.PRODUCT_TARGET, SegmentKind.SEARCH_TERM]


class OptimizationEngine:
    """Entry points for the allocation-and-feedback loop"""

    def __init__(self, config: OptimizerConfig, store: OptimizationStore,
                 metrics: MetricsSource, segments: SegmentSource, client: MutationClient,
                 notifier: Optional[Notifier] = None, telemetry: Optional[TelemetryClient] = None,
                 clock: Callable[[], datetime] = datetime.now):
        config.validate()
        self.config = config
        self.store = store
        self.metrics = metrics
        self.segments = segments
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        settings = config.to_dict()
        self.telemetry = telemetry or TelemetryClient(settings)
        self.estimator = MarginalReturnEstimator(settings)
        self.allocator = ConstrainedAllocator(settings)
        self.suggestions = SuggestionGenerator(settings, telemetry=self.telemetry)
        self.predictor = OutcomePredictor(settings)
        self.tracker = EffectTracker(settings, metrics, store, telemetry=self.telemetry)
        self.reviews = ReviewScheduler(settings, store, self.tracker, metrics, telemetry=self.telemetry)
        self.execution = ExecutionEngine(
            settings, store, client, metrics, self.predictor, reviews=self.reviews,
            notifier=notifier, telemetry=self.telemetry, clock=clock
        )
        self.rollbacks = RollbackManager(settings, store, self.execution, notifier=notifier,
                                         telemetry=self.telemetry)
        self.reviews.rollback = self.rollbacks

    def _window_range(self, start: Optional[datetime], end: Optional[datetime]):
        end = end or self.clock()
        start = start or end - timedelta(days=self.config.baseline_window_days)
        if end < start:
            raise ValueError(f"Window end {end} precedes start {start}")
        return start, end

    def _load(self, scope_id: str, kinds: List[SegmentKind], start: datetime, end: datetime):
        segments = self.segments.get_segments(scope_id, kinds)
        if not segments:
            raise DataUnavailableError(f"No segments found for scope {scope_id}")
        windows = {w.segment_id: w for w in self.metrics.get_performance_windows(
            [s.segment_id for s in segments], start, end)}
        for segment in segments:
            if segment.segment_id not in windows:
                windows[segment.segment_id] = PerformanceWindow(segment_id=segment.segment_id, start=start, end=end)
        return segments, windows

    # ------------------------------------------------------------------ #
    # Plans
    # ------------------------------------------------------------------ #

    def generate_allocation_plan(self, scope_id: str, budget: float, target_roas: float,
                                 bounds: Optional[ControlBounds] = None,
                                 start: Optional[datetime] = None,
                                 end: Optional[datetime] = None,
                                 kinds: Optional[List[SegmentKind]] = None) -> AllocationPlan:
        """
        Build and store a proposed allocation plan for a scope

        Args:
            scope_id: Campaign or account id
            budget: Total budget the plan may spend
            target_roas: Target return on ad spend
            bounds: Control-value envelope (defaults to the configured min/max)
            start: Trailing window start (defaults to baseline_window_days before end)
            end: Trailing window end (defaults to now)
            kinds: Segment kinds to allocate over (defaults to every controllable kind)

        Returns:
            The stored plan, status proposed
        """
        start, end = self._window_range(start, end)
        bounds = bounds or ControlBounds(self.config.control_min, self.config.control_max)
        segments, windows = self._load(scope_id, kinds or ALLOCATION_KINDS, start, end)

        returns = self.estimator.estimate_all([windows[s.segment_id] for s in segments])
        plan = self.allocator.allocate(scope_id, segments, windows, returns, budget, target_roas,
                                       bounds, self.clock())
        plan = self.store.save_plan(plan)
        constrained = sum(1 for a in plan.allocations if a.budget_constrained)
        self.telemetry.record_plan(scope_id, len(plan.allocations), constrained, plan.unallocated_budget)
        self.logger.info(f"Plan #{plan.plan_id} proposed for {scope_id}")
        return plan

    def approve_plan(self, plan_id: int) -> AllocationPlan:
        plan = self.store.get_plan(plan_id)
        if plan.status != PlanStatus.PROPOSED:
            raise PlanStateError(f"Plan #{plan_id} is {plan.status.value}; only proposed plans can be approved")
        self.logger.info(f"Plan #{plan_id} approved")
        return self.store.set_plan_status(plan_id, PlanStatus.APPROVED)

    def predict_plan(self, plan_id: int) -> List[PredictionRecord]:
        """Stored multi-horizon projections for a plan"""
        plan = self.store.get_plan(plan_id)
        predictions = self.predictor.predict(
            plan.baseline_spend, plan.baseline_sales, plan_impacts(plan), 'plan', plan_id, self.clock()
        )
        return [self.store.save_prediction(p) for p in predictions]

    # ------------------------------------------------------------------ #
    # Suggestions and execution
    # ------------------------------------------------------------------ #

    def generate_suggestions(self, scope_id: str, start: Optional[datetime] = None,
                             end: Optional[datetime] = None) -> List[Suggestion]:
        start, end = self._window_range(start, end)
        segments, windows = self._load(scope_id, SUGGESTION_KINDS, start, end)
        suggestions = self.suggestions.generate(segments, windows)
        self.logger.info(f"{len(suggestions)} suggestions for {scope_id}")
        return suggestions

    def execute_plan(self, plan_id: int,
                     cancel_event: Optional[threading.Event] = None) -> ExecutionSummary:
        return self.execution.execute_plan(plan_id, cancel_event)

    def execute_suggestions(self, scope_id: str, suggestions: List[Suggestion],
                            cancel_event: Optional[threading.Event] = None) -> ExecutionSummary:
        return self.execution.execute_suggestions(scope_id, suggestions, cancel_event)

    def apply_change(self, scope_id: str, segment: Segment, change: ControlChange,
                     reason: str) -> ExecutionSummary:
        return self.execution.apply_change(scope_id, segment, change, reason)

    # ------------------------------------------------------------------ #
    # Tracking, reviews and rollback
    # ------------------------------------------------------------------ #

    def get_tracking_report(self, execution_id: int) -> Union[TrackingReport, NotYetEvaluable]:
        return self.tracker.track(execution_id, self.clock())

    def track_matured_executions(self) -> List[TrackingReport]:
        """Track every applied change whose observation window has closed"""
        now = self.clock()
        cutoff = now - self.tracker.attribution_delay - self.tracker.observation_window
        reports = []
        for record in self.store.list_executions(status=ExecutionStatus.APPLIED, applied_before=cutoff):
            if isinstance(self.store.get_tracking(record.record_id), Tracked):
                continue
            result = self.tracker.track(record.record_id, now)
            if isinstance(result, TrackingReport):
                reports.append(result)
        self.logger.info(f"Tracked {len(reports)} matured executions")
        return reports

    def list_pending_reviews(self) -> List[ReviewSchedule]:
        return self.reviews.list_pending(self.clock())

    def process_review(self, review_id: int) -> ReviewResult:
        return self.reviews.process_review(review_id, self.clock())

    def process_due_reviews(self) -> List[ReviewResult]:
        return [self.process_review(review.review_id) for review in self.list_pending_reviews()]

    def rollback(self, execution_id: int, reason: Optional[str] = None) -> ExecutionRecord:
        return self.rollbacks.rollback(execution_id, reason=reason)

    def reapply(self, execution_id: int) -> ExecutionRecord:
        return self.rollbacks.reapply(execution_id)
