"""
Ad Spend Optimizer
==================

Allocation-and-feedback loop for advertising spend: estimates marginal
returns, allocates a budget across placements, keywords and campaigns,
predicts the outcome, applies changes through the advertising API, measures
their effect after the attribution delay and rolls back what did not work.

Version: 1.0.0
"""

from .config import OptimizerConfig
from .engine import OptimizationEngine
from .errors import (
    OptimizerError, DataUnavailableError, ScopeConflictError, PlanStateError,
    RecordNotFoundError, InvalidTransitionError, NotTrackableError, RollbackError,
    MutationError
)
from .interfaces import (
    MetricsSource, SegmentSource, MutationClient, MutationResult, Notifier, OptimizationStore
)
from .models import (
    Segment, SegmentKind, PerformanceWindow, ControlBounds, AllocationPlan, Allocation,
    PlanStatus, Suggestion, ControlChange, ActionType, ExecutionRecord, ExecutionStatus,
    ExecutionSummary, BatchStatus, PredictionRecord, ReviewSchedule, ReviewStatus,
    TrackingReport, EffectRating, Recommendation, NotYetEvaluable, Tracked, Untracked
)
from .aggregator import PerformanceAggregator, RawPerformanceRecord, RecordMetricsSource
from .store import InMemoryOptimizationStore

__version__ = "1.0.0"

__all__ = [
    'OptimizerConfig',
    'OptimizationEngine',
    'OptimizerError',
    'DataUnavailableError',
    'ScopeConflictError',
    'PlanStateError',
    'RecordNotFoundError',
    'InvalidTransitionError',
    'NotTrackableError',
    'RollbackError',
    'MutationError',
    'MetricsSource',
    'SegmentSource',
    'MutationClient',
    'MutationResult',
    'Notifier',
    'OptimizationStore',
    'Segment',
    'SegmentKind',
    'PerformanceWindow',
    'ControlBounds',
    'AllocationPlan',
    'Allocation',
    'PlanStatus',
    'Suggestion',
    'ControlChange',
    'ActionType',
    'ExecutionRecord',
    'ExecutionStatus',
    'ExecutionSummary',
    'BatchStatus',
    'PredictionRecord',
    'ReviewSchedule',
    'ReviewStatus',
    'TrackingReport',
    'EffectRating',
    'Recommendation',
    'NotYetEvaluable',
    'Tracked',
    'Untracked',
    'PerformanceAggregator',
    'RawPerformanceRecord',
    'RecordMetricsSource',
    'InMemoryOptimizationStore',
]
